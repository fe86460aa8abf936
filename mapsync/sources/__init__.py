"""
Data sources answering map project queries.
"""

from typing import Optional

from mapsync.config import Settings, get_settings
from mapsync.sources.base import (
    DataSource,
    FetchCriteria,
    FetchMode,
    Filter,
    FilterOperator,
    FilterType,
    MapProject,
    RateLimitError,
    RequestCancelled,
    RequestTimeout,
    SourceError,
    SyncError,
)
from mapsync.sources.memory import InMemorySource
from mapsync.sources.supabase import SupabaseSource


def create_source(settings: Optional[Settings] = None) -> DataSource:
    """Pick the configured source; fall back to an empty in-memory one."""
    settings = settings or get_settings()
    if settings.supabase_configured:
        return SupabaseSource(settings=settings)
    return InMemorySource(recent_days=settings.recent_days)


__all__ = [
    "DataSource",
    "FetchCriteria",
    "FetchMode",
    "Filter",
    "FilterOperator",
    "FilterType",
    "InMemorySource",
    "MapProject",
    "RateLimitError",
    "RequestCancelled",
    "RequestTimeout",
    "SourceError",
    "SupabaseSource",
    "SyncError",
    "create_source",
]
