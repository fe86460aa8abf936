"""
mapsync: request coalescing and progressive data sync for the project map.
"""

from typing import Optional

from mapsync.config import Settings, get_settings
from mapsync.services.cache import CacheStore
from mapsync.services.coalesce import RequestCoalescer
from mapsync.services.progressive import ProgressiveLoader
from mapsync.services.queries import ProjectQueryService
from mapsync.services.scheduler import IdleScheduler
from mapsync.services.session import MapSession
from mapsync.sources import DataSource, create_source

__version__ = "0.1.0"


def create_query_service(
    source: Optional[DataSource] = None,
    settings: Optional[Settings] = None,
) -> ProjectQueryService:
    """Wire a query service from settings. Call ``cache.connect()`` before use
    to enable the shared tier."""
    settings = settings or get_settings()
    return ProjectQueryService(
        source=source if source is not None else create_source(settings),
        cache=CacheStore.from_settings(settings),
        coalescer=RequestCoalescer(settings=settings),
        settings=settings,
    )


def create_session(
    queries: ProjectQueryService,
    scheduler: Optional[IdleScheduler] = None,
) -> MapSession:
    """One session per map view; sessions may share a query service."""
    loader = ProgressiveLoader(queries, scheduler=scheduler, settings=queries.settings)
    return MapSession(loader)
