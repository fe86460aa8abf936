"""
Data-source abstraction layer for map project queries.
All sources implement this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional


class FetchMode(str, Enum):
    """How much of the result set a query should return."""
    INITIAL = "initial"  # row-limited, cheap
    FULL = "full"  # unbounded


class FilterType(str, Enum):
    PROJECT_STATUS = "Project Status"
    PROPERTY_TYPE = "Property Type"


class FilterOperator(str, Enum):
    IS = "is"
    IS_NOT = "is not"
    IS_ANY_OF = "is any of"
    IS_ONE_OF = "is one of"


@dataclass(frozen=True)
class Filter:
    """A map filter as selected in the UI, e.g. Project Status is Completed."""
    type: str
    operator: str
    value: tuple[str, ...] = ()

    @property
    def is_active(self) -> bool:
        return any(v for v in self.value)

    def normalized(self) -> "Filter":
        """Drop blank and repeated values and sort the rest so order never matters.

        Property Type values are matched case-insensitively, so they are
        lowercased here too.
        """
        values = {v for v in self.value if v}
        if self.type == FilterType.PROPERTY_TYPE.value:
            values = {v.lower() for v in values}
        return Filter(type=self.type, operator=self.operator, value=tuple(sorted(values)))

    @classmethod
    def from_dict(cls, d: dict) -> "Filter":
        raw = d.get("value") or ()
        if isinstance(raw, str):
            raw = (raw,)
        return cls(type=d["type"], operator=d.get("operator", FilterOperator.IS.value), value=tuple(raw))


@dataclass(frozen=True)
class FetchCriteria:
    """Logical query dimensions for a map fetch."""
    query: Optional[str] = None
    action_id: Optional[str] = None
    city_slug: Optional[str] = None
    priority_ids: tuple[str, ...] = ()
    filters: tuple[Filter, ...] = ()
    fetch_mode: FetchMode = FetchMode.FULL

    @property
    def active_filters(self) -> tuple[Filter, ...]:
        return tuple(f for f in self.filters if f.is_active)

    def normalized(self) -> "FetchCriteria":
        """Canonical form: semantically identical criteria compare equal."""
        query = (self.query or "").strip() or None
        filters = sorted(
            (f.normalized() for f in self.active_filters),
            key=lambda f: (f.type, f.operator, f.value),
        )
        return FetchCriteria(
            query=query,
            action_id=self.action_id or None,
            city_slug=self.city_slug or None,
            priority_ids=tuple(sorted({i for i in self.priority_ids if i})),
            filters=tuple(filters),
            fetch_mode=FetchMode(self.fetch_mode),
        )

    def with_mode(self, mode: FetchMode) -> "FetchCriteria":
        return replace(self, fetch_mode=mode)

    def to_dict(self) -> dict:
        """Plain dict used for hashing and log fields."""
        return {
            "query": self.query,
            "action_id": self.action_id,
            "city_slug": self.city_slug,
            "priority_ids": list(self.priority_ids),
            "filters": [
                {"t": f.type, "o": f.operator, "v": list(f.value)} for f in self.filters
            ],
            "fetch_mode": FetchMode(self.fetch_mode).value,
        }

    def log_fields(self) -> dict:
        """Compact summary for log lines."""
        return {
            "city_slug": self.city_slug,
            "query": self.query,
            "action_id": self.action_id,
            "priority_ids": len(self.priority_ids),
            "filters": len(self.active_filters),
            "fetch_mode": FetchMode(self.fetch_mode).value,
        }


@dataclass
class MapProject:
    """A project marker on the map."""
    id: str
    title: Optional[str]
    slug: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    status: Optional[str]
    city_slug: Optional[str]
    neighborhood_slug: Optional[str] = None

    # Only used for filtering and ordering, never rendered
    uses: tuple[str, ...] = ()
    description: Optional[str] = None
    address: Optional[str] = None
    updated_at: Optional[str] = None
    has_articles: bool = True

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "status": self.status,
            "city_slug": self.city_slug,
            "neighborhood_slug": self.neighborhood_slug,
            "uses": list(self.uses),
            "description": self.description,
            "address": self.address,
            "updated_at": self.updated_at,
            "has_articles": self.has_articles,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "MapProject":
        return cls(
            id=str(d["id"]),
            title=d.get("title"),
            slug=d.get("slug"),
            latitude=float(d["latitude"]) if d.get("latitude") is not None else None,
            longitude=float(d["longitude"]) if d.get("longitude") is not None else None,
            status=d.get("status"),
            city_slug=d.get("city_slug"),
            neighborhood_slug=d.get("neighborhood_slug"),
            uses=tuple(d.get("uses") or ()),
            description=d.get("description"),
            address=d.get("address"),
            updated_at=d.get("updated_at"),
            has_articles=d.get("has_articles", True),
        )


def dedupe_by_id(projects: list[MapProject]) -> list[MapProject]:
    """Keep one project per id; later rows win but keep the first position."""
    by_id: dict[str, MapProject] = {}
    for p in projects:
        by_id[p.id] = p
    return list(by_id.values())


# ===================
# Errors
# ===================

class SyncError(Exception):
    """Base exception for the sync engine."""


class SourceError(SyncError):
    """The data source failed (network, database, bad response)."""
    def __init__(self, message: str, source: str = "unknown", code: Optional[str] = None):
        self.message = message
        self.source = source
        self.code = code
        super().__init__(f"[{source}] {message}")


class RequestTimeout(SourceError):
    """An in-flight fetch exceeded its forced-resolution ceiling."""
    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Request for {key} timed out after {timeout}s", source="coalescer", code="timeout")


class RequestCancelled(SyncError):
    """A fetch was superseded or explicitly aborted.

    Kept outside the SourceError branch so callers can ignore it silently.
    """
    def __init__(self, key: Optional[str] = None, reason: str = "cancelled"):
        self.key = key
        self.reason = reason
        super().__init__(f"Request {key} {reason}" if key else f"Request {reason}")


class RateLimitError(SourceError):
    """Raised when the source rate-limits us."""
    pass


# ===================
# Source interface
# ===================

class DataSource(ABC):
    """
    Abstract base class for map project sources.
    Implementations must raise SourceError on failure.
    """

    name: str = "base"

    async def initialize(self) -> None:
        """Open connections. Override when needed."""
        return None

    async def close(self) -> None:
        """Release connections. Override when needed."""
        return None

    @abstractmethod
    async def query(self, criteria: FetchCriteria, limit: Optional[int] = None) -> list[MapProject]:
        """
        Fetch projects matching criteria.

        Priority ids are always included (subject to filters); the remaining
        recent projects are capped at ``limit`` when the criteria ask for
        ``FetchMode.INITIAL``.
        """
        pass

    @abstractmethod
    async def query_ids(self, city_slug: Optional[str], filters: tuple[Filter, ...]) -> list[str]:
        """Ids of all projects matching the city and filters."""
        pass
