"""
Pytest configuration and fixtures.
"""

import fnmatch
from typing import Optional

import pytest

from mapsync.config import Settings
from mapsync.services.cache import CacheStore, LocalCache
from mapsync.services.coalesce import RequestCoalescer
from mapsync.services.queries import ProjectQueryService
from mapsync.sources.base import MapProject, SourceError
from mapsync.sources.memory import InMemorySource


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the shared tier."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.fail = False

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        if self.fail:
            raise ConnectionError("redis down")
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        if self.fail:
            raise ConnectionError("redis down")
        self.data[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def delete(self, key: str) -> int:
        self.expiry.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    async def scan_iter(self, match: str = "*", count: int = 100):
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        pass


class FlakySource(InMemorySource):
    """In-memory source that fails for the chosen fetch modes."""

    def __init__(self, projects, fail_modes=()):
        super().__init__(projects)
        self.fail_modes = set(fail_modes)

    async def query(self, criteria, limit=None):
        if criteria.fetch_mode in self.fail_modes:
            self.query_count += 1
            raise SourceError("database unavailable", self.name)
        return await super().query(criteria, limit)


def make_project(
    i: int,
    city: str = "la",
    latitude: float = 34.05,
    longitude: float = -118.24,
    status: str = "approved",
    **kwargs,
) -> MapProject:
    """Build project ``p{i}``; extra kwargs override MapProject fields."""
    return MapProject(
        id=kwargs.pop("id", f"p{i}"),
        title=kwargs.pop("title", f"Project {i}"),
        slug=f"project-{i}",
        latitude=latitude,
        longitude=longitude,
        status=status,
        city_slug=city,
        updated_at=kwargs.pop("updated_at", f"2026-{1 + i % 9:02d}-01T00:00:{i % 60:02d}+00:00"),
        **kwargs,
    )


@pytest.fixture
def settings() -> Settings:
    """Isolated settings; ignores any local .env."""
    return Settings(_env_file=None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def la_projects() -> list[MapProject]:
    return [make_project(i) for i in range(420)]


@pytest.fixture
def memory_source(la_projects) -> InMemorySource:
    return InMemorySource(la_projects)


@pytest.fixture
def query_service(memory_source, settings, clock) -> ProjectQueryService:
    return ProjectQueryService(
        source=memory_source,
        cache=CacheStore(local=LocalCache(clock=clock), settings=settings),
        coalescer=RequestCoalescer(settings=settings),
        settings=settings,
    )
