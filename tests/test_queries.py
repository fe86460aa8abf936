"""
Tests for the cached, coalesced query layer.
"""

import asyncio

import pytest

from mapsync.services.cache import CacheStore, LocalCache, RedisCache
from mapsync.services.coalesce import RequestCoalescer
from mapsync.services.queries import ProjectQueryService
from mapsync.sources.base import FetchCriteria, FetchMode, Filter, SourceError
from mapsync.sources.memory import InMemorySource
from tests.conftest import make_project

COMPLETED = (Filter("Project Status", "is", ("Completed",)),)


class ExplodingSource(InMemorySource):
    """Source whose queries always fail."""

    async def query(self, criteria, limit=None):
        raise KeyError("latitude")

    async def query_ids(self, city_slug, filters):
        raise SourceError("timeout talking to database", self.name)


class TestFetchProjects:
    """Test project fetches through cache and coalescer."""

    @pytest.mark.asyncio
    async def test_cache_hit_skips_source(self, query_service, memory_source):
        """Test a repeat fetch is served from cache."""
        criteria = FetchCriteria(city_slug="la")
        first = await query_service.fetch_projects(criteria)
        second = await query_service.fetch_projects(criteria)
        assert first == second
        assert memory_source.query_count == 1

    @pytest.mark.asyncio
    async def test_initial_mode_uses_limit(self, query_service, settings):
        """Test initial fetches are row-limited."""
        result = await query_service.fetch_projects(FetchCriteria(city_slug="la", fetch_mode=FetchMode.INITIAL))
        assert len(result) == settings.initial_fetch_limit

    @pytest.mark.asyncio
    async def test_concurrent_misses_query_once(self, settings):
        """Test 20 concurrent identical misses reach the source once."""
        source = InMemorySource([make_project(i) for i in range(50)], delay=0.01)
        service = ProjectQueryService(
            source=source,
            cache=CacheStore(local=LocalCache(), settings=settings),
            coalescer=RequestCoalescer(settings=settings),
            settings=settings,
        )

        results = await asyncio.gather(*(service.fetch_projects(FetchCriteria(city_slug="la")) for _ in range(20)))

        assert source.query_count == 1
        assert all(len(r) == 50 for r in results)

    @pytest.mark.asyncio
    async def test_cache_expiry_refetches(self, query_service, memory_source, settings, clock):
        """Test an expired entry goes back to the source."""
        criteria = FetchCriteria(city_slug="la")
        await query_service.fetch_projects(criteria)
        clock.advance(settings.cache_ttl)
        await query_service.fetch_projects(criteria)
        assert memory_source.query_count == 2

    @pytest.mark.asyncio
    async def test_shared_tier_hit_skips_source(self, memory_source, settings, fake_redis):
        """Test a second process finds the result in Redis."""
        def service():
            return ProjectQueryService(
                source=memory_source,
                cache=CacheStore(local=LocalCache(), shared=RedisCache(client=fake_redis), settings=settings),
                coalescer=RequestCoalescer(settings=settings),
                settings=settings,
            )

        criteria = FetchCriteria(city_slug="la", fetch_mode=FetchMode.INITIAL)
        first = await service().fetch_projects(criteria)
        second = await service().fetch_projects(criteria)

        assert memory_source.query_count == 1
        assert [p.id for p in second] == [p.id for p in first]

    @pytest.mark.asyncio
    async def test_unexpected_errors_wrapped(self, settings):
        """Test stray exceptions surface as SourceError."""
        service = ProjectQueryService(source=ExplodingSource(), settings=settings)
        with pytest.raises(SourceError) as exc:
            await service.fetch_projects(FetchCriteria())
        assert exc.value.source == "memory"

    @pytest.mark.asyncio
    async def test_errors_not_cached(self, settings):
        """Test a failed fetch is retried on the next call."""
        source = InMemorySource([make_project(1)])
        calls = []
        original = source.query

        async def flaky(criteria, limit=None):
            calls.append(criteria)
            if len(calls) == 1:
                raise SourceError("blip", "memory")
            return await original(criteria, limit)

        source.query = flaky
        service = ProjectQueryService(source=source, cache=CacheStore(local=LocalCache(), settings=settings), settings=settings)

        with pytest.raises(SourceError):
            await service.fetch_projects(FetchCriteria())
        assert [p.id for p in await service.fetch_projects(FetchCriteria())] == ["p1"]


class TestInvalidation:
    """Test cache invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_both_modes(self, query_service, memory_source):
        """Test invalidation drops initial and full entries."""
        criteria = FetchCriteria(city_slug="la")
        await query_service.fetch_projects(criteria.with_mode(FetchMode.INITIAL))
        await query_service.fetch_projects(criteria)
        await query_service.invalidate(criteria)
        await query_service.fetch_projects(criteria.with_mode(FetchMode.INITIAL))
        await query_service.fetch_projects(criteria)
        assert memory_source.query_count == 4

    @pytest.mark.asyncio
    async def test_invalidate_city(self, query_service, memory_source):
        """Test city invalidation leaves other cities cached."""
        await query_service.fetch_projects(FetchCriteria(city_slug="la"))
        await query_service.fetch_projects(FetchCriteria(city_slug="la", query="project"))
        await query_service.fetch_projects(FetchCriteria(city_slug="nyc"))

        assert await query_service.invalidate_city("la") == 2

        await query_service.fetch_projects(FetchCriteria(city_slug="nyc"))
        assert memory_source.query_count == 3

    @pytest.mark.asyncio
    async def test_invalidate_city_drops_filtered_ids(self, query_service, memory_source):
        """Test city invalidation also clears that city's filtered-id lookups."""
        await query_service.fetch_filtered_ids("la", COMPLETED)
        await query_service.fetch_filtered_ids("nyc", COMPLETED)
        await query_service.fetch_projects(FetchCriteria(city_slug="la"))

        assert await query_service.invalidate_city("la") == 2

        await query_service.fetch_filtered_ids("la", COMPLETED)
        assert memory_source.query_count == 4
        await query_service.fetch_filtered_ids("nyc", COMPLETED)
        assert memory_source.query_count == 4


class TestFilteredIds:
    """Test the filtered-id lookup."""

    @pytest.mark.asyncio
    async def test_no_active_filters(self, query_service, memory_source):
        """Test no active filter means no lookup at all."""
        assert await query_service.fetch_filtered_ids("la", ()) is None
        assert await query_service.fetch_filtered_ids("la", (Filter("Project Status", "is", ()),)) is None
        assert memory_source.query_count == 0

    @pytest.mark.asyncio
    async def test_cached(self, settings):
        """Test filtered ids are cached."""
        source = InMemorySource([make_project(1, status="completed"), make_project(2)])
        service = ProjectQueryService(source=source, cache=CacheStore(local=LocalCache(), settings=settings), settings=settings)

        assert await service.fetch_filtered_ids("la", COMPLETED) == ["p1"]
        assert await service.fetch_filtered_ids("la", COMPLETED) == ["p1"]
        assert source.query_count == 1

    @pytest.mark.asyncio
    async def test_errors_propagate(self, settings):
        """Test filtered-id failures are raised, not masked."""
        service = ProjectQueryService(source=ExplodingSource(), settings=settings)
        with pytest.raises(SourceError):
            await service.fetch_filtered_ids("la", COMPLETED)
