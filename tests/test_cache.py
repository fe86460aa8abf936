"""
Tests for the two-tier TTL cache.
"""

import json
import time

import pytest

from mapsync.services.cache import (
    KEY_NAMESPACE,
    CacheStore,
    LocalCache,
    RedisCache,
    decode_value,
    encode_value,
)
from tests.conftest import make_project


class TestLocalCache:
    """Test the in-process tier."""

    def test_hit_before_ttl(self, clock):
        """Test a fresh entry is served."""
        cache = LocalCache(clock=clock)
        cache.set("k", [1, 2], ttl=1.0)
        assert cache.get("k") == ([1, 2], True)

    def test_miss_after_ttl(self, clock):
        """Test an expired entry is never served and is purged."""
        cache = LocalCache(clock=clock)
        cache.set("k", "v", ttl=1.0)
        clock.advance(1.0)
        assert cache.get("k") == (None, False)
        assert len(cache) == 0

    def test_real_clock_expiry(self):
        """Test expiry with the wall clock."""
        cache = LocalCache()
        cache.set("k", "v", ttl=0.05)
        assert cache.get("k")[1] is True
        time.sleep(0.1)
        assert cache.get("k")[1] is False

    def test_purge_expired(self, clock):
        """Test eager purge drops only expired entries."""
        cache = LocalCache(clock=clock)
        cache.set("old", 1, ttl=1)
        cache.set("new", 2, ttl=10)
        clock.advance(5)
        assert cache.purge_expired() == 1
        assert cache.get("new") == (2, True)

    def test_max_entries_evicts_soonest_expiring(self, clock):
        """Test the size bound keeps the longest-lived entries."""
        cache = LocalCache(max_entries=2, clock=clock)
        cache.set("a", 1, ttl=5)
        cache.set("b", 2, ttl=50)
        cache.set("c", 3, ttl=20)
        assert len(cache) == 2
        assert cache.get("a")[1] is False
        assert cache.get("b")[1] is True

    def test_delete_prefix(self, clock):
        """Test prefix invalidation."""
        cache = LocalCache(clock=clock)
        cache.set("v8:la:1", 1, ttl=10)
        cache.set("v8:la:2", 2, ttl=10)
        cache.set("v8:ny:1", 3, ttl=10)
        assert cache.delete_prefix("v8:la:") == 2
        assert cache.get("v8:ny:1")[1] is True

    def test_stats(self, clock):
        """Test hit rate accounting."""
        cache = LocalCache(clock=clock)
        cache.set("k", 1, ttl=10)
        cache.get("k")
        cache.get("missing")
        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 50.0


class TestSerialization:
    """Test Redis payload encoding."""

    def test_projects_round_trip(self):
        """Test projects survive the JSON payload intact."""
        projects = [make_project(1, uses=("office",)), make_project(2)]
        decoded = decode_value(encode_value(projects))
        assert decoded == projects

    def test_plain_json(self):
        """Test plain lists, empty ones included, decode as given."""
        assert decode_value(encode_value(["a", "b"])) == ["a", "b"]
        assert decode_value(encode_value([])) == []


class TestRedisCache:
    """Test the shared tier against a fake client."""

    @pytest.mark.asyncio
    async def test_unconfigured_degrades(self):
        """Test no URL means misses and no-op writes."""
        shared = RedisCache(url=None)
        await shared.connect()
        assert not shared.is_available
        await shared.set("k", [1], ttl=10)
        assert await shared.get("k") == (None, False)
        assert (await shared.health_check())["status"] == "unavailable"

    @pytest.mark.asyncio
    async def test_set_uses_namespace_and_expiry(self, fake_redis):
        """Test keys are namespaced and TTL rounds to whole seconds."""
        shared = RedisCache(client=fake_redis)
        await shared.set("k", ["x"], ttl=0.2)
        assert json.loads(fake_redis.data[KEY_NAMESPACE + "k"])["value"] == ["x"]
        assert fake_redis.expiry[KEY_NAMESPACE + "k"] == 1
        assert await shared.get("k") == (["x"], True)

    @pytest.mark.asyncio
    async def test_errors_are_misses(self, fake_redis):
        """Test a failing Redis never raises."""
        shared = RedisCache(client=fake_redis)
        fake_redis.fail = True
        await shared.set("k", [1], ttl=10)
        assert await shared.get("k") == (None, False)

    @pytest.mark.asyncio
    async def test_corrupt_payload_is_miss(self, fake_redis):
        """Test an undecodable payload reads as a miss."""
        shared = RedisCache(client=fake_redis)
        fake_redis.data[KEY_NAMESPACE + "k"] = "{not json"
        assert await shared.get("k") == (None, False)

    @pytest.mark.asyncio
    async def test_delete_prefix(self, fake_redis):
        """Test prefix deletion only touches matching keys."""
        shared = RedisCache(client=fake_redis)
        await shared.set("v8:la:1", 1, ttl=10)
        await shared.set("v8:la:2", 2, ttl=10)
        await shared.set("v8:ny:1", 3, ttl=10)
        assert await shared.delete_prefix("v8:la:") == 2
        assert list(fake_redis.data) == [KEY_NAMESPACE + "v8:ny:1"]


class TestCacheStore:
    """Test tier ordering and invalidation."""

    @pytest.mark.asyncio
    async def test_local_only(self, settings, clock):
        """Test the store works with a single tier."""
        store = CacheStore(local=LocalCache(clock=clock), settings=settings)
        await store.set("k", [1], ttl=1)
        assert await store.get("k") == ([1], True)
        clock.advance(2)
        assert await store.get("k") == (None, False)

    @pytest.mark.asyncio
    async def test_keeps_injected_empty_local_tier(self, settings, clock):
        """Test an empty injected local tier is used with its own bound and clock."""
        local = LocalCache(max_entries=3, clock=clock)
        assert len(local) == 0

        store = CacheStore(local=local, settings=settings)
        for i in range(5):
            await store.set(f"k{i}", i, ttl=10 + i)

        assert store.local is local
        assert len(local) == 3
        clock.advance(20)
        assert await store.get("k4") == (None, False)

    @pytest.mark.asyncio
    async def test_writes_populate_both_tiers(self, settings, clock, fake_redis):
        """Test a write lands in the local tier and in Redis."""
        store = CacheStore(local=LocalCache(clock=clock), shared=RedisCache(client=fake_redis), settings=settings)
        await store.set("k", ["v"], ttl=30)
        assert store.local.get("k") == (["v"], True)
        assert KEY_NAMESPACE + "k" in fake_redis.data

    @pytest.mark.asyncio
    async def test_shared_hit_backfills_local(self, settings, clock, fake_redis):
        """Test a shared-tier hit is copied into the local tier."""
        shared = RedisCache(client=fake_redis)
        await shared.set("k", ["v"], ttl=30)
        store = CacheStore(local=LocalCache(clock=clock), shared=shared, settings=settings)

        assert await store.get("k") == (["v"], True)
        assert store.local.get("k") == (["v"], True)
        clock.advance(settings.local_cache_ttl + 1)
        assert store.local.get("k") == (None, False)

    @pytest.mark.asyncio
    async def test_invalidate(self, settings, clock, fake_redis):
        """Test invalidation clears the key from both tiers."""
        store = CacheStore(local=LocalCache(clock=clock), shared=RedisCache(client=fake_redis), settings=settings)
        await store.set("k", 1, ttl=30)
        await store.invalidate("k")
        assert await store.get("k") == (None, False)
        assert fake_redis.data == {}

    @pytest.mark.asyncio
    async def test_invalidate_prefix_counts_both_tiers(self, settings, clock, fake_redis):
        """Test prefix invalidation reports removals across tiers."""
        store = CacheStore(local=LocalCache(clock=clock), shared=RedisCache(client=fake_redis), settings=settings)
        await store.set("v8:la:1", 1, ttl=30)
        await store.set("v8:ny:1", 2, ttl=30)
        assert await store.invalidate_prefix("v8:la:") == 2
        assert (await store.get("v8:ny:1"))[1] is True
