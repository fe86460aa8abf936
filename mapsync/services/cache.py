"""
Two-tier TTL cache for map query results.

The local tier is an in-process dict consulted first; the shared tier is
Redis, usable across processes. Writes populate both. The shared tier
degrades gracefully: if Redis is unavailable every read is a miss and every
write is a no-op, so the store behaves correctly with the local tier alone.
"""

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from mapsync.config import Settings, get_settings
from mapsync.sources.base import MapProject
from mapsync.utils.logging import get_logger

logger = get_logger(__name__)

KEY_NAMESPACE = "mapsync:"


def encode_value(value: Any) -> str:
    """Serialize a cached value (project list or plain JSON) for Redis."""
    if isinstance(value, list) and value and all(isinstance(v, MapProject) for v in value):
        return json.dumps({"kind": "projects", "items": [p.to_dict() for p in value]})
    return json.dumps({"kind": "json", "value": value})


def decode_value(raw: str) -> Any:
    payload = json.loads(raw)
    if payload.get("kind") == "projects":
        return [MapProject.from_dict(d) for d in payload["items"]]
    return payload.get("value")


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float


class LocalCache:
    """Thread-safe in-process TTL cache."""

    def __init__(
        self,
        max_entries: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._max_entries = max_entries
        self._clock = clock
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> tuple[Any, bool]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None, False
            if entry.expires_at <= now:
                del self._entries[key]
                self._misses += 1
                return None, False
            self._hits += 1
            return entry.value, True

    def set(self, key: str, value: Any, ttl: float) -> None:
        now = self._clock()
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, expires_at=now + ttl)
            if len(self._entries) > self._max_entries:
                self._evict_locked(now)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def purge_expired(self) -> int:
        """Eagerly drop expired entries. Returns count removed."""
        now = self._clock()
        with self._lock:
            return self._purge_locked(now)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def _evict_locked(self, now: float) -> None:
        self._purge_locked(now)
        while len(self._entries) > self._max_entries:
            soonest = min(self._entries, key=lambda k: self._entries[k].expires_at)
            del self._entries[soonest]

    def stats(self) -> dict:
        """Return hit/miss statistics."""
        total = self._hits + self._misses
        return {
            "entries": len(self),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }


class RedisCache:
    """Async Redis tier.

    All public methods gracefully degrade: if Redis is down or unconfigured,
    ``get`` returns a miss and ``set`` silently no-ops.
    """

    def __init__(self, url: Optional[str] = None, pool_size: int = 10, client: Any = None):
        self._url = url
        self._pool_size = pool_size
        self._redis = client
        self._available = client is not None
        self._hits = 0
        self._misses = 0

    @property
    def is_available(self) -> bool:
        return self._available

    async def connect(self) -> None:
        """Connect to Redis. Logs warning and continues if unavailable."""
        if self._redis is not None:
            return
        if not self._url:
            logger.info("Shared cache disabled (redis_url not set)")
            return

        try:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                self._url,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
                max_connections=self._pool_size,
            )
            await self._redis.ping()
            self._available = True
            logger.info("Shared cache connected", url=self._url.split("@")[-1])
        except Exception as e:
            logger.warning("Shared cache unavailable, running local-only", error=str(e))
            self._redis = None
            self._available = False

    async def close(self) -> None:
        if self._redis:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.debug("Shared cache close failed", error=str(e))
            self._redis = None
            self._available = False
            logger.info("Shared cache closed")

    def cache_stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
            "total": total,
        }

    async def health_check(self) -> dict:
        """Return cache health status."""
        if not self._available or not self._redis:
            return {"status": "unavailable", "reason": "not connected", **self.cache_stats()}
        try:
            await self._redis.ping()
            return {"status": "healthy", **self.cache_stats()}
        except Exception as e:
            return {"status": "unhealthy", "reason": str(e), **self.cache_stats()}

    async def get(self, key: str) -> tuple[Any, bool]:
        if not self._available or not self._redis:
            self._misses += 1
            return None, False
        try:
            raw = await self._redis.get(KEY_NAMESPACE + key)
        except Exception as e:
            self._misses += 1
            logger.debug("Redis GET failed", key=key, error=str(e))
            return None, False
        if raw is None:
            self._misses += 1
            return None, False
        try:
            value = decode_value(raw)
        except (ValueError, KeyError, TypeError) as e:
            self._misses += 1
            logger.debug("Cache deserialize failed", key=key, error=str(e))
            return None, False
        self._hits += 1
        return value, True

    async def set(self, key: str, value: Any, ttl: float) -> None:
        if not self._available or not self._redis:
            return
        try:
            data = encode_value(value)
            # Redis EX takes whole seconds
            await self._redis.set(KEY_NAMESPACE + key, data, ex=max(1, int(round(ttl))))
        except Exception as e:
            logger.debug("Redis SET failed", key=key, error=str(e))

    async def delete(self, key: str) -> int:
        if not self._available or not self._redis:
            return 0
        try:
            return int(await self._redis.delete(KEY_NAMESPACE + key))
        except Exception as e:
            logger.debug("Redis DEL failed", key=key, error=str(e))
            return 0

    async def delete_prefix(self, prefix: str) -> int:
        """Delete all keys starting with ``prefix``. Returns count deleted."""
        if not self._available or not self._redis:
            return 0
        try:
            count = 0
            async for key in self._redis.scan_iter(match=f"{KEY_NAMESPACE}{prefix}*", count=200):
                await self._redis.delete(key)
                count += 1
            return count
        except Exception as e:
            logger.warning("Redis prefix delete failed", prefix=prefix, error=str(e))
            return 0


class CacheStore:
    """Local tier first, shared tier second, data source last."""

    def __init__(
        self,
        local: Optional[LocalCache] = None,
        shared: Optional[RedisCache] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.local = local if local is not None else LocalCache(max_entries=self.settings.local_cache_max_entries)
        self.shared = shared

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CacheStore":
        settings = settings or get_settings()
        shared = RedisCache(settings.redis_url, settings.redis_pool_size) if settings.shared_cache_enabled else None
        return cls(shared=shared, settings=settings)

    async def connect(self) -> None:
        if self.shared is not None:
            await self.shared.connect()

    async def close(self) -> None:
        if self.shared is not None:
            await self.shared.close()

    async def get(self, key: str) -> tuple[Any, bool]:
        value, found = self.local.get(key)
        if found:
            logger.debug("Local cache hit", key=key)
            return value, True

        if self.shared is not None and self.shared.is_available:
            value, found = await self.shared.get(key)
            if found:
                logger.debug("Shared cache hit", key=key)
                self.local.set(key, value, self.settings.local_cache_ttl)
                return value, True

        return None, False

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = ttl if ttl is not None else self.settings.cache_ttl
        self.local.set(key, value, ttl)
        if self.shared is not None and self.shared.is_available:
            await self.shared.set(key, value, ttl)

    async def invalidate(self, key: str) -> None:
        self.local.delete(key)
        if self.shared is not None:
            await self.shared.delete(key)
        logger.debug("Cache key invalidated", key=key)

    async def invalidate_prefix(self, prefix: str) -> int:
        removed = self.local.delete_prefix(prefix)
        if self.shared is not None:
            removed += await self.shared.delete_prefix(prefix)
        logger.info("Cache prefix invalidated", prefix=prefix, removed=removed)
        return removed

    def purge_expired(self) -> int:
        return self.local.purge_expired()

    def stats(self) -> dict:
        stats = {"local": self.local.stats()}
        if self.shared is not None:
            stats["shared"] = self.shared.cache_stats()
        return stats
