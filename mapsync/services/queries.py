"""
Map query layer: cached, coalesced project fetches.

Every fetch is keyed by the Fingerprinter, answered from the CacheStore when
possible, and otherwise run through the RequestCoalescer so concurrent
identical misses hit the data source once.
"""

from typing import Optional

from mapsync.config import Settings, get_settings
from mapsync.services.cache import CacheStore
from mapsync.services.coalesce import CancelToken, RequestCoalescer
from mapsync.services.fingerprint import Fingerprinter
from mapsync.sources.base import (
    DataSource,
    FetchCriteria,
    FetchMode,
    Filter,
    MapProject,
    RequestCancelled,
    SourceError,
)
from mapsync.utils.logging import get_logger, timed

logger = get_logger(__name__)


class ProjectQueryService:
    """Fetches map projects through cache and coalescer."""

    def __init__(
        self,
        source: DataSource,
        cache: Optional[CacheStore] = None,
        coalescer: Optional[RequestCoalescer] = None,
        fingerprinter: Optional[Fingerprinter] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.source = source
        self.cache = cache if cache is not None else CacheStore(settings=self.settings)
        self.coalescer = coalescer if coalescer is not None else RequestCoalescer(settings=self.settings)
        self.fingerprinter = fingerprinter if fingerprinter is not None else Fingerprinter(settings=self.settings)
        self._ids_fingerprinter = Fingerprinter(
            version=self.settings.filtered_ids_key_version,
            settings=self.settings,
        )

    def key_for(self, criteria: FetchCriteria) -> str:
        return self.fingerprinter.fingerprint(criteria)

    async def fetch_projects(self, criteria: FetchCriteria, *, replace: bool = False) -> list[MapProject]:
        """Projects for ``criteria``; raises SourceError or RequestCancelled."""
        criteria = criteria.normalized()
        key = self.fingerprinter.fingerprint(criteria)

        cached, found = await self.cache.get(key)
        if found:
            return cached

        limit = self.settings.initial_fetch_limit if criteria.fetch_mode == FetchMode.INITIAL else None

        async def _produce(token: CancelToken) -> list[MapProject]:
            # An earlier generation may have filled the cache while we queued
            hit, hit_found = await self.cache.get(key)
            if hit_found:
                return hit
            token.raise_if_cancelled()
            with timed(logger, "source query", key=key, fetch_mode=criteria.fetch_mode.value) as extra:
                projects = await self._query_source(criteria, limit)
                extra["count"] = len(projects)
            token.raise_if_cancelled()
            await self.cache.set(key, projects, self.settings.cache_ttl)
            return projects

        try:
            return await self.coalescer.fetch(key, _produce, replace=replace)
        except RequestCancelled:
            logger.info("Map fetch cancelled", key=key, criteria=criteria.log_fields())
            raise
        except SourceError as e:
            logger.error("Map fetch failed", key=key, criteria=criteria.log_fields(), error=str(e))
            raise

    async def _query_source(self, criteria: FetchCriteria, limit: Optional[int]) -> list[MapProject]:
        try:
            return await self.source.query(criteria, limit=limit)
        except SourceError:
            raise
        except Exception as e:
            raise SourceError(str(e) or type(e).__name__, self.source.name) from e

    async def fetch_filtered_ids(
        self,
        city_slug: Optional[str],
        filters: tuple[Filter, ...],
    ) -> Optional[list[str]]:
        """Ids matching the active filters, or None when no filter is active."""
        active = tuple(f for f in filters if f.is_active)
        if not active:
            return None

        criteria = FetchCriteria(city_slug=city_slug, filters=active).normalized()
        key = self._ids_fingerprinter.fingerprint(criteria)

        cached, found = await self.cache.get(key)
        if found:
            return cached

        async def _produce(token: CancelToken) -> list[str]:
            token.raise_if_cancelled()
            try:
                ids = await self.source.query_ids(criteria.city_slug, criteria.filters)
            except SourceError:
                raise
            except Exception as e:
                raise SourceError(str(e) or type(e).__name__, self.source.name) from e
            await self.cache.set(key, ids, self.settings.filtered_ids_ttl)
            return ids

        try:
            return await self.coalescer.fetch(key, _produce)
        except SourceError as e:
            logger.error("Filtered id fetch failed", key=key, criteria=criteria.log_fields(), error=str(e))
            raise

    async def invalidate(self, criteria: FetchCriteria) -> None:
        """Drop both the initial and full entries for ``criteria``."""
        for mode in (FetchMode.INITIAL, FetchMode.FULL):
            await self.cache.invalidate(self.key_for(criteria.with_mode(mode)))

    async def invalidate_city(self, city_slug: Optional[str]) -> int:
        """Drop every cached result scoped to ``city_slug``, filtered ids included."""
        removed = 0
        for fingerprinter in (self.fingerprinter, self._ids_fingerprinter):
            removed += await self.cache.invalidate_prefix(fingerprinter.city_prefix(city_slug))
        return removed
