"""
In-process data source over a list of projects.

Applies the same predicates as the PostgREST source. Used for local
development, fixtures and tests.
"""

import asyncio
from typing import Iterable, Optional

from mapsync.sources.base import (
    DataSource,
    FetchCriteria,
    FetchMode,
    Filter,
    MapProject,
    dedupe_by_id,
)
from mapsync.sources.filters import (
    matches_action,
    matches_predicate,
    matches_text,
    recent_cutoff,
    resolve_filters,
)
from mapsync.utils.logging import get_logger

logger = get_logger(__name__)


class InMemorySource(DataSource):
    """Answers map queries from an in-memory project list."""

    name = "memory"

    def __init__(
        self,
        projects: Iterable[MapProject] = (),
        delay: float = 0.0,
        recent_days: int = 90,
    ):
        self._projects: list[MapProject] = list(projects)
        self.delay = delay
        self.recent_days = recent_days
        self.query_count = 0

    def replace_projects(self, projects: Iterable[MapProject]) -> None:
        self._projects = list(projects)

    async def query(self, criteria: FetchCriteria, limit: Optional[int] = None) -> list[MapProject]:
        self.query_count += 1
        if self.delay:
            await asyncio.sleep(self.delay)

        predicates = resolve_filters(criteria.active_filters)

        def passes_filters(p: MapProject) -> bool:
            return all(matches_predicate(p, pred) for pred in predicates)

        base = [p for p in self._projects if p.has_coordinates and p.has_articles]

        # Part 1: priority projects, filters only
        wanted = set(i for i in criteria.priority_ids if i)
        priority = [p for p in base if p.id in wanted and passes_filters(p)]
        priority_ids = {p.id for p in priority}

        # Part 2: remaining recent projects
        cutoff = recent_cutoff(self.recent_days)
        recent = []
        for p in base:
            if p.id in priority_ids or p.status is None:
                continue
            if criteria.city_slug and p.city_slug != criteria.city_slug:
                continue
            if criteria.query:
                if not matches_text(p, criteria.query):
                    continue
            elif criteria.action_id and not matches_action(p, criteria.action_id, cutoff):
                continue
            if not passes_filters(p):
                continue
            recent.append(p)

        recent.sort(key=lambda p: p.updated_at or "", reverse=True)
        if criteria.fetch_mode == FetchMode.INITIAL and limit is not None:
            recent = recent[:limit]

        logger.debug(
            "Memory query completed",
            priority=len(priority),
            recent=len(recent),
            fetch_mode=criteria.fetch_mode.value,
        )
        return dedupe_by_id(priority + recent)

    async def query_ids(self, city_slug: Optional[str], filters: tuple[Filter, ...]) -> list[str]:
        self.query_count += 1
        predicates = resolve_filters(tuple(f for f in filters if f.is_active))
        return [
            p.id
            for p in self._projects
            if p.has_articles
            and (not city_slug or p.city_slug == city_slug)
            and all(matches_predicate(p, pred) for pred in predicates)
        ]
