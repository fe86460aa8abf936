"""
Merging successive result sets into one stable, deduplicated dataset.
"""

import time
from typing import Callable, Iterable, Iterator, Optional

from mapsync.config import Settings, get_settings
from mapsync.sources.base import MapProject
from mapsync.utils.logging import get_logger

logger = get_logger(__name__)


class MergedDataset:
    """Projects keyed by id in first-seen order, plus last-merge bookkeeping.

    Treated as immutable: the merger always returns a new instance.
    """

    __slots__ = ("_items", "last_merge_count", "last_merge_at")

    def __init__(
        self,
        items: Optional[dict[str, MapProject]] = None,
        last_merge_count: Optional[int] = None,
        last_merge_at: Optional[float] = None,
    ):
        self._items: dict[str, MapProject] = dict(items or {})
        self.last_merge_count = last_merge_count
        self.last_merge_at = last_merge_at

    @classmethod
    def from_items(cls, projects: Iterable[MapProject]) -> "MergedDataset":
        return cls({p.id: p for p in projects})

    def get(self, project_id: str) -> Optional[MapProject]:
        return self._items.get(project_id)

    def ids(self) -> list[str]:
        return list(self._items)

    def values(self) -> list[MapProject]:
        return list(self._items.values())

    def __iter__(self) -> Iterator[MapProject]:
        return iter(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, project_id: object) -> bool:
        return project_id in self._items

    def __eq__(self, other: object) -> bool:
        # Content equality; bookkeeping is not part of the data
        if not isinstance(other, MergedDataset):
            return NotImplemented
        return self._items == other._items

    def __repr__(self) -> str:
        return f"MergedDataset({len(self._items)} items)"


class ResultMerger:
    """Folds incoming result sets into a MergedDataset.

    Incoming items win on id conflicts; items only in the existing dataset
    are kept. A merge with the same incoming cardinality as the previous one
    inside ``window`` seconds is skipped and ``existing`` returned as is.
    """

    def __init__(
        self,
        window: Optional[float] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = settings or get_settings()
        self.window = window if window is not None else settings.merge_dedup_window
        self._clock = clock

    def is_redundant(self, existing: MergedDataset, incoming_count: int, now: float) -> bool:
        return (
            existing.last_merge_at is not None
            and now - existing.last_merge_at < self.window
            and existing.last_merge_count == incoming_count
        )

    def merge(self, existing: MergedDataset, incoming: Iterable[MapProject]) -> MergedDataset:
        incoming = list(incoming)
        now = self._clock()

        if self.is_redundant(existing, len(incoming), now):
            logger.debug("Skipping duplicate merge", count=len(incoming))
            return existing

        items = dict(existing._items)
        for project in incoming:
            items[project.id] = project

        merged = MergedDataset(items, last_merge_count=len(incoming), last_merge_at=now)
        logger.debug(
            "Projects merged",
            previous=len(existing),
            incoming=len(incoming),
            final=len(merged),
        )
        return merged
