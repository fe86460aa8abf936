"""
Map session: the dataset behind one map view.

Holds one MergedDataset per criteria context. Changing criteria replaces
the dataset wholesale; the initial result seeds it and the full result is
merged in through the ResultMerger.
"""

from typing import Optional

from mapsync.services.merge import MergedDataset, ResultMerger
from mapsync.services.progressive import LoadOutcome, ProgressiveLoader
from mapsync.services.viewport import ViewportState, Windower
from mapsync.sources.base import FetchCriteria, FetchMode, MapProject, SourceError
from mapsync.utils.logging import LoggerMixin


class MapSession(LoggerMixin):
    """Keeps the held dataset in sync with the current criteria."""

    def __init__(
        self,
        loader: ProgressiveLoader,
        merger: Optional[ResultMerger] = None,
        windower: Optional[Windower] = None,
    ):
        self.loader = loader
        self.merger = merger if merger is not None else ResultMerger(settings=loader.settings)
        self.windower = windower if windower is not None else Windower(settings=loader.settings)

        self.dataset = MergedDataset()
        self.criteria: Optional[FetchCriteria] = None
        self.last_error: Optional[SourceError] = None
        self.full_updates = 0
        self._active_loads = 0

    @property
    def is_loading(self) -> bool:
        """True while any load() call on this session is still running."""
        return self._active_loads > 0

    async def load(self, criteria: FetchCriteria) -> LoadOutcome:
        """Load ``criteria`` progressively into the held dataset."""
        target = criteria.normalized().with_mode(FetchMode.FULL)
        changed = target != self.criteria
        if changed:
            self.criteria = target
            self.dataset = MergedDataset()
            self.full_updates = 0
            self.log.info("Criteria changed, dataset reset", criteria=target.log_fields())

        def on_initial(projects: list[MapProject]) -> None:
            if changed or not len(self.dataset):
                self.dataset = MergedDataset.from_items(projects)
            else:
                self.dataset = self.merger.merge(self.dataset, projects)

        def on_full(projects: list[MapProject]) -> None:
            self.dataset = self.merger.merge(self.dataset, projects)
            self.full_updates += 1

        self._active_loads += 1
        try:
            outcome = await self.loader.load_progressive(target, on_initial, on_full)
        except SourceError as e:
            self.last_error = e
            raise
        finally:
            self._active_loads -= 1

        # A skipped call did no work, so an earlier failure still stands
        if outcome != LoadOutcome.SKIPPED:
            self.last_error = None
        return outcome

    def visible(self, viewport: ViewportState) -> list[MapProject]:
        return self.windower.visible(self.dataset, viewport)

    async def wait_idle(self) -> None:
        await self.loader.wait_idle()

    def close(self) -> None:
        self.loader.cancel()
