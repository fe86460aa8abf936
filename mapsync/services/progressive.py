"""
Progressive loading: a cheap initial fetch now, the full set at idle time.

Step 1 fetches a row-limited result and hands it to ``on_initial`` as soon as
it lands. Step 2 schedules the unbounded fetch on the idle scheduler and
hands it to ``on_full``. Newer criteria supersede older ones: the pending
background fetch is cancelled and a generation counter keeps a late result
from ever reaching ``on_full``. Background failures are logged and absorbed.
"""

import time
from enum import Enum
from typing import Callable, Optional

from mapsync.config import Settings, get_settings
from mapsync.services.queries import ProjectQueryService
from mapsync.services.scheduler import AsyncioIdleScheduler, IdleScheduler, ScheduledWork
from mapsync.sources.base import FetchCriteria, FetchMode, MapProject, RequestCancelled, SourceError
from mapsync.utils.logging import LoggerMixin, log_context, timed

ResultCallback = Callable[[list[MapProject]], None]


class LoadOutcome(str, Enum):
    LOADED = "loaded"
    SKIPPED = "skipped"  # duplicate call inside the dedup window
    SUPERSEDED = "superseded"  # newer criteria arrived before the initial result
    CANCELLED = "cancelled"


class ProgressiveLoader(LoggerMixin):
    """Orchestrates initial + background full fetches for one consumer."""

    def __init__(
        self,
        queries: ProjectQueryService,
        scheduler: Optional[IdleScheduler] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.queries = queries
        self.scheduler = scheduler if scheduler is not None else AsyncioIdleScheduler()
        self._clock = clock

        self._generation = 0
        self._last_criteria: Optional[FetchCriteria] = None
        self._last_called_at: Optional[float] = None
        self._pending: Optional[ScheduledWork] = None

    @property
    def generation(self) -> int:
        return self._generation

    def _is_duplicate(self, criteria: FetchCriteria, now: float) -> bool:
        return (
            self._last_criteria == criteria
            and self._last_called_at is not None
            and now - self._last_called_at < self.settings.orchestration_dedup_window
        )

    async def load_progressive(
        self,
        criteria: FetchCriteria,
        on_initial: ResultCallback,
        on_full: ResultCallback,
    ) -> LoadOutcome:
        """Run the two-step load; Step 1 errors propagate as SourceError."""
        target = criteria.normalized().with_mode(FetchMode.FULL)
        now = self._clock()

        if self._is_duplicate(target, now):
            self.log.debug("Skipping very recent duplicate load", criteria=target.log_fields())
            return LoadOutcome.SKIPPED

        self._last_criteria = target
        self._last_called_at = now

        # Anything still pending belongs to an older call
        self._cancel_pending()
        self._generation += 1
        generation = self._generation

        initial_criteria = target.with_mode(FetchMode.INITIAL)
        key = self.queries.key_for(initial_criteria)

        with log_context(load_generation=generation):
            try:
                with timed(self.log, "initial fetch", self.settings.slow_initial_ms, key=key) as extra:
                    initial = await self.queries.fetch_projects(initial_criteria)
                    extra["count"] = len(initial)
            except RequestCancelled:
                self._forget_call(generation)
                return LoadOutcome.CANCELLED
            except SourceError as e:
                # A failed call must not swallow an immediate retry
                self._forget_call(generation)
                self.log.error(
                    "Initial fetch failed",
                    key=key,
                    criteria=target.log_fields(),
                    error=str(e),
                )
                raise

            if generation != self._generation:
                self.log.debug("Initial result superseded", key=key)
                return LoadOutcome.SUPERSEDED

            on_initial(initial)

            async def _load_full() -> None:
                await self._run_full(target, generation, len(initial), on_full)

            self._pending = await self.scheduler.run_when_idle(_load_full)
        return LoadOutcome.LOADED

    async def _run_full(
        self,
        target: FetchCriteria,
        generation: int,
        initial_count: int,
        on_full: ResultCallback,
    ) -> None:
        if generation != self._generation:
            return

        key = self.queries.key_for(target)
        try:
            with timed(self.log, "full fetch", self.settings.slow_full_ms, key=key) as extra:
                full = await self.queries.fetch_projects(target)
                extra["count"] = len(full)
        except RequestCancelled:
            return
        except SourceError as e:
            # Best effort: the initial result stays on screen
            self.log.warning("Background full fetch failed", key=key, criteria=target.log_fields(), error=str(e))
            return

        if generation != self._generation:
            self.log.debug("Discarding stale full result", key=key)
            return

        if self.settings.full_requires_growth and len(full) <= initial_count:
            self.log.debug("Full result adds nothing, skipping update", key=key, count=len(full))
            return

        try:
            on_full(full)
        except Exception as e:
            self.log.warning("on_full callback failed", key=key, error=str(e))

    def _forget_call(self, generation: int) -> None:
        if generation == self._generation:
            self._last_criteria = None
            self._last_called_at = None

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
            self.log.debug("Cancelled pending background fetch")
        self._pending = None

    def cancel(self) -> None:
        """Abort background work; later results from it are discarded."""
        self._cancel_pending()
        self._generation += 1
        self._last_criteria = None
        self._last_called_at = None

    async def wait_idle(self) -> None:
        """Wait for the pending background fetch, if any."""
        if self._pending is not None:
            await self._pending.wait()
