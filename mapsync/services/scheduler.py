"""
Deferred execution for background refinement work.

``run_when_idle`` hands a coroutine function to the scheduler and returns a
handle that can be cancelled. ``ImmediateScheduler`` runs the work inline so
tests are deterministic; ``AsyncioIdleScheduler`` yields to the event loop
first and runs it as a background task.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from mapsync.utils.logging import get_logger

logger = get_logger(__name__)

IdleWork = Callable[[], Awaitable[None]]


class ScheduledWork:
    """Handle for work handed to a scheduler."""

    def __init__(self, task: Optional[asyncio.Task] = None):
        self._task = task
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def done(self) -> bool:
        return self._task is None or self._task.done()

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for the work to finish; cancellation is not an error here."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._cancelled:
                raise


class IdleScheduler(ABC):
    @abstractmethod
    async def run_when_idle(self, work: IdleWork) -> ScheduledWork:
        pass

    async def drain(self) -> None:
        """Wait for all outstanding work. Override when work is tracked."""
        return None


class ImmediateScheduler(IdleScheduler):
    """Runs work inline before returning."""

    async def run_when_idle(self, work: IdleWork) -> ScheduledWork:
        await work()
        return ScheduledWork()


class AsyncioIdleScheduler(IdleScheduler):
    """Runs work as a background task after yielding to the loop."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self._tasks: set[asyncio.Task] = set()

    async def run_when_idle(self, work: IdleWork) -> ScheduledWork:
        async def _deferred() -> None:
            # Yield point: let pending foreground callbacks run first
            await asyncio.sleep(self.delay)
            await work()

        task = asyncio.get_running_loop().create_task(_deferred())
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return ScheduledWork(task)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Idle work failed", error=str(exc))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
