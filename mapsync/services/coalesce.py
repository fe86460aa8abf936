"""
Request coalescing for cache-miss thundering herd protection.

When N callers ask for the same key while a fetch is already running, only
the first starts the producer; the rest await the same result. Each
generation carries a CancelToken so a superseded fetch can be aborted, and
a timeout ceiling so a stuck producer can never pin its registry entry.

The registry is guarded by a lock, so one coalescer can be shared by
callers running on different threads and event loops. The producer always
runs on the loop of the caller that started it. Callers on that loop await
its future directly; callers from any other loop get a
``concurrent.futures.Future`` that is resolved alongside it.
"""

import asyncio
import concurrent.futures
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from mapsync.config import Settings, get_settings
from mapsync.sources.base import RequestCancelled, RequestTimeout
from mapsync.utils.logging import get_logger

logger = get_logger(__name__)


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class CancelToken:
    """Externally triggerable cancel signal handed to producers.

    Producers call ``raise_if_cancelled()`` at their suspension points.
    """

    def __init__(self, key: Optional[str] = None):
        self.key = key
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        for cb in self._callbacks:
            cb(reason)
        self._callbacks.clear()

    def add_callback(self, cb: Callable[[str], None]) -> None:
        """Run ``cb(reason)`` on cancel (immediately if already cancelled)."""
        if self._cancelled:
            cb(self._reason or "cancelled")
        else:
            self._callbacks.append(cb)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RequestCancelled(self.key, self._reason or "cancelled")


Producer = Callable[[CancelToken], Awaitable[Any]]


@dataclass
class InFlightRequest:
    """One generation of a fetch for a key."""
    key: str
    loop: asyncio.AbstractEventLoop
    future: asyncio.Future
    token: CancelToken
    generation: int
    started_at: float
    waiters: int = 1
    task: Optional[asyncio.Task] = None
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    # Joiners running on other event loops
    remote: list[concurrent.futures.Future] = field(default_factory=list, repr=False)


class RequestCoalescer:
    """Ensures at most one in-flight producer per key."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = settings or get_settings()
        self._timeout = timeout if timeout is not None else settings.inflight_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight: dict[str, InFlightRequest] = {}
        self._generation = 0
        self._stats = {
            "initiated": 0,
            "coalesced": 0,
            "failed": 0,
            "cancelled": 0,
            "timed_out": 0,
        }

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    async def fetch(self, key: str, producer: Producer, *, replace: bool = False) -> Any:
        """Join the in-flight fetch for ``key`` or start one.

        With ``replace=True`` an outstanding generation is cancelled first
        (its waiters get RequestCancelled) and a fresh producer starts.
        Producer errors propagate to every waiter and are never cached.
        """
        loop = asyncio.get_running_loop()
        if replace:
            self.cancel(key, reason="superseded")

        remote = None
        with self._lock:
            entry = self._in_flight.get(key)
            if entry is None:
                entry = self._start(key, producer, loop)
                waiters = 1
            else:
                entry.waiters += 1
                waiters = entry.waiters
                self._stats["coalesced"] += 1
                if entry.loop is not loop:
                    remote = concurrent.futures.Future()
                    entry.remote.append(remote)

        if waiters > 1:
            logger.debug("Coalescing request", key=key, waiters=waiters, cross_loop=remote is not None)

        if remote is not None:
            return await asyncio.wrap_future(remote)
        # Shield so one waiter abandoning interest does not cancel the others
        return await asyncio.shield(entry.future)

    def cancel(self, key: str, reason: str = "cancelled") -> bool:
        """Cancel the in-flight generation for ``key``. Returns False if none.

        Safe to call from any thread. The key is freed at once; waiters are
        rejected on the loop that owns the producer.
        """
        with self._lock:
            entry = self._in_flight.pop(key, None)
            if entry is None:
                return False
            self._stats["cancelled"] += 1

        error = RequestCancelled(key, reason)
        if _running_loop() is entry.loop:
            self._abort(entry, reason, error)
        else:
            entry.loop.call_soon_threadsafe(self._abort, entry, reason, error)
        logger.info("In-flight request cancelled", key=key, reason=reason, waiters=entry.waiters)
        return True

    def cancel_all(self, reason: str = "shutdown") -> int:
        with self._lock:
            keys = list(self._in_flight)
        return sum(1 for key in keys if self.cancel(key, reason))

    def stats(self) -> dict:
        with self._lock:
            return {**self._stats, "in_flight": len(self._in_flight)}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _start(self, key: str, producer: Producer, loop: asyncio.AbstractEventLoop) -> InFlightRequest:
        """Register a new generation. Caller holds the lock."""
        self._generation += 1
        entry = InFlightRequest(
            key=key,
            loop=loop,
            future=loop.create_future(),
            token=CancelToken(key),
            generation=self._generation,
            started_at=self._clock(),
        )
        self._in_flight[key] = entry
        self._stats["initiated"] += 1
        entry.task = loop.create_task(self._run(entry, producer))
        entry.timer = loop.call_later(self._timeout, self._expire, entry)
        logger.debug("Initiating fetch", key=key, generation=entry.generation)
        return entry

    async def _run(self, entry: InFlightRequest, producer: Producer) -> None:
        try:
            value = await producer(entry.token)
        except asyncio.CancelledError:
            # cancel()/_expire() already resolved the waiters
            self._finish(entry, error=RequestCancelled(entry.key, entry.token.reason or "cancelled"))
            raise
        except Exception as e:
            with self._lock:
                self._stats["failed"] += 1
            logger.warning("Fetch failed", key=entry.key, error=str(e), waiters=entry.waiters)
            self._finish(entry, error=e)
            return

        if entry.token.cancelled:
            self._finish(entry, error=RequestCancelled(entry.key, entry.token.reason or "cancelled"))
        else:
            self._finish(entry, value=value)

    def _expire(self, entry: InFlightRequest) -> None:
        if entry.future.done():
            return
        with self._lock:
            self._stats["timed_out"] += 1
        logger.error(
            "In-flight request timed out, evicting",
            key=entry.key,
            timeout=self._timeout,
            waiters=entry.waiters,
        )
        self._abort(entry, "timeout", RequestTimeout(entry.key, self._timeout))

    def _abort(self, entry: InFlightRequest, reason: str, error: BaseException) -> None:
        """Signal the producer, reject waiters and stop the task. Runs on the owning loop."""
        entry.token.cancel(reason)
        self._finish(entry, error=error)
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()

    def _finish(self, entry: InFlightRequest, value: Any = None, error: Optional[BaseException] = None) -> None:
        """Resolve waiters once and drop this generation from the registry."""
        first = not entry.future.done()
        if first:
            if error is not None:
                entry.future.set_exception(error)
                # Mark retrieved: waiters may all have gone away
                entry.future.exception()
            else:
                entry.future.set_result(value)

        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

        with self._lock:
            # Only evict our own generation; a replacement may already be running
            if self._in_flight.get(entry.key) is entry:
                del self._in_flight[entry.key]
            remote, entry.remote = entry.remote, []

        for waiter in remote:
            # False when that waiter was cancelled on its own loop
            if not waiter.set_running_or_notify_cancel():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(value)

        if first and entry.waiters > 1:
            logger.debug("Coalesced requests resolved", key=entry.key, waiters=entry.waiters)
