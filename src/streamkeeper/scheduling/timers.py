"""One-shot timers on the event loop.

``loop.call_later`` accepts any delay, but the manager keeps every timer
within :data:`~streamkeeper.core.settings.MAX_TIMER_DELAY_SECONDS` so that
far-future deadlines are always re-derived from the persisted end time
instead of trusted across weeks. Requests beyond the ceiling raise
:class:`TimerError`; the termination scheduler switches to periodic
rechecks before it gets there.

Callbacks are coroutines. Each firing runs as its own task; failures are
logged and never reach the loop's exception handler.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable

from streamkeeper.core.errors import TimerError
from streamkeeper.core.logging import get_logger
from streamkeeper.core.settings import MAX_TIMER_DELAY_SECONDS

logger = get_logger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle:
    """A pending one-shot timer.

    ``cancel()`` prevents a pending firing. It does not interrupt a callback
    that is already running.
    """

    def __init__(self, name: str, delay: float, deadline: float) -> None:
        self.name = name
        self.delay = delay
        self.deadline = deadline
        self._loop_handle: asyncio.TimerHandle | None = None
        self._cancelled = False
        self._fired = False
        self._on_done: Callable[[TimerHandle], None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def pending(self) -> bool:
        return not (self._cancelled or self._fired)

    def cancel(self) -> None:
        if not self.pending:
            return
        self._cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()
        if self._on_done is not None:
            self._on_done(self)

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "fired" if self._fired else "pending"
        return f"TimerHandle({self.name!r}, delay={self.delay:.3f}, {state})"


class TimerFacility:
    """Schedules coroutine callbacks after a delay.

    Example:
        >>> timers = TimerFacility()
        >>> handle = timers.call_later(5.0, restart, name="retry:j1")
        >>> handle.cancel()
    """

    def __init__(self, max_delay: float = MAX_TIMER_DELAY_SECONDS) -> None:
        self.max_delay = max_delay
        self._pending: set[TimerHandle] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def call_later(self, delay: float, callback: TimerCallback, *, name: str = "timer") -> TimerHandle:
        """Run ``await callback()`` after *delay* seconds.

        Raises:
            TimerError: *delay* is NaN or exceeds ``max_delay``
        """
        if math.isnan(delay) or delay > self.max_delay:
            raise TimerError(
                f"Timer delay {delay} exceeds maximum of {self.max_delay} seconds"
            ).with_context(timer=name)

        delay = max(0.0, delay)
        loop = asyncio.get_running_loop()
        handle = TimerHandle(name, delay, loop.time() + delay)
        handle._on_done = self._pending.discard

        def _fire() -> None:
            handle._fired = True
            self._pending.discard(handle)
            task = loop.create_task(self._run(handle, callback), name=name)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        handle._loop_handle = loop.call_later(delay, _fire)
        self._pending.add(handle)
        return handle

    async def _run(self, handle: TimerHandle, callback: TimerCallback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("timer_callback_failed", timer=handle.name)

    def cancel_all(self) -> int:
        """Cancel every pending timer. Returns how many were cancelled."""
        handles = list(self._pending)
        for handle in handles:
            handle.cancel()
        return len(handles)

    async def drain(self) -> None:
        """Wait for callbacks that are currently running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def running_count(self) -> int:
        return len(self._tasks)
