"""Asyncio interval backend.

::

    start(tick, interval, run_immediately=True)
       │
       ▼
    task: [tick()] → sleep(interval) → tick() → sleep(interval) → ...
       │
    stop(): cancel the sleep, let a running tick finish

Ticks never overlap: the next sleep starts after the previous tick
returns. A failing tick is logged and counted; the loop keeps going.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from streamkeeper.core.logging import get_logger
from streamkeeper.core.timestamps import utc_now

from .protocol import BackendHealth, TickCallback

logger = get_logger(__name__)


class AsyncioSchedulerBackend:
    """Interval loop running as a task on the current event loop.

    Example:
        >>> backend = AsyncioSchedulerBackend("start-sweep")
        >>> backend.start(trigger.check_scheduled, 60.0, run_immediately=True)
        >>> await backend.stop()
    """

    def __init__(self, name: str = "asyncio") -> None:
        self.name = name
        self._task: asyncio.Task[None] | None = None
        self._ticking = False
        self._stopping = False
        self._tick_count = 0
        self._failed_ticks = 0
        self._last_tick: datetime | None = None
        self._interval: float = 60.0

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 60.0,
        *,
        run_immediately: bool = False,
    ) -> None:
        if self.is_running:
            logger.warning("backend_already_started", backend=self.name)
            return

        self._interval = interval_seconds
        self._stopping = False
        self._task = asyncio.get_running_loop().create_task(
            self._loop(tick_callback, interval_seconds, run_immediately),
            name=f"backend-{self.name}",
        )
        logger.info(
            "backend_started",
            backend=self.name,
            interval_seconds=interval_seconds,
            run_immediately=run_immediately,
        )

    async def _loop(self, tick_callback: TickCallback, interval: float, run_immediately: bool) -> None:
        if run_immediately:
            await self._tick(tick_callback)
        while not self._stopping:
            await asyncio.sleep(interval)
            if self._stopping:
                break
            await self._tick(tick_callback)

    async def _tick(self, tick_callback: TickCallback) -> None:
        self._tick_count += 1
        self._last_tick = utc_now()
        self._ticking = True
        try:
            await tick_callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failed_ticks += 1
            logger.exception("backend_tick_failed", backend=self.name, error=str(e))
        finally:
            self._ticking = False

    async def stop(self) -> None:
        """Stop the loop. A tick already running is allowed to finish."""
        task = self._task
        if task is None:
            return
        self._stopping = True
        if not self._ticking:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("backend_stopped", backend=self.name, tick_count=self._tick_count)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()

    def get_health(self) -> BackendHealth:
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            failed_ticks=self._failed_ticks,
            extra={"interval_seconds": self._interval},
        )
