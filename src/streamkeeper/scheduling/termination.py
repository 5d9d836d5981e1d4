"""Termination timers for live jobs.

Each live job with an end time has at most one armed timer. Two strategies:

- :class:`DirectTimer`: one deadline timer. On firing it re-reads the job and
  stops it only if the job is still ``live``.
- :class:`PeriodicRecheckTimer`: used when the remaining time exceeds the
  timer ceiling. Every ``interval`` seconds it re-reads the job and either
  stops it (past due), re-arms from the persisted end time (possibly as a
  direct timer once the deadline fits), or forgets it (no longer live, end
  time cleared).

Arming always cancels the previous timer of the job first.

Example:
    >>> scheduler.arm("j1", remaining_minutes=10)
    DirectTimer(target_end=..., ...)
    >>> scheduler.query("j1").is_long_duration
    False
"""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, ClassVar

from streamkeeper.core.logging import get_logger
from streamkeeper.core.models import JobStatus, TerminationInfo
from streamkeeper.core.settings import MAX_TIMER_DELAY_SECONDS
from streamkeeper.core.timestamps import seconds_until, utc_now
from streamkeeper.store.protocol import JobStore

from .timers import TimerFacility, TimerHandle

logger = get_logger(__name__)

StopCallback = Callable[[str], Awaitable[Any]]


@dataclass(eq=False)
class DirectTimer:
    target_end: datetime
    handle: TimerHandle | None = None

    is_long_duration: ClassVar[bool] = False

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()

    def remaining(self, now: datetime) -> float:
        return seconds_until(self.target_end, now)


@dataclass(eq=False)
class PeriodicRecheckTimer:
    target_end: datetime
    interval: float
    handle: TimerHandle | None = None

    is_long_duration: ClassVar[bool] = True

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()

    def remaining(self, now: datetime) -> float:
        return seconds_until(self.target_end, now)


TerminationTimer = DirectTimer | PeriodicRecheckTimer


class TerminationScheduler:
    """Owns the per-job termination timers.

    Args:
        store: Job store used to re-validate before stopping
        timers: Timer facility
        stop_job: Coroutine stopping a job (the supervisor's ``stop``)
        max_delay: Longest delay a direct timer may carry
        recheck_interval: Period of long-duration rechecks
    """

    def __init__(
        self,
        store: JobStore,
        timers: TimerFacility,
        stop_job: StopCallback,
        *,
        max_delay: float = MAX_TIMER_DELAY_SECONDS,
        recheck_interval: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.timers = timers
        self.stop_job = stop_job
        self.max_delay = max_delay
        self.recheck_interval = recheck_interval
        self._clock = clock
        self._timers: dict[str, TerminationTimer] = {}

    def arm(self, job_id: str, remaining_minutes: float) -> TerminationTimer | None:
        """Arm (or re-arm) the termination timer of *job_id*.

        Returns the new timer, or ``None`` when *remaining_minutes* is not a
        number.
        """
        if (
            isinstance(remaining_minutes, bool)
            or not isinstance(remaining_minutes, (int, float))
            or math.isnan(remaining_minutes)
        ):
            logger.error("invalid_termination_duration", job_id=job_id, value=repr(remaining_minutes))
            return None

        self.cancel(job_id, quiet=True)

        now = self._clock()
        # infinite or huge durations are capped at the last representable instant
        horizon = (datetime.max.replace(tzinfo=now.tzinfo) - now - timedelta(days=1)).total_seconds()
        delay = min(max(0.0, float(remaining_minutes)) * 60.0, horizon)
        target_end = now + timedelta(seconds=delay)

        timer: TerminationTimer
        if delay > self.max_delay:
            interval = min(self.recheck_interval, self.max_delay)
            timer = PeriodicRecheckTimer(target_end=target_end, interval=interval)
            timer.handle = self.timers.call_later(
                interval,
                lambda: self._recheck(job_id, timer),
                name=f"termination-recheck:{job_id}",
            )
            logger.info(
                "termination_recheck_armed",
                job_id=job_id,
                remaining_minutes=round(delay / 60.0, 1),
                interval_seconds=interval,
            )
        else:
            timer = DirectTimer(target_end=target_end)
            timer.handle = self.timers.call_later(
                delay,
                lambda: self._fire(job_id, timer),
                name=f"termination:{job_id}",
            )
            logger.info(
                "termination_armed",
                job_id=job_id,
                remaining_minutes=round(delay / 60.0, 1),
            )

        self._timers[job_id] = timer
        return timer

    def arm_until(self, job_id: str, end_time: datetime) -> TerminationTimer | None:
        """Arm from an absolute end time."""
        return self.arm(job_id, seconds_until(end_time, self._clock()) / 60.0)

    def cancel(self, job_id: str, *, quiet: bool = False) -> bool:
        """Cancel the timer of *job_id*. False when none was armed."""
        timer = self._timers.pop(job_id, None)
        if timer is None:
            return False
        timer.cancel()
        if not quiet:
            logger.info("termination_cancelled", job_id=job_id)
        return True

    def cancel_all(self) -> int:
        count = 0
        for job_id in list(self._timers):
            if self.cancel(job_id, quiet=True):
                count += 1
        return count

    def query(self, job_id: str) -> TerminationInfo | None:
        timer = self._timers.get(job_id)
        if timer is None:
            return None
        return TerminationInfo(
            job_id=job_id,
            target_end=timer.target_end,
            is_long_duration=timer.is_long_duration,
            remaining_seconds=timer.remaining(self._clock()),
        )

    def get(self, job_id: str) -> TerminationTimer | None:
        return self._timers.get(job_id)

    def armed_ids(self) -> list[str]:
        return list(self._timers)

    def _forget(self, job_id: str, timer: TerminationTimer) -> bool:
        """Remove *timer* if it is still the current one for the job."""
        if self._timers.get(job_id) is timer:
            del self._timers[job_id]
            return True
        return False

    async def _fire(self, job_id: str, timer: DirectTimer) -> None:
        if not self._forget(job_id, timer):
            return
        try:
            job = await self.store.find_by_id(job_id)
            if job is None or job.status != JobStatus.LIVE:
                logger.info("termination_skipped_not_live", job_id=job_id)
                return
            logger.info("termination_due", job_id=job_id)
            await self.stop_job(job_id)
        except Exception as e:
            logger.error("termination_failed", job_id=job_id, error=str(e))

    async def _recheck(self, job_id: str, timer: PeriodicRecheckTimer) -> None:
        if self._timers.get(job_id) is not timer:
            return
        try:
            job = await self.store.find_by_id(job_id)
        except Exception as e:
            logger.error("termination_recheck_failed", job_id=job_id, error=str(e))
            if self._timers.get(job_id) is timer:
                timer.handle = self.timers.call_later(
                    timer.interval,
                    lambda: self._recheck(job_id, timer),
                    name=f"termination-recheck:{job_id}",
                )
            return

        # superseded while the store was being read
        if self._timers.get(job_id) is not timer:
            return

        if job is None or job.status != JobStatus.LIVE or job.end_time is None:
            self._forget(job_id, timer)
            logger.info("termination_recheck_dropped", job_id=job_id)
            return

        remaining = seconds_until(job.end_time, self._clock())
        if remaining <= 0:
            self._forget(job_id, timer)
            logger.info("termination_due", job_id=job_id, long_duration=True)
            try:
                await self.stop_job(job_id)
            except Exception as e:
                logger.error("termination_failed", job_id=job_id, error=str(e))
            return

        self.arm(job_id, remaining / 60.0)
