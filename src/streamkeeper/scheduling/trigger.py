"""Trigger loop: start due jobs and keep termination timers current.

Two independent sweeps, each driven by its own backend (default every 60 s,
plus one run at startup):

``check_scheduled`` (start sweep)
    Queries ``scheduled`` jobs whose start falls in
    ``[now - start_grace, now + lookahead]``. A candidate is skipped when it
    already runs, when a fresh read shows it is no longer ``scheduled``, or
    when its end time has already passed. Otherwise it is started. A failed
    start is logged and the sweep moves on.

``check_durations`` (termination refresh)
    For every ``live`` job with an end time: stop it now if the end has
    passed, otherwise arm a timer when none exists or when the armed target
    is more than ``termination_tolerance_seconds`` away from the persisted
    end time. Jobs without an end time run indefinitely.

Both sweeps are idempotent; running them twice in a row changes nothing.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from streamkeeper.core.logging import get_logger
from streamkeeper.core.models import JobStatus, SweepReport
from streamkeeper.core.settings import ManagerSettings
from streamkeeper.core.timestamps import seconds_until, to_iso8601, utc_now
from streamkeeper.store.protocol import JobStore

if TYPE_CHECKING:
    from streamkeeper.execution.supervisor import ProcessSupervisor

    from .termination import TerminationScheduler

logger = get_logger(__name__)


@dataclass
class TriggerStats:
    """Counters across all sweeps of one trigger loop."""

    start_sweeps: int = 0
    refresh_sweeps: int = 0
    jobs_started: int = 0
    starts_skipped: int = 0
    starts_failed: int = 0
    timers_armed: int = 0
    jobs_stopped: int = 0
    last_sweep: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_sweeps": self.start_sweeps,
            "refresh_sweeps": self.refresh_sweeps,
            "jobs_started": self.jobs_started,
            "starts_skipped": self.starts_skipped,
            "starts_failed": self.starts_failed,
            "timers_armed": self.timers_armed,
            "jobs_stopped": self.jobs_stopped,
            "last_sweep": to_iso8601(self.last_sweep),
            "last_error": self.last_error,
        }


class TriggerLoop:
    """Polls the store and drives the supervisor and termination scheduler."""

    def __init__(
        self,
        store: JobStore,
        supervisor: ProcessSupervisor,
        termination: TerminationScheduler,
        *,
        settings: ManagerSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        settings = settings or ManagerSettings()
        self.store = store
        self.supervisor = supervisor
        self.termination = termination
        self.lookahead = timedelta(seconds=settings.schedule_lookahead_seconds)
        self.start_grace = timedelta(seconds=settings.start_grace_seconds)
        self.tolerance_seconds = settings.termination_tolerance_seconds
        self._clock = clock
        self._stats = TriggerStats()

    @property
    def stats(self) -> TriggerStats:
        return self._stats

    async def check_scheduled(self) -> SweepReport:
        """Start every job entering its scheduled window."""
        report = SweepReport(name="start")
        self._stats.start_sweeps += 1
        now = self._stats.last_sweep = self._clock()

        try:
            candidates = await self.store.find_scheduled_in_range(
                now - self.start_grace, now + self.lookahead
            )
        except Exception as e:
            self._stats.last_error = str(e)
            logger.error("start_sweep_query_failed", error=str(e))
            return report

        report.examined = len(candidates)
        if candidates:
            logger.info("start_sweep_candidates", count=len(candidates))

        for candidate in candidates:
            job_id = candidate.id
            try:
                if self.supervisor.is_active(job_id):
                    logger.info("start_skipped", job_id=job_id, reason="already active")
                    report.skipped.append(job_id)
                    continue

                current = await self.store.find_by_id(job_id)
                if current is None or current.status != JobStatus.SCHEDULED:
                    logger.info(
                        "start_skipped",
                        job_id=job_id,
                        reason="status changed",
                        status=current.status.value if current else None,
                    )
                    report.skipped.append(job_id)
                    continue

                if current.end_time is not None and seconds_until(current.end_time, self._clock()) <= 0:
                    logger.warning("start_skipped", job_id=job_id, reason="end time passed")
                    report.skipped.append(job_id)
                    continue

                logger.info("scheduled_start", job_id=job_id, title=current.title, user_id=current.user_id)
                result = await self.supervisor.start(job_id)
            except Exception as e:
                self._stats.last_error = str(e)
                logger.error("scheduled_start_failed", job_id=job_id, error=str(e))
                report.failed.append(job_id)
                continue

            if result.success:
                report.acted.append(job_id)
            else:
                logger.error("scheduled_start_failed", job_id=job_id, error=result.error_message)
                report.failed.append(job_id)

        self._stats.jobs_started += len(report.acted)
        self._stats.starts_skipped += len(report.skipped)
        self._stats.starts_failed += len(report.failed)
        return report

    async def check_durations(self) -> SweepReport:
        """Stop overdue live jobs and (re)arm termination timers."""
        report = SweepReport(name="termination-refresh")
        self._stats.refresh_sweeps += 1
        self._stats.last_sweep = self._clock()

        try:
            live = await self.store.find_all(status=JobStatus.LIVE)
        except Exception as e:
            self._stats.last_error = str(e)
            logger.error("refresh_sweep_query_failed", error=str(e))
            return report

        report.examined = len(live)
        for job in live:
            if job.end_time is None:
                report.skipped.append(job.id)
                continue

            try:
                remaining = seconds_until(job.end_time, self._clock())
                if remaining <= 0:
                    logger.info("end_time_reached", job_id=job.id, user_id=job.user_id)
                    self.termination.cancel(job.id, quiet=True)
                    await self.supervisor.stop(job.id)
                    self._stats.jobs_stopped += 1
                    report.acted.append(job.id)
                    continue

                armed = self.termination.query(job.id)
                drift = (
                    abs((armed.target_end - job.end_time).total_seconds())
                    if armed is not None
                    else None
                )
                if drift is not None and drift <= self.tolerance_seconds:
                    report.skipped.append(job.id)
                    continue

                logger.info(
                    "termination_refreshed",
                    job_id=job.id,
                    remaining_minutes=round(remaining / 60.0, 1),
                    end_time=to_iso8601(job.end_time),
                    drift_seconds=drift,
                )
                self.termination.arm(job.id, remaining / 60.0)
                self._stats.timers_armed += 1
                report.acted.append(job.id)
            except Exception as e:
                self._stats.last_error = str(e)
                logger.error("termination_refresh_failed", job_id=job.id, error=str(e))
                report.failed.append(job.id)

        return report
