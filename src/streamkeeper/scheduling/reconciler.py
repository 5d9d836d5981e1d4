"""Reconciler: converge the store and the active set.

The store is trusted for existence (a deleted job means its process must
go); the active set is trusted for "a process is running". Three sweeps:

- :meth:`Reconciler.sync_statuses` (every 5 minutes)
    - ``live`` in the store but not running → ``offline``, unless the job is
      mid-retry, its start is in flight, or it went live within the grace
      window
    - running but the job is gone → orphan killed and removed
    - running but not ``live`` in the store → ``live``
    - running entry whose process already exited → cleaned up
- :meth:`Reconciler.health_check` (every minute): reap exited processes whose
  exit event has not been handled yet and re-evaluate the retry reset
- :meth:`Reconciler.cleanup_logs` (every 30 minutes): evict stale log rings

Every item is handled independently: a failure is logged and recorded in the
report, and the sweep continues.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from streamkeeper.core.errors import ErrorCategory
from streamkeeper.core.logging import get_logger
from streamkeeper.core.models import JobStatus
from streamkeeper.core.settings import ManagerSettings
from streamkeeper.core.timestamps import seconds_until, utc_now
from streamkeeper.store.protocol import JobStore

if TYPE_CHECKING:
    from streamkeeper.execution.supervisor import ActiveProcessEntry, ProcessSupervisor

    from .termination import TerminationScheduler

logger = get_logger(__name__)

EXITED_PROCESS = "EXITED_PROCESS"


@dataclass(frozen=True)
class Finding:
    """One disagreement found and corrected."""

    job_id: str
    category: str
    action: str

    def to_dict(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "category": self.category, "action": self.action}


@dataclass
class SyncReport:
    findings: list[Finding] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    active_after: int = 0

    def by_category(self, category: str) -> list[str]:
        return [f.job_id for f in self.findings if f.category == category]

    def to_dict(self) -> dict[str, Any]:
        return {
            "findings": [f.to_dict() for f in self.findings],
            "skipped": dict(self.skipped),
            "errors": dict(self.errors),
            "active_after": self.active_after,
        }


@dataclass
class HealthReport:
    checked: int = 0
    reaped: list[str] = field(default_factory=list)
    retry_resets: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "reaped": list(self.reaped),
            "retry_resets": list(self.retry_resets),
            "errors": dict(self.errors),
        }


class Reconciler:
    """Periodic drift correction between store and supervisor."""

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
        self.recent_start_grace = settings.recent_start_grace_seconds
        self.log_retention = settings.log_retention_seconds
        self._clock = clock
        self.last_sync: SyncReport | None = None
        self.last_health: HealthReport | None = None

    # === status sync ===

    async def sync_statuses(self) -> SyncReport:
        report = SyncReport()
        logger.info("status_sync_started")

        try:
            live_jobs = await self.store.find_all(status=JobStatus.LIVE)
        except Exception as e:
            logger.error("status_sync_query_failed", error=str(e))
            report.errors["*"] = str(e)
            live_jobs = []

        for job in live_jobs:
            try:
                reason = self._skip_reason(job.id, job.start_time)
                if reason is not None:
                    if reason != "active":
                        logger.info("status_sync_skipped", job_id=job.id, reason=reason)
                        report.skipped[job.id] = reason
                    continue

                logger.warning(
                    "live_without_process",
                    job_id=job.id,
                    category=ErrorCategory.DRIFT_DETECTED.value,
                )
                await self.store.update_status(job.id, JobStatus.OFFLINE, job.user_id)
                self._release(job.id)
                report.findings.append(Finding(job.id, ErrorCategory.DRIFT_DETECTED.value, "marked_offline"))
            except Exception as e:
                logger.error("status_sync_item_failed", job_id=job.id, error=str(e))
                report.errors[job.id] = str(e)

        for entry in self.supervisor.snapshot():
            try:
                await self._check_entry(entry, report)
            except Exception as e:
                logger.error("status_sync_item_failed", job_id=entry.job_id, error=str(e))
                report.errors[entry.job_id] = str(e)

        report.active_after = len(self.supervisor.list_active())
        self.last_sync = report
        logger.info(
            "status_sync_completed",
            corrected=len(report.findings),
            active=report.active_after,
        )
        return report

    def _skip_reason(self, job_id: str, start_time: datetime | None) -> str | None:
        if self.supervisor.is_active(job_id):
            return "active"
        if self.supervisor.is_retrying(job_id):
            return "retrying"
        if self.supervisor.is_starting(job_id):
            return "starting"
        if self.supervisor.is_stopping(job_id):
            return "stopping"
        if start_time is not None and -seconds_until(start_time, self._clock()) < self.recent_start_grace:
            return "recently started"
        return None

    async def _check_entry(self, entry: ActiveProcessEntry, report: SyncReport) -> None:
        job_id = entry.job_id
        job = await self.store.find_by_id(job_id)

        # the entry may have exited or been stopped during the read
        if self.supervisor.current_entry(job_id) is not entry:
            return

        if job is None:
            self.supervisor.terminate_orphan(job_id)
            report.findings.append(Finding(job_id, ErrorCategory.ORPHAN_PROCESS.value, "killed"))
            return

        if entry.handle.exited:
            self.supervisor.reap_if_exited(job_id)
            logger.info("exited_process_cleaned", job_id=job_id, exit_code=entry.handle.exit_code)
            await self.store.update_status(job_id, JobStatus.OFFLINE, job.user_id)
            self._release(job_id)
            report.findings.append(Finding(job_id, EXITED_PROCESS, "cleaned_up"))
            return

        if job.status != JobStatus.LIVE:
            logger.warning(
                "process_without_live_status",
                job_id=job_id,
                status=job.status.value,
                category=ErrorCategory.DRIFT_DETECTED.value,
            )
            await self.store.update_status(job_id, JobStatus.LIVE, job.user_id)
            report.findings.append(Finding(job_id, ErrorCategory.DRIFT_DETECTED.value, "marked_live"))

    # === health sweep ===

    async def health_check(self) -> HealthReport:
        report = HealthReport()
        for entry in self.supervisor.snapshot():
            job_id = entry.job_id
            report.checked += 1
            try:
                if entry.handle.exited:
                    if self.supervisor.reap_if_exited(job_id) is None:
                        continue
                    logger.info("health_check_process_exited", job_id=job_id)
                    job = await self.store.find_by_id(job_id)
                    if job is not None and job.status == JobStatus.LIVE:
                        await self.store.update_status(job_id, JobStatus.OFFLINE, job.user_id)
                    self._release(job_id)
                    report.reaped.append(job_id)
                    continue

                if self.supervisor.refresh_retry_window(job_id):
                    report.retry_resets.append(job_id)
            except Exception as e:
                logger.error("health_check_item_failed", job_id=job_id, error=str(e))
                report.errors[job_id] = str(e)

        self.last_health = report
        return report

    # === log eviction ===

    async def cleanup_logs(self) -> list[str]:
        evicted = self.supervisor.logs.evict_stale(
            self.supervisor.list_active(), self.log_retention
        )
        for job_id in evicted:
            logger.info("job_logs_evicted", job_id=job_id)
        return evicted

    def _release(self, job_id: str) -> None:
        self.supervisor.clear_bookkeeping(job_id)
        self.termination.cancel(job_id, quiet=True)
