"""Stream manager facade.

Wires the collaborators together and exposes the caller-facing operations::

    StreamManager
      ├── ProcessSupervisor ──► ProcessRuntime, CommandBuilder, RetryTracker, LogRingBuffer
      ├── TerminationScheduler ──► TimerFacility
      ├── TriggerLoop ──────────► start sweep + termination refresh
      ├── Reconciler ───────────► status sync, health sweep, log eviction
      └── AsyncioSchedulerBackend × 5 (one per periodic sweep)

Example:
    >>> store = SQLiteJobStore.open(settings.database_path)
    >>> manager = StreamManager(store, settings=settings)
    >>> await manager.run_forever()   # until SIGTERM / SIGINT

Embedders that run their own loop call :meth:`StreamManager.start_background`
and :meth:`StreamManager.shutdown` themselves.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from streamkeeper.core.logging import get_logger
from streamkeeper.core.models import ActiveInfo, HistoryRecord, TerminationInfo
from streamkeeper.core.result import OperationResult
from streamkeeper.core.settings import ManagerSettings, get_settings
from streamkeeper.core.timestamps import utc_now
from streamkeeper.execution.commands import CommandBuilder, FFmpegCommandBuilder
from streamkeeper.execution.logbuffer import LogEntry
from streamkeeper.execution.process import AsyncioProcessRuntime, ProcessRuntime
from streamkeeper.execution.supervisor import ProcessSupervisor
from streamkeeper.scheduling.backend import AsyncioSchedulerBackend
from streamkeeper.scheduling.reconciler import HealthReport, Reconciler, SyncReport
from streamkeeper.scheduling.termination import TerminationScheduler
from streamkeeper.scheduling.timers import TimerFacility
from streamkeeper.scheduling.trigger import TriggerLoop
from streamkeeper.store.protocol import HistorySink, JobStore

logger = get_logger(__name__)


@dataclass
class ManagerHealth:
    """Health summary of a running manager."""

    healthy: bool
    active_jobs: int = 0
    armed_timers: int = 0
    backends: dict[str, dict[str, Any]] = field(default_factory=dict)
    trigger: dict[str, Any] = field(default_factory=dict)
    last_sync: dict[str, Any] | None = None
    last_health: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "active_jobs": self.active_jobs,
            "armed_timers": self.armed_timers,
            "backends": self.backends,
            "trigger": self.trigger,
            "last_sync": self.last_sync,
            "last_health": self.last_health,
        }


class StreamManager:
    """Owns one supervisor, its schedulers and their periodic backends."""

    def __init__(
        self,
        store: JobStore,
        *,
        settings: ManagerSettings | None = None,
        runtime: ProcessRuntime | None = None,
        builder: CommandBuilder | None = None,
        history: HistorySink | None = None,
        timers: TimerFacility | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        settings = settings or get_settings()
        self.settings = settings
        self.store = store
        self.timers = timers or TimerFacility(max_delay=settings.max_timer_delay_seconds)

        if history is None and isinstance(store, HistorySink):
            history = store

        self.supervisor = ProcessSupervisor(
            store,
            runtime or AsyncioProcessRuntime(),
            builder or FFmpegCommandBuilder(settings.media_root, settings.temp_dir),
            self.timers,
            history=history,
            settings=settings,
            clock=clock,
        )
        self.termination = TerminationScheduler(
            store,
            self.timers,
            self.supervisor.stop,
            max_delay=settings.max_timer_delay_seconds,
            recheck_interval=settings.long_duration_check_seconds,
            clock=clock,
        )
        self.supervisor.attach_termination(self.termination)
        self.trigger = TriggerLoop(
            store, self.supervisor, self.termination, settings=settings, clock=clock
        )
        self.reconciler = Reconciler(
            store, self.supervisor, self.termination, settings=settings, clock=clock
        )

        self._backends: dict[str, AsyncioSchedulerBackend] = {}
        self._shutdown_requested = asyncio.Event()
        self._shut_down = False

    # =========================================================================
    # operations
    # =========================================================================

    async def start(self, job_id: str) -> OperationResult[ActiveInfo]:
        return await self.supervisor.start(job_id)

    async def stop(self, job_id: str) -> OperationResult[HistoryRecord]:
        return await self.supervisor.stop(job_id)

    def is_active(self, job_id: str) -> bool:
        return self.supervisor.is_active(job_id)

    def list_active(self) -> list[str]:
        return self.supervisor.list_active()

    def get_active_info(self, job_id: str) -> ActiveInfo | None:
        return self.supervisor.get_active_info(job_id)

    def get_logs(self, job_id: str) -> list[LogEntry]:
        return self.supervisor.get_logs(job_id)

    def schedule_termination(self, job_id: str, minutes: float) -> OperationResult[TerminationInfo]:
        """Arm a termination timer *minutes* from now."""
        try:
            timer = self.termination.arm(job_id, minutes)
        except Exception as e:
            logger.exception("schedule_termination_failed", job_id=job_id, error=str(e))
            return OperationResult.from_error(e)
        if timer is None:
            return OperationResult.fail("INVALID_DURATION", f"Invalid duration: {minutes!r}")
        return OperationResult.ok("Termination scheduled", self.termination.query(job_id))

    def cancel_termination(self, job_id: str) -> bool:
        return self.termination.cancel(job_id)

    def get_termination(self, job_id: str) -> TerminationInfo | None:
        return self.termination.query(job_id)

    def on_job_stopped(self, job_id: str) -> bool:
        """Drop any pending termination timer of a job stopped elsewhere."""
        return self.termination.cancel(job_id)

    async def sync_statuses(self) -> SyncReport:
        return await self.reconciler.sync_statuses()

    async def health_check(self) -> HealthReport:
        return await self.reconciler.health_check()

    async def cleanup_logs(self) -> list[str]:
        return await self.reconciler.cleanup_logs()

    # =========================================================================
    # lifecycle
    # =========================================================================

    def start_background(self) -> None:
        """Start every periodic sweep on the running loop."""
        if self._backends:
            logger.warning("manager_already_started")
            return

        s = self.settings
        sweeps = [
            ("start-sweep", self.trigger.check_scheduled, s.poll_interval_seconds, True),
            ("termination-refresh", self.trigger.check_durations, s.poll_interval_seconds, True),
            ("status-sync", self.reconciler.sync_statuses, s.status_sync_interval_seconds, False),
            ("health-check", self.reconciler.health_check, s.health_check_interval_seconds, False),
            ("log-cleanup", self.reconciler.cleanup_logs, s.log_cleanup_interval_seconds, False),
        ]
        for name, callback, interval, immediate in sweeps:
            backend = AsyncioSchedulerBackend(name)
            backend.start(callback, interval, run_immediately=immediate)
            self._backends[name] = backend
        logger.info("manager_started", sweeps=len(sweeps))

    def request_shutdown(self) -> None:
        self._shutdown_requested.set()

    async def run_forever(self) -> None:
        """Run until SIGTERM / SIGINT (or :meth:`request_shutdown`), then shut down."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                logger.warning("signal_handler_unavailable", signal=sig.name)

        self.start_background()
        try:
            await self._shutdown_requested.wait()
        finally:
            await self.shutdown()
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass

    async def shutdown(self) -> None:
        """Stop sweeps and timers, signal every process, mark jobs offline.

        Never raises; individual failures are logged.
        """
        if self._shut_down:
            return
        self._shut_down = True
        logger.info("manager_shutdown_started", active=len(self.supervisor.list_active()))

        for name, backend in self._backends.items():
            try:
                await backend.stop()
            except Exception as e:
                logger.error("backend_stop_failed", backend=name, error=str(e))

        cancelled = self.termination.cancel_all()
        try:
            stopped = await self.supervisor.shutdown()
        except Exception as e:
            logger.error("supervisor_shutdown_failed", error=str(e))
            stopped = 0
        self.timers.cancel_all()

        logger.info("manager_shutdown_completed", stopped=stopped, timers_cancelled=cancelled)

    def health(self) -> ManagerHealth:
        backends = {name: b.health() for name, b in self._backends.items()}
        return ManagerHealth(
            healthy=bool(backends) and all(b["healthy"] for b in backends.values()),
            active_jobs=len(self.supervisor.list_active()),
            armed_timers=len(self.termination.armed_ids()),
            backends=backends,
            trigger=self.trigger.stats.to_dict(),
            last_sync=self.reconciler.last_sync.to_dict() if self.reconciler.last_sync else None,
            last_health=self.reconciler.last_health.to_dict() if self.reconciler.last_health else None,
        )
