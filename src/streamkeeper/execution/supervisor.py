"""Process supervisor: spawn, monitor, retry and stop encoder processes.

The supervisor owns the active set (at most one :class:`ActiveProcessEntry`
per job id), the manual-stop markers, the retry registry and the per-job log
rings. Everything else reaches this state only through its methods.

State machine per job id::

    idle ──start──► starting ──spawned──► running
                       ▲                     │ exit
                       │                     ▼
                  retry-wait ◄──crash── classify ──clean/manual──► stopped
                       │
                       └──attempts exhausted──► stopped

Every ``await`` is a suspension point where other callbacks (exit events,
timers, stop requests) may run, so state is re-checked after each one:

- a stop that arrives while a start is in flight cancels the start; if the
  process was already spawned it is terminated like any manual stop
- exit events are matched to the entry by handle identity, so a late event
  from a superseded process never removes its successor

Manifesto:
    Every failure path converges on the same end state: the job marked
    ``offline`` and its resources released. Store write failures during
    exit handling are logged; the reconciler converges the store later.

Tags:
    streamkeeper, execution, supervisor, retry, subprocess, lifecycle

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from streamkeeper.core.errors import ErrorCategory, StreamKeeperError
from streamkeeper.core.logging import LogContext, get_logger
from streamkeeper.core.models import ActiveInfo, HistoryRecord, JobStatus
from streamkeeper.core.result import OperationResult
from streamkeeper.core.settings import ManagerSettings
from streamkeeper.core.timestamps import seconds_until, utc_now
from streamkeeper.scheduling.timers import TimerFacility
from streamkeeper.store.protocol import HistorySink, JobStore

from .commands import CommandBuilder
from .history import build_history_record
from .logbuffer import LogEntry, LogRingBuffer
from .process import ExitEvent, ExitKind, ProcessHandle, ProcessRuntime, classify_exit
from .retry import ExponentialBackoff, RetryTracker

logger = get_logger(__name__)


class TerminationControl(Protocol):
    """The part of the termination scheduler the supervisor drives."""

    def arm(self, job_id: str, remaining_minutes: float) -> object: ...

    def cancel(self, job_id: str, *, quiet: bool = False) -> bool: ...


@dataclass
class ActiveProcessEntry:
    """A running process of one job."""

    job_id: str
    handle: ProcessHandle
    start_time: datetime
    user_id: str | None = None
    pid: int | None = None


class ProcessSupervisor:
    """Owns the active set and drives every process transition.

    Example:
        >>> supervisor = ProcessSupervisor(store, AsyncioProcessRuntime(), builder, timers)
        >>> result = await supervisor.start("j1")
        >>> result.success
        True
        >>> await supervisor.stop("j1")
    """

    def __init__(
        self,
        store: JobStore,
        runtime: ProcessRuntime,
        builder: CommandBuilder,
        timers: TimerFacility,
        *,
        history: HistorySink | None = None,
        settings: ManagerSettings | None = None,
        termination: TerminationControl | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        settings = settings or ManagerSettings()
        self.store = store
        self.runtime = runtime
        self.builder = builder
        self.timers = timers
        self.history = history
        self.termination = termination
        self.settings = settings
        self._clock = clock

        self.executable = settings.ffmpeg_path
        self.stop_timeout = settings.stop_timeout_seconds
        self.heartbeat_markers = tuple(settings.heartbeat_markers)

        self.retries = RetryTracker(
            ExponentialBackoff(
                max_retries=settings.max_retry_attempts,
                base_delay=settings.retry_base_delay_seconds,
                max_delay=settings.retry_max_delay_seconds,
            ),
            reset_interval_seconds=settings.retry_reset_interval_seconds,
            clock=clock,
        )
        self.logs = LogRingBuffer(capacity=settings.log_capacity, clock=clock)

        self._active: dict[str, ActiveProcessEntry] = {}
        self._reaped: dict[str, ActiveProcessEntry] = {}
        self._manual_stops: set[str] = set()
        self._starting: dict[str, asyncio.Event] = {}
        self._cancelled_starts: set[str] = set()

    def attach_termination(self, termination: TerminationControl) -> None:
        self.termination = termination

    # =========================================================================
    # start
    # =========================================================================

    async def start(self, job_id: str, is_retry: bool = False) -> OperationResult[ActiveInfo]:
        """Spawn the encoder for *job_id*.

        A non-retry start opens a fresh retry episode. Failures come back as
        ``success=False`` with codes ``ALREADY_ACTIVE``, ``NOT_FOUND``,
        ``BUILD_ERROR`` (or a subclass code), ``SPAWN_ERROR``,
        ``PERSISTENCE_ERROR`` or ``START_CANCELLED``.
        """
        async with LogContext(job_id=job_id):
            if self.is_active(job_id) or job_id in self._starting:
                return OperationResult.fail(
                    "ALREADY_ACTIVE",
                    "Stream is already active",
                    category=ErrorCategory.ALREADY_ACTIVE,
                )

            if not is_retry:
                self.retries.begin_episode(job_id)

            done = self._starting[job_id] = asyncio.Event()
            self._cancelled_starts.discard(job_id)
            try:
                result = await self._start(job_id, is_retry)
            except StreamKeeperError as e:
                self.logs.append(job_id, f"Failed to start stream: {e.message}")
                logger.error("job_start_failed", code=e.code, error=e.message, is_retry=is_retry)
                result = OperationResult.from_error(e.with_context(job_id=job_id))
            except Exception as e:
                self.logs.append(job_id, f"Failed to start stream: {e}")
                logger.exception("job_start_failed", error=str(e), is_retry=is_retry)
                result = OperationResult.from_error(e)
            finally:
                self._starting.pop(job_id, None)
                done.set()

            # a failed operator start leaves no retry episode behind
            if not result.success and not is_retry and job_id not in self._active:
                self.retries.clear(job_id)
            return result

    async def _start(self, job_id: str, is_retry: bool) -> OperationResult[ActiveInfo]:
        started_at = self._clock()

        bundle = await self.store.get_with_source(job_id)
        if bundle is None:
            return OperationResult.fail(
                "NOT_FOUND", "Stream not found", category=ErrorCategory.NOT_FOUND
            )
        if job_id in self._cancelled_starts:
            return self._start_cancelled()

        job = bundle.job
        spec = self.builder.build(bundle)
        self.logs.append(job_id, f"Starting stream with command: {spec.render(self.executable)}")
        logger.info("job_starting", destination=spec.destination, is_retry=is_retry)

        handle: ProcessHandle | None = None

        async def on_exit(event: ExitEvent) -> None:
            await self._on_exit(job_id, handle, event)

        async def on_error(error: BaseException) -> None:
            await self._on_error(job_id, handle, error)

        handle = await self.runtime.spawn(
            self.executable,
            spec.args,
            on_stdout=lambda line: self._on_stdout(job_id, line),
            on_stderr=lambda line: self._on_stderr(job_id, line),
            on_exit=on_exit,
            on_error=on_error,
        )

        entry = ActiveProcessEntry(
            job_id=job_id,
            handle=handle,
            start_time=started_at,
            user_id=job.user_id,
            pid=handle.pid,
        )
        self._active[job_id] = entry
        self._reaped.pop(job_id, None)
        self.retries.mark_running(job_id)

        if job_id in self._cancelled_starts:
            # the pending stop() terminates this entry
            return self._start_cancelled()

        try:
            await self.store.update_status(
                job_id, JobStatus.LIVE, job.user_id, start_time_override=started_at
            )
        except Exception as e:
            # the reconciler heals active-but-not-live
            logger.error("status_write_failed", status=JobStatus.LIVE.value, error=str(e))

        if job_id in self._cancelled_starts:
            return self._start_cancelled()

        if self._active.get(job_id) is entry and job.end_time is not None and self.termination:
            remaining = seconds_until(job.end_time, self._clock())
            if remaining > 0:
                self.termination.arm(job_id, remaining / 60.0)

        logger.info("job_started", pid=entry.pid, is_retry=is_retry)
        return OperationResult.ok(
            "Stream started successfully",
            self._info(entry),
            metadata={"advanced_mode": job.use_advanced_settings},
        )

    @staticmethod
    def _start_cancelled() -> OperationResult[ActiveInfo]:
        logger.info("job_start_cancelled")
        return OperationResult.fail("START_CANCELLED", "Start cancelled by stop request")

    # =========================================================================
    # process events
    # =========================================================================

    def _on_stdout(self, job_id: str, line: str) -> None:
        self.logs.append(job_id, f"[OUTPUT] {line}")
        self.retries.heartbeat(job_id)

    def _on_stderr(self, job_id: str, line: str) -> None:
        self.logs.append(job_id, f"[FFmpeg] {line}")
        if any(marker in line for marker in self.heartbeat_markers):
            self.retries.heartbeat(job_id)
        else:
            logger.warning("encoder_stderr", job_id=job_id, line=line)

    def _claim(self, job_id: str, handle: ProcessHandle | None) -> ActiveProcessEntry | None:
        """Remove and return the entry owned by *handle*, if it is still current."""
        entry = self._active.get(job_id)
        if entry is not None and entry.handle is handle:
            del self._active[job_id]
            return entry
        reaped = self._reaped.get(job_id)
        if reaped is not None and reaped.handle is handle:
            del self._reaped[job_id]
            return reaped
        return None

    async def _on_exit(self, job_id: str, handle: ProcessHandle | None, event: ExitEvent) -> None:
        async with LogContext(job_id=job_id):
            self.logs.append(
                job_id, f"Stream ended with code {event.code}, signal: {event.signal_name}"
            )
            logger.info("process_exited", code=event.code, signal=event.signal_name)

            entry = self._claim(job_id, handle)

            if job_id in self._manual_stops:
                self._manual_stops.discard(job_id)
                self.retries.clear(job_id)
                if entry is not None:
                    await self._write_status(job_id, JobStatus.OFFLINE, entry.user_id)
                    self._cancel_termination(job_id)
                logger.info("manual_stop_completed")
                return

            if entry is None:
                logger.debug("stale_exit_event_ignored")
                return

            if classify_exit(event) == ExitKind.CRASH:
                if self._schedule_retry(job_id, event):
                    return
                logger.error("retry_exhausted", max_attempts=self.retries.backoff.max_retries)
                self.logs.append(
                    job_id,
                    f"Maximum retry attempts ({self.retries.backoff.max_retries}) reached, "
                    "stopping stream",
                )
            else:
                logger.info("process_exited_cleanly")

            await self._write_status(job_id, JobStatus.OFFLINE, entry.user_id)
            self._cancel_termination(job_id)
            self.retries.clear(job_id)

    def _schedule_retry(self, job_id: str, event: ExitEvent) -> bool:
        attempt = self.retries.next_attempt(job_id)
        if attempt is None:
            return False
        number, delay = attempt
        logger.warning(
            "process_crashed_retrying",
            exit=event.describe(),
            attempt=number,
            delay_seconds=delay,
        )
        self.logs.append(
            job_id, f"Stream interrupted. Attempting restart #{number} in {delay:g}s"
        )
        handle = self.timers.call_later(
            delay, lambda: self._retry(job_id), name=f"retry:{job_id}"
        )
        self.retries.set_pending(job_id, handle)
        return True

    async def _retry(self, job_id: str) -> None:
        """Delayed re-start after a crash."""
        async with LogContext(job_id=job_id):
            try:
                job = await self.store.find_by_id(job_id)
            except Exception as e:
                logger.error("retry_lookup_failed", error=str(e))
                await self._write_status(job_id, JobStatus.OFFLINE, None)
                self.retries.clear(job_id)
                return

            if job is None or job.status == JobStatus.OFFLINE:
                logger.info("retry_abandoned", reason="offline or deleted")
                self.retries.clear(job_id)
                return

            result = await self.start(job_id, is_retry=True)
            if result.success or (result.error and result.error.code == "ALREADY_ACTIVE"):
                return

            logger.error("retry_start_failed", error=result.error_message)
            await self._write_status(job_id, JobStatus.OFFLINE, job.user_id)
            self._cancel_termination(job_id)
            self.retries.clear(job_id)

    async def _on_error(self, job_id: str, handle: ProcessHandle | None, error: BaseException) -> None:
        async with LogContext(job_id=job_id):
            self.logs.append(job_id, f"Error in stream process: {error}")
            logger.error("process_error", error=str(error))
            entry = self._claim(job_id, handle)
            self._manual_stops.discard(job_id)
            if entry is None:
                return
            await self._write_status(job_id, JobStatus.OFFLINE, entry.user_id)
            self._cancel_termination(job_id)
            self.retries.clear(job_id)

    # =========================================================================
    # stop
    # =========================================================================

    async def stop(self, job_id: str) -> OperationResult[HistoryRecord]:
        """Stop *job_id*; the history record (if any) is the result data."""
        async with LogContext(job_id=job_id):
            try:
                return await self._stop(job_id)
            except Exception as e:
                self._manual_stops.discard(job_id)
                logger.exception("job_stop_failed", error=str(e))
                return OperationResult.from_error(e)

    async def _stop(self, job_id: str) -> OperationResult[HistoryRecord]:
        start_done = self._starting.get(job_id)
        if start_done is not None:
            logger.info("stop_requested_during_start")
            self._cancelled_starts.add(job_id)
            await start_done.wait()
            self._cancelled_starts.discard(job_id)
            if job_id not in self._active:
                job = await self.store.find_by_id(job_id)
                await self._write_status(job_id, JobStatus.OFFLINE, job.user_id if job else None)
                self._cancel_termination(job_id)
                self.retries.clear(job_id)
                return OperationResult.ok("Stream start cancelled")

        entry = self._active.get(job_id)
        if entry is None:
            job = await self.store.find_by_id(job_id)
            if job is not None and job.status == JobStatus.LIVE:
                logger.warning("stop_drift_corrected", category=ErrorCategory.DRIFT_DETECTED.value)
                await self._write_status(job_id, JobStatus.OFFLINE, job.user_id)
                self._cancel_termination(job_id)
                self.retries.clear(job_id)
                return OperationResult.ok(
                    "Stream status fixed (was not active but marked as live)",
                    metadata={"drift_corrected": True},
                )
            return OperationResult.fail("NOT_ACTIVE", "Stream is not active")

        self.logs.append(job_id, "Stopping stream...")
        logger.info("job_stopping", pid=entry.pid)
        self._manual_stops.add(job_id)
        del self._active[job_id]

        try:
            record = await self._finish_stop(job_id, entry)
        finally:
            self._cancel_termination(job_id)
            self.retries.clear(job_id)
        logger.info("job_stopped")
        return OperationResult.ok("Stream stopped successfully", record)

    async def _finish_stop(self, job_id: str, entry: ActiveProcessEntry) -> HistoryRecord | None:
        """Signal the process, then write history and the offline status."""
        try:
            entry.handle.terminate()
        except OSError as e:
            logger.error("terminate_failed", error=str(e))
        await self._await_exit(entry)

        self.builder.cleanup(job_id)
        end_time = self._clock()

        record: HistoryRecord | None = None
        bundle = await self.store.get_with_source(job_id)
        if bundle is not None:
            job = bundle.job
            record = build_history_record(
                job,
                end_time,
                start_time=job.start_time or entry.start_time,
                source_title=bundle.source.title if bundle.source else None,
            )
            if record is None:
                logger.info("history_skipped", reason="no start time or shorter than 1s")
            elif self.history is not None:
                try:
                    await self.history.record_history(record)
                    logger.info("history_recorded", duration_seconds=record.duration_seconds)
                except Exception as e:
                    logger.error("history_write_failed", error=str(e))
            await self._write_status(job_id, JobStatus.OFFLINE, job.user_id)
        return record

    async def _await_exit(self, entry: ActiveProcessEntry) -> bool:
        """SIGTERM has been sent: wait, escalate to SIGKILL, wait again."""
        try:
            await asyncio.wait_for(entry.handle.wait(), timeout=self.stop_timeout)
            return True
        except TimeoutError:
            logger.warning("stop_timeout_escalating", pid=entry.pid, timeout=self.stop_timeout)

        entry.handle.kill()
        try:
            await asyncio.wait_for(entry.handle.wait(), timeout=self.stop_timeout)
            return True
        except TimeoutError:
            logger.error("exit_event_missing", pid=entry.pid)
            self._manual_stops.discard(entry.job_id)
            return False

    # =========================================================================
    # queries
    # =========================================================================

    def is_active(self, job_id: str) -> bool:
        """True while a process runs for *job_id*.

        An entry whose process has already exited is dropped here; its exit
        event is still processed when it arrives.
        """
        entry = self._active.get(job_id)
        if entry is None:
            return False
        if entry.handle.exited:
            del self._active[job_id]
            self._reaped[job_id] = entry
            logger.info("exited_process_reaped", job_id=job_id, pid=entry.pid)
            return False
        return True

    def list_active(self) -> list[str]:
        return list(self._active)

    def get_active_info(self, job_id: str) -> ActiveInfo | None:
        entry = self._active.get(job_id)
        return self._info(entry) if entry else None

    def get_logs(self, job_id: str) -> list[LogEntry]:
        return self.logs.get(job_id)

    def _info(self, entry: ActiveProcessEntry) -> ActiveInfo:
        return ActiveInfo(
            job_id=entry.job_id,
            user_id=entry.user_id,
            start_time=entry.start_time,
            pid=entry.pid,
            retry_count=self.retries.attempts(entry.job_id),
        )

    # =========================================================================
    # reconciler helpers
    # =========================================================================

    def snapshot(self) -> list[ActiveProcessEntry]:
        return list(self._active.values())

    def current_entry(self, job_id: str) -> ActiveProcessEntry | None:
        return self._active.get(job_id)

    def is_retrying(self, job_id: str) -> bool:
        return self.retries.is_retrying(job_id)

    def is_starting(self, job_id: str) -> bool:
        return job_id in self._starting

    def is_stopping(self, job_id: str) -> bool:
        return job_id in self._manual_stops

    def terminate_orphan(self, job_id: str) -> bool:
        """Kill a process whose job record no longer exists."""
        entry = self._active.pop(job_id, None)
        if entry is None:
            return False
        self._manual_stops.add(job_id)
        try:
            entry.handle.terminate()
        except OSError as e:
            logger.error("orphan_terminate_failed", job_id=job_id, error=str(e))
        self.clear_bookkeeping(job_id)
        self._cancel_termination(job_id)
        logger.warning(
            "orphan_process_killed",
            job_id=job_id,
            pid=entry.pid,
            category=ErrorCategory.ORPHAN_PROCESS.value,
        )
        return True

    def reap_if_exited(self, job_id: str) -> ActiveProcessEntry | None:
        """Remove an entry whose process exited; its pending exit event is ignored."""
        entry = self._active.get(job_id)
        if entry is None or not entry.handle.exited:
            return None
        del self._active[job_id]
        self._reaped.pop(job_id, None)
        return entry

    def refresh_retry_window(self, job_id: str) -> bool:
        return self.retries.check_reset(job_id)

    def clear_bookkeeping(self, job_id: str) -> None:
        """Drop retry state (logs are kept)."""
        self.retries.clear(job_id)

    # =========================================================================
    # shutdown
    # =========================================================================

    async def shutdown(self) -> int:
        """Signal every active process and mark its job offline.

        Does not wait for exits. Returns the number of jobs handled.
        """
        active = list(self._active.items())
        logger.info("supervisor_shutdown", active=len(active))
        for job_id, entry in active:
            try:
                self._manual_stops.add(job_id)
                entry.handle.terminate()
                logger.info("shutdown_sigterm_sent", job_id=job_id, pid=entry.pid)
                job = await self.store.find_by_id(job_id)
                if job is not None:
                    await self.store.update_status(job_id, JobStatus.OFFLINE, job.user_id)
            except Exception as e:
                logger.error("shutdown_stop_failed", job_id=job_id, error=str(e))
            finally:
                if self._active.get(job_id) is entry:
                    del self._active[job_id]
                self._cancel_termination(job_id)

        for job_id in self.retries.tracked_ids():
            self.retries.clear(job_id)
        return len(active)

    # =========================================================================
    # internals
    # =========================================================================

    async def _write_status(self, job_id: str, status: JobStatus, user_id: str | None) -> bool:
        try:
            return await self.store.update_status(job_id, status, user_id)
        except Exception as e:
            logger.error("status_write_failed", job_id=job_id, status=status.value, error=str(e))
            return False

    def _cancel_termination(self, job_id: str) -> None:
        if self.termination is not None:
            self.termination.cancel(job_id, quiet=True)


__all__ = [
    "ActiveProcessEntry",
    "ProcessSupervisor",
    "TerminationControl",
]
