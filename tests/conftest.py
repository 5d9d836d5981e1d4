"""
Shared pytest fixtures for streamkeeper tests.

Provides deterministic stand-ins for everything that touches time or the OS:

- ``clock``: a frozen, manually advanced UTC clock
- ``timers``: a timer facility whose timers only fire when a test fires them
- ``runtime``: a process runtime whose processes exit when the test says so
- ``builder``: a command builder that never touches the filesystem

and the real components wired on top of them (``supervisor``,
``termination``, ``trigger``, ``reconciler``).
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from streamkeeper.core.errors import SourceMissingError, TimerError
from streamkeeper.core.models import Job, JobStatus, MediaItem
from streamkeeper.core.settings import MAX_TIMER_DELAY_SECONDS, ManagerSettings
from streamkeeper.execution.commands import CommandSpec
from streamkeeper.execution.process import ExitEvent
from streamkeeper.execution.supervisor import ProcessSupervisor
from streamkeeper.scheduling.reconciler import Reconciler
from streamkeeper.scheduling.termination import TerminationScheduler
from streamkeeper.scheduling.trigger import TriggerLoop
from streamkeeper.store.memory import InMemoryJobStore

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Frozen UTC clock advanced by hand."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------


class FakeTimer:
    def __init__(self, delay: float, callback, name: str) -> None:
        self.delay = delay
        self.callback = callback
        self.name = name
        self.cancelled = False
        self.fired = False

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> None:
        if self.pending:
            self.cancelled = True

    def __repr__(self) -> str:
        return f"FakeTimer({self.name!r}, delay={self.delay})"


class FakeTimerFacility:
    """Records timers; tests fire them explicitly."""

    def __init__(self, max_delay: float = MAX_TIMER_DELAY_SECONDS) -> None:
        self.max_delay = max_delay
        self.timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback, *, name: str = "timer") -> FakeTimer:
        if delay > self.max_delay:
            raise TimerError(f"delay {delay} exceeds {self.max_delay}")
        timer = FakeTimer(max(0.0, delay), callback, name)
        self.timers.append(timer)
        return timer

    def pending(self, prefix: str = "") -> list[FakeTimer]:
        return [t for t in self.timers if t.pending and t.name.startswith(prefix)]

    async def fire(self, timer: FakeTimer) -> None:
        assert timer.pending, f"{timer!r} is not pending"
        timer.fired = True
        await timer.callback()

    async def fire_next(self, prefix: str) -> FakeTimer:
        pending = self.pending(prefix)
        assert pending, f"no pending timer with prefix {prefix!r}"
        timer = pending[-1]
        await self.fire(timer)
        return timer

    def cancel_all(self) -> int:
        pending = self.pending()
        for timer in pending:
            timer.cancel()
        return len(pending)

    @property
    def pending_count(self) -> int:
        return len(self.pending())


# ---------------------------------------------------------------------------
# Processes
# ---------------------------------------------------------------------------


class FakeHandle:
    """Process handle driven by the test."""

    _next_pid = 4000

    def __init__(self, runtime: FakeRuntime, args: Sequence[str], on_stdout, on_stderr, on_exit, on_error) -> None:
        FakeHandle._next_pid += 1
        self.pid = FakeHandle._next_pid
        self.args = list(args)
        self.signals: list[int] = []
        self._runtime = runtime
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr
        self._on_exit = on_exit
        self._on_error = on_error
        self._exited = False
        self._returncode: int | None = None
        self._event: ExitEvent | None = None
        self._delivered = asyncio.Event()

    @property
    def exited(self) -> bool:
        return self._exited

    @property
    def exit_code(self) -> int | None:
        return self._returncode

    def send_signal(self, sig: int) -> bool:
        if self._exited:
            return False
        self.signals.append(sig)
        if sig == signal.SIGTERM and self._runtime.ignore_sigterm:
            return True
        if self._runtime.exit_on_signal:
            self._runtime.track(asyncio.create_task(self.finish(ExitEvent(signal=sig))))
        return True

    def terminate(self) -> bool:
        return self.send_signal(signal.SIGTERM)

    def kill(self) -> bool:
        return self.send_signal(signal.SIGKILL)

    async def wait(self) -> ExitEvent:
        await self._delivered.wait()
        assert self._event is not None
        return self._event

    def mark_exited(self, code: int | None = 1) -> None:
        """The OS reports an exit; the event has not been delivered yet."""
        self._exited = True
        self._returncode = code

    async def finish(self, event: ExitEvent) -> None:
        """Exit and deliver the event (once)."""
        if self._delivered.is_set():
            return
        self._exited = True
        self._returncode = event.code if event.code is not None else (
            -event.signal if event.signal is not None else None
        )
        self._event = event
        try:
            await self._on_exit(event)
        finally:
            self._delivered.set()

    async def crash(self, code: int = 1) -> None:
        await self.finish(ExitEvent(code=code))

    async def exit_cleanly(self) -> None:
        await self.finish(ExitEvent(code=0))

    def stdout(self, line: str) -> None:
        self._on_stdout(line)

    def stderr(self, line: str) -> None:
        self._on_stderr(line)

    async def fail(self, error: BaseException) -> None:
        await self._on_error(error)


class FakeRuntime:
    """Process runtime returning :class:`FakeHandle` objects."""

    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []
        self.spawn_error: Exception | None = None
        self.spawn_gate: asyncio.Event | None = None
        self.exit_on_signal = True
        self.ignore_sigterm = False
        self.spawn_calls = 0
        self._tasks: set[asyncio.Task] = set()

    def track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def spawn(self, path, args, *, on_stdout, on_stderr, on_exit, on_error) -> FakeHandle:
        self.spawn_calls += 1
        if self.spawn_gate is not None:
            await self.spawn_gate.wait()
        if self.spawn_error is not None:
            raise self.spawn_error
        handle = FakeHandle(self, args, on_stdout, on_stderr, on_exit, on_error)
        self.handles.append(handle)
        return handle

    @property
    def last(self) -> FakeHandle:
        assert self.handles, "nothing spawned"
        return self.handles[-1]

    async def settle(self) -> None:
        """Let pending exit deliveries run."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
            # let the discard callbacks of finished tasks run
            await asyncio.sleep(0)


class FakeBuilder:
    """Command builder that records calls."""

    def __init__(self) -> None:
        self.error: Exception | None = None
        self.fail_for: set[str] = set()
        self.built: list[str] = []
        self.cleaned: list[str] = []

    def build(self, bundle) -> CommandSpec:
        if self.error is not None:
            raise self.error
        if bundle.job.id in self.fail_for:
            raise SourceMissingError("Video file not found on disk")
        self.built.append(bundle.job.id)
        destination = bundle.job.destination
        return CommandSpec(args=["-i", "input.mp4", "-f", "flv", destination], destination=destination)

    def cleanup(self, job_id: str) -> bool:
        self.cleaned.append(job_id)
        return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings(tmp_path: Path) -> ManagerSettings:
    return ManagerSettings(
        _env_file=None,
        ffmpeg_path="ffmpeg",
        media_root=tmp_path / "public",
        temp_dir=tmp_path / "temp",
        database_path=tmp_path / "streams.db",
        stop_timeout_seconds=0.2,
    )


@pytest.fixture()
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture()
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture()
def timers() -> FakeTimerFacility:
    return FakeTimerFacility()


@pytest.fixture()
def supervisor(store, runtime, builder, timers, settings, clock) -> ProcessSupervisor:
    return ProcessSupervisor(
        store, runtime, builder, timers, history=store, settings=settings, clock=clock
    )


@pytest.fixture()
def termination(store, timers, supervisor, settings, clock) -> TerminationScheduler:
    scheduler = TerminationScheduler(
        store,
        timers,
        supervisor.stop,
        max_delay=settings.max_timer_delay_seconds,
        recheck_interval=settings.long_duration_check_seconds,
        clock=clock,
    )
    supervisor.attach_termination(scheduler)
    return scheduler


@pytest.fixture()
def trigger(store, supervisor, termination, settings, clock) -> TriggerLoop:
    return TriggerLoop(store, supervisor, termination, settings=settings, clock=clock)


@pytest.fixture()
def reconciler(store, supervisor, termination, settings, clock) -> Reconciler:
    return Reconciler(store, supervisor, termination, settings=settings, clock=clock)


@pytest.fixture()
def add_job(store, clock):
    """Seed a job (with a video source) into the in-memory store."""

    def _add(job_id: str = "job-1", **fields) -> Job:
        fields.setdefault("title", f"Stream {job_id}")
        fields.setdefault("status", JobStatus.SCHEDULED)
        fields.setdefault("user_id", "user-1")
        fields.setdefault("source_id", f"video-{job_id}")
        fields.setdefault("rtmp_url", "rtmp://live.example.com/app")
        fields.setdefault("stream_key", f"key-{job_id}")
        store.add_video(MediaItem(id=fields["source_id"], filepath=f"/uploads/{job_id}.mp4", title="Clip"))
        return store.add_job(Job(id=job_id, **fields))

    return _add
