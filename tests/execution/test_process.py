"""Tests for streamkeeper.execution.process.

Exit classification is pure. The runtime tests spawn the current Python
interpreter as a stand-in encoder.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from types import SimpleNamespace

import pytest

from streamkeeper.core.errors import SpawnError
from streamkeeper.execution.process import (
    AsyncioProcessHandle,
    AsyncioProcessRuntime,
    ExitEvent,
    ExitKind,
    ProcessHandle,
    classify_exit,
)


class TestExitEvent:
    def test_from_returncode_code(self):
        assert ExitEvent.from_returncode(3) == ExitEvent(code=3, signal=None)

    def test_from_returncode_signal(self):
        assert ExitEvent.from_returncode(-signal.SIGKILL) == ExitEvent(code=None, signal=signal.SIGKILL)

    def test_from_returncode_unknown(self):
        assert ExitEvent.from_returncode(None) == ExitEvent()

    def test_signal_name(self):
        assert ExitEvent(signal=signal.SIGTERM).signal_name == "SIGTERM"
        assert ExitEvent(code=0).signal_name is None

    def test_describe(self):
        assert ExitEvent(code=1).describe() == "code=1, signal=None"


class TestClassifyExit:
    def test_zero_is_clean(self):
        assert classify_exit(ExitEvent(code=0)) == ExitKind.CLEAN

    @pytest.mark.parametrize("code", [1, 255, 137])
    def test_nonzero_is_crash(self, code):
        assert classify_exit(ExitEvent(code=code)) == ExitKind.CRASH

    def test_unknown_outcome_is_crash(self):
        assert classify_exit(ExitEvent()) == ExitKind.CRASH

    @pytest.mark.parametrize(
        "sig", [signal.SIGSEGV, signal.SIGKILL, signal.SIGABRT, signal.SIGBUS, signal.SIGFPE, signal.SIGILL]
    )
    def test_abnormal_signals_are_crashes(self, sig):
        assert classify_exit(ExitEvent(signal=sig)) == ExitKind.CRASH

    @pytest.mark.parametrize("sig", [signal.SIGTERM, signal.SIGINT, signal.SIGHUP])
    def test_orderly_signals_are_clean(self, sig):
        assert classify_exit(ExitEvent(signal=sig)) == ExitKind.CLEAN

    def test_other_signal_is_crash(self):
        assert classify_exit(ExitEvent(signal=signal.SIGUSR1)) == ExitKind.CRASH


class _Recorder:
    def __init__(self) -> None:
        self.stdout: list[str] = []
        self.stderr: list[str] = []
        self.exits: list[ExitEvent] = []
        self.errors: list[BaseException] = []

    async def on_exit(self, event: ExitEvent) -> None:
        self.exits.append(event)

    async def on_error(self, error: BaseException) -> None:
        self.errors.append(error)

    def callbacks(self) -> dict:
        return {
            "on_stdout": self.stdout.append,
            "on_stderr": self.stderr.append,
            "on_exit": self.on_exit,
            "on_error": self.on_error,
        }


class TestAsyncioProcessHandle:
    @pytest.mark.asyncio
    async def test_wait_without_event_reports_unknown_outcome(self):
        handle = AsyncioProcessHandle(SimpleNamespace(pid=4242, returncode=None))
        handle._delivered.set()

        event = await handle.wait()
        assert event == ExitEvent()
        assert classify_exit(event) == ExitKind.CRASH


@pytest.mark.slow
class TestAsyncioProcessRuntime:
    @pytest.mark.asyncio
    async def test_lines_and_exit_code(self):
        rec = _Recorder()
        script = (
            "import sys\n"
            "print('hello')\n"
            "sys.stderr.write('frame=1\\rframe=2\\n')\n"
            "sys.exit(3)\n"
        )
        handle = await AsyncioProcessRuntime().spawn(sys.executable, ["-c", script], **rec.callbacks())
        assert isinstance(handle, ProcessHandle)
        assert handle.pid is not None

        event = await asyncio.wait_for(handle.wait(), timeout=10)
        assert event == ExitEvent(code=3)
        assert rec.exits == [event]
        assert rec.stdout == ["hello"]
        assert rec.stderr == ["frame=1", "frame=2"]
        assert handle.exited is True
        assert handle.exit_code == 3

    @pytest.mark.asyncio
    async def test_terminate_reports_signal(self):
        rec = _Recorder()
        handle = await AsyncioProcessRuntime().spawn(
            sys.executable, ["-c", "import time; time.sleep(30)"], **rec.callbacks()
        )
        assert handle.terminate() is True
        event = await asyncio.wait_for(handle.wait(), timeout=10)
        assert event.signal == signal.SIGTERM
        assert classify_exit(event) == ExitKind.CLEAN
        assert handle.terminate() is False

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        rec = _Recorder()
        with pytest.raises(SpawnError) as exc_info:
            await AsyncioProcessRuntime().spawn(str(tmp_path / "no-such-ffmpeg"), [], **rec.callbacks())
        assert exc_info.value.retryable is False
        assert rec.exits == []
