"""Process runtime: spawn the encoder and deliver its events.

The supervisor never touches ``asyncio.subprocess`` directly. It asks a
:class:`ProcessRuntime` to spawn a command and receives three kinds of
events back through callbacks:

- one call per output line on stdout / stderr
- exactly one :class:`ExitEvent` once the process has exited and both pipes
  have drained
- an error callback when watching the process fails after a successful spawn

Architecture:

    .. code-block:: text

        AsyncioProcessRuntime.spawn(path, args, ...)
              │
              ├── asyncio.create_subprocess_exec(stdout=PIPE, stderr=PIPE)
              │
              └── watcher task
                    ├── pump stdout ─► on_stdout(line)
                    ├── pump stderr ─► on_stderr(line)
                    ├── process.wait()
                    └── on_exit(ExitEvent(code, signal))

Lines are split on ``\\n`` as well as bare ``\\r`` because ffmpeg rewrites its
progress line in place.

Tags:
    streamkeeper, execution, subprocess, asyncio, signals

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import re
import signal
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from streamkeeper.core.errors import SpawnError
from streamkeeper.core.logging import get_logger

logger = get_logger(__name__)

OutputCallback = Callable[[str], None]
ExitCallback = Callable[["ExitEvent"], Awaitable[None]]
ErrorCallback = Callable[[BaseException], Awaitable[None]]

_LINE_BREAK = re.compile(r"\r\n|\r|\n")
_READ_CHUNK = 4096


class ExitKind(str, Enum):
    """How an exit is handled when no manual stop was requested."""

    CLEAN = "clean"
    CRASH = "crash"


ABNORMAL_SIGNALS: frozenset[int] = frozenset(
    {
        signal.SIGSEGV,
        signal.SIGKILL,
        signal.SIGABRT,
        signal.SIGBUS,
        signal.SIGFPE,
        signal.SIGILL,
    }
)

ORDERLY_SIGNALS: frozenset[int] = frozenset({signal.SIGTERM, signal.SIGINT, signal.SIGHUP})


@dataclass(frozen=True)
class ExitEvent:
    """Exit payload: an exit code, a terminating signal, or neither (unknown)."""

    code: int | None = None
    signal: int | None = None

    @classmethod
    def from_returncode(cls, returncode: int | None) -> ExitEvent:
        """Translate an asyncio returncode (negative means killed by signal)."""
        if returncode is None:
            return cls()
        if returncode < 0:
            return cls(code=None, signal=-returncode)
        return cls(code=returncode, signal=None)

    @property
    def signal_name(self) -> str | None:
        if self.signal is None:
            return None
        try:
            return signal.Signals(self.signal).name
        except ValueError:
            return str(self.signal)

    def describe(self) -> str:
        return f"code={self.code}, signal={self.signal_name}"


def classify_exit(event: ExitEvent) -> ExitKind:
    """Classify an exit that happened without a manual stop marker.

    Rules:
        - code 0 and no signal: CLEAN
        - nonzero code: CRASH
        - no code and no signal (unknown outcome): CRASH
        - abnormal signal (SEGV, KILL, ABRT, BUS, FPE, ILL): CRASH
        - orderly signal (TERM, INT, HUP): CLEAN
        - any other signal: CRASH
    """
    if event.signal is not None:
        if event.signal in ORDERLY_SIGNALS:
            return ExitKind.CLEAN
        return ExitKind.CRASH
    if event.code is None:
        return ExitKind.CRASH
    return ExitKind.CLEAN if event.code == 0 else ExitKind.CRASH


@runtime_checkable
class ProcessHandle(Protocol):
    """Handle on one spawned process."""

    @property
    def pid(self) -> int | None: ...

    @property
    def exited(self) -> bool:
        """True once the OS reports an exit status (event may still be pending)."""
        ...

    @property
    def exit_code(self) -> int | None: ...

    def send_signal(self, sig: int) -> bool:
        """Deliver *sig*; False when the process is already gone."""
        ...

    def terminate(self) -> bool: ...

    def kill(self) -> bool: ...

    async def wait(self) -> ExitEvent:
        """Wait until the exit event has been delivered."""
        ...


@runtime_checkable
class ProcessRuntime(Protocol):
    """Spawns processes and routes their events to callbacks."""

    async def spawn(
        self,
        path: str,
        args: Sequence[str],
        *,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
        on_exit: ExitCallback,
        on_error: ErrorCallback,
    ) -> ProcessHandle:
        """Launch ``path *args``.

        Raises:
            SpawnError: the executable could not be launched
        """
        ...


class AsyncioProcessHandle:
    """:class:`ProcessHandle` over an ``asyncio.subprocess.Process``."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self._exit_event: ExitEvent | None = None
        self._delivered = asyncio.Event()
        self._watcher: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def exited(self) -> bool:
        return self._process.returncode is not None

    @property
    def exit_code(self) -> int | None:
        return self._process.returncode

    def send_signal(self, sig: int) -> bool:
        if self._process.returncode is not None:
            return False
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    def terminate(self) -> bool:
        return self.send_signal(signal.SIGTERM)

    def kill(self) -> bool:
        return self.send_signal(signal.SIGKILL)

    async def wait(self) -> ExitEvent:
        await self._delivered.wait()
        if self._exit_event is None:
            return ExitEvent()
        return self._exit_event

    def _start_watcher(
        self,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
        on_exit: ExitCallback,
        on_error: ErrorCallback,
    ) -> None:
        self._watcher = asyncio.create_task(
            self._watch(on_stdout, on_stderr, on_exit, on_error),
            name=f"process-watch-{self.pid}",
        )

    async def _watch(
        self,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
        on_exit: ExitCallback,
        on_error: ErrorCallback,
    ) -> None:
        try:
            await asyncio.gather(
                _pump_lines(self._process.stdout, on_stdout),
                _pump_lines(self._process.stderr, on_stderr),
            )
            returncode = await self._process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("process_watch_failed", pid=self.pid, error=str(e))
            self._exit_event = ExitEvent.from_returncode(self._process.returncode)
            self._delivered.set()
            await on_error(e)
            return

        self._exit_event = ExitEvent.from_returncode(returncode)
        try:
            await on_exit(self._exit_event)
        except Exception as e:
            logger.error("exit_handler_failed", pid=self.pid, error=str(e))
        finally:
            self._delivered.set()


async def _pump_lines(stream: asyncio.StreamReader | None, callback: OutputCallback) -> None:
    """Feed each non-empty line of *stream* to *callback* until EOF."""
    if stream is None:
        return
    pending = ""
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        pending += chunk.decode("utf-8", errors="replace")
        *lines, pending = _LINE_BREAK.split(pending)
        for line in lines:
            _emit(line, callback)
    _emit(pending, callback)


def _emit(line: str, callback: OutputCallback) -> None:
    line = line.strip()
    if not line:
        return
    try:
        callback(line)
    except Exception as e:
        logger.warning("output_callback_failed", error=str(e))


class AsyncioProcessRuntime:
    """Runs commands with ``asyncio.create_subprocess_exec``.

    stdin is closed; stdout and stderr are piped and pumped line by line.
    """

    async def spawn(
        self,
        path: str,
        args: Sequence[str],
        *,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
        on_exit: ExitCallback,
        on_error: ErrorCallback,
    ) -> AsyncioProcessHandle:
        try:
            process = await asyncio.create_subprocess_exec(
                path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise SpawnError(f"Executable not found: {path}", retryable=False, cause=e) from e
        except OSError as e:
            raise SpawnError(f"Failed to start process: {e}", cause=e) from e

        handle = AsyncioProcessHandle(process)
        handle._start_watcher(on_stdout, on_stderr, on_exit, on_error)
        logger.debug("process_spawned", path=path, pid=process.pid)
        return handle


__all__ = [
    "ABNORMAL_SIGNALS",
    "ORDERLY_SIGNALS",
    "AsyncioProcessHandle",
    "AsyncioProcessRuntime",
    "ExitEvent",
    "ExitKind",
    "ProcessHandle",
    "ProcessRuntime",
    "classify_exit",
]
