"""Process execution: runtime, commands, retry, logs and the supervisor."""

from streamkeeper.execution.commands import CommandBuilder, CommandSpec, FFmpegCommandBuilder
from streamkeeper.execution.history import build_history_record
from streamkeeper.execution.logbuffer import LogEntry, LogRingBuffer
from streamkeeper.execution.process import (
    AsyncioProcessRuntime,
    ExitEvent,
    ExitKind,
    ProcessHandle,
    ProcessRuntime,
    classify_exit,
)
from streamkeeper.execution.retry import ExponentialBackoff, RetryState, RetryTracker
from streamkeeper.execution.supervisor import ActiveProcessEntry, ProcessSupervisor

__all__ = [
    "ActiveProcessEntry",
    "AsyncioProcessRuntime",
    "CommandBuilder",
    "CommandSpec",
    "ExitEvent",
    "ExitKind",
    "ExponentialBackoff",
    "FFmpegCommandBuilder",
    "LogEntry",
    "LogRingBuffer",
    "ProcessHandle",
    "ProcessRuntime",
    "ProcessSupervisor",
    "RetryState",
    "RetryTracker",
    "build_history_record",
    "classify_exit",
]
