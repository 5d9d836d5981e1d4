"""Core primitives: errors, logging, settings, timestamps, models, results."""

from streamkeeper.core.errors import (
    AlreadyActiveError,
    BuildError,
    EmptySourceError,
    ErrorCategory,
    InvalidPlaylistError,
    JobNotFoundError,
    PersistenceError,
    SourceMissingError,
    SpawnError,
    StreamKeeperError,
    TimerError,
)
from streamkeeper.core.models import (
    ActiveInfo,
    HistoryRecord,
    Job,
    JobStatus,
    JobWithSource,
    MediaItem,
    MediaSource,
    SourceKind,
    SweepReport,
    TerminationInfo,
)
from streamkeeper.core.result import OperationError, OperationResult

__all__ = [
    "AlreadyActiveError",
    "BuildError",
    "EmptySourceError",
    "ErrorCategory",
    "InvalidPlaylistError",
    "JobNotFoundError",
    "PersistenceError",
    "SourceMissingError",
    "SpawnError",
    "StreamKeeperError",
    "TimerError",
    "ActiveInfo",
    "HistoryRecord",
    "Job",
    "JobStatus",
    "JobWithSource",
    "MediaItem",
    "MediaSource",
    "SourceKind",
    "SweepReport",
    "TerminationInfo",
    "OperationError",
    "OperationResult",
]
