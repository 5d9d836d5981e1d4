"""
Structured error types for the stream lifecycle manager.

Every failure the manager can hit while driving an encoder process has a
typed error here, with a category that says *where* it came from and a
retryable flag that says whether trying again could help.

Manifesto:
    - **Typed Error Hierarchy:** One error type per failure domain
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry job ids and paths for logging
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                     StreamKeeperError                            │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  JobNotFoundError   AlreadyActiveError   SpawnError             │
        │  (NOT_FOUND)        (ALREADY_ACTIVE)     (SPAWN, retryable)     │
        │                                                                  │
        │  BuildError         PersistenceError     TimerError             │
        │  (BUILD)            (PERSISTENCE,        (INTERNAL)             │
        │       │              retryable)                                 │
        │  SourceMissingError                                              │
        │  EmptySourceError                                                │
        │  InvalidPlaylistError                                            │
        └─────────────────────────────────────────────────────────────────┘

    ``CRASH_EXIT``, ``CLEAN_EXIT``, ``ORPHAN_PROCESS`` and ``DRIFT_DETECTED``
    are categories without exception classes: they describe process exits and
    reconciliation findings, which are reported, never raised.

Examples:
    >>> err = SourceMissingError("Video file not found").with_context(job_id="abc")
    >>> err.category
    <ErrorCategory.BUILD: 'BUILD'>
    >>> err.to_dict()["context"]
    {'job_id': 'abc'}

Tags:
    error-handling, exception-hierarchy, retry-logic, streamkeeper

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing.

    Attributes:
        NOT_FOUND: Job or its source record is missing
        ALREADY_ACTIVE: A process already runs for the job
        BUILD: Source media missing, empty or malformed
        SPAWN: The encoder process failed to launch
        CRASH_EXIT: Abnormal process termination (retried)
        CLEAN_EXIT: Normal process termination (not retried)
        PERSISTENCE: A store read or write failed
        ORPHAN_PROCESS: A process runs without a backing job record
        DRIFT_DETECTED: Store status and process table disagree
        CONFIG: Invalid settings
        INTERNAL: Bugs, unexpected state
    """

    NOT_FOUND = "NOT_FOUND"
    ALREADY_ACTIVE = "ALREADY_ACTIVE"
    BUILD = "BUILD"
    SPAWN = "SPAWN"
    CRASH_EXIT = "CRASH_EXIT"
    CLEAN_EXIT = "CLEAN_EXIT"
    PERSISTENCE = "PERSISTENCE"
    ORPHAN_PROCESS = "ORPHAN_PROCESS"
    DRIFT_DETECTED = "DRIFT_DETECTED"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


class StreamKeeperError(Exception):
    """
    Base exception for all stream manager errors.

    Subclasses set ``default_category``, ``default_retryable`` and ``code``.
    ``code`` is the machine-readable identifier surfaced in
    :class:`~streamkeeper.core.result.OperationError`.

    Examples:
        >>> error = StreamKeeperError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    code: str = "INTERNAL"

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> StreamKeeperError:
        """
        Add context to this error (fluent API).

        Usage:
            raise SpawnError("ffmpeg missing").with_context(job_id=job_id)
        """
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.context:
            result["context"] = dict(self.context)
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# LOOKUP / STATE ERRORS
# =============================================================================


class JobNotFoundError(StreamKeeperError):
    """Job (or the record it references) does not exist in the store."""

    default_category = ErrorCategory.NOT_FOUND
    code = "NOT_FOUND"


class AlreadyActiveError(StreamKeeperError):
    """A process is already running (or starting) for the job."""

    default_category = ErrorCategory.ALREADY_ACTIVE
    code = "ALREADY_ACTIVE"


# =============================================================================
# COMMAND BUILD ERRORS (Never Retryable)
# =============================================================================


class BuildError(StreamKeeperError):
    """The encoder command could not be built from the job's source."""

    default_category = ErrorCategory.BUILD
    code = "BUILD_ERROR"


class SourceMissingError(BuildError):
    """Referenced video, playlist or media file is absent."""

    code = "SOURCE_MISSING"


class EmptySourceError(BuildError):
    """Referenced playlist has no items."""

    code = "EMPTY_SOURCE"


class InvalidPlaylistError(BuildError):
    """Playlist record is malformed (bad item paths, unknown source type)."""

    code = "INVALID_PLAYLIST"


# =============================================================================
# RUNTIME ERRORS
# =============================================================================


class SpawnError(StreamKeeperError):
    """The encoder process failed to launch."""

    default_category = ErrorCategory.SPAWN
    default_retryable = True
    code = "SPAWN_ERROR"


class PersistenceError(StreamKeeperError):
    """A job store read or write failed mid-transition.

    Retryable: store convergence is deferred to the next reconciliation
    sweep rather than retried inline.
    """

    default_category = ErrorCategory.PERSISTENCE
    default_retryable = True
    code = "PERSISTENCE_ERROR"


class TimerError(StreamKeeperError):
    """A timer was requested with a delay the timer facility cannot hold."""

    code = "TIMER_ERROR"


def categorize_error(error: Exception) -> ErrorCategory:
    """Return the category of *error*, ``INTERNAL`` for foreign exceptions."""
    if isinstance(error, StreamKeeperError):
        return error.category
    return ErrorCategory.INTERNAL


def error_code(error: Exception) -> str:
    """Return the machine-readable code of *error*."""
    if isinstance(error, StreamKeeperError):
        return error.code
    return "INTERNAL"


__all__ = [
    "ErrorCategory",
    "StreamKeeperError",
    "JobNotFoundError",
    "AlreadyActiveError",
    "BuildError",
    "SourceMissingError",
    "EmptySourceError",
    "InvalidPlaylistError",
    "SpawnError",
    "PersistenceError",
    "TimerError",
    "categorize_error",
    "error_code",
]
