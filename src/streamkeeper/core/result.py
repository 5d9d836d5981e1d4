"""
Operation result envelope.

Provides :class:`OperationResult`, the success/failure envelope returned by
every public manager operation (``start``, ``stop``, ...). No exception
crosses the public boundary: failures come back as ``success=False`` with a
human-readable ``message`` and a structured :class:`OperationError`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from .errors import ErrorCategory, StreamKeeperError

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class OperationError:
    """Structured error detail for failed operations.

    Attributes:
        code: Machine-readable code (``NOT_FOUND``, ``ALREADY_ACTIVE``, …).
        message: Human-readable description of the error.
        category: Optional :class:`ErrorCategory` for routing/alerting.
        details: Extra key/value context (paths, job ids, …).
        retryable: Whether the caller should retry the operation.
    """

    code: str
    message: str
    category: ErrorCategory | None = None
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False


@dataclass
class OperationResult(Generic[T]):
    """Envelope returned by every public operation.

    Factory methods :meth:`ok`, :meth:`fail` and :meth:`from_error` should be
    used instead of the constructor directly.

    Attributes:
        success: ``True`` when the operation completed without error.
        message: Human-readable summary (success or failure).
        data: Optional typed payload.
        error: Structured error (``None`` on success).
        metadata: Additional key/value pairs for debugging.
    """

    success: bool
    message: str = ""
    data: T | None = None
    error: OperationError | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        message: str = "",
        data: T | None = None,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> OperationResult[T]:
        """Create a successful result."""
        return cls(success=True, message=message, data=data, metadata=metadata or {})

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        *,
        category: ErrorCategory | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> OperationResult[T]:
        """Create a failed result."""
        return cls(
            success=False,
            message=message,
            error=OperationError(
                code=code,
                message=message,
                category=category,
                details=details or {},
                retryable=retryable,
            ),
            metadata=metadata or {},
        )

    @classmethod
    def from_error(cls, error: Exception) -> OperationResult[T]:
        """Convert an exception into a failed result."""
        if isinstance(error, StreamKeeperError):
            return cls.fail(
                error.code,
                error.message,
                category=error.category,
                details=dict(error.context),
                retryable=error.retryable,
            )
        return cls.fail("INTERNAL", str(error), category=ErrorCategory.INTERNAL)

    @property
    def error_message(self) -> str | None:
        """Shortcut for ``error.message`` (``None`` on success)."""
        return self.error.message if self.error else None

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a plain dict (for JSON responses)."""
        d: dict[str, Any] = {"success": self.success}
        if self.message:
            d["message"] = self.message
        if self.data is not None:
            d["data"] = self.data
        if self.error is not None:
            d["error"] = {
                "code": self.error.code,
                "message": self.error.message,
                "retryable": self.error.retryable,
            }
            if self.error.category is not None:
                d["error"]["category"] = self.error.category.value
            if self.error.details:
                d["error"]["details"] = self.error.details
        if self.metadata:
            d["metadata"] = self.metadata
        return d
