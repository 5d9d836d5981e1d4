"""Scheduler backend protocol.

Backends control WHEN a sweep runs; the trigger loop and the reconciler
control WHAT happens on each tick. Every periodic sweep of the manager
(start sweep, termination refresh, status sync, health sweep, log
eviction) is driven by its own backend instance.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

TickCallback = Callable[[], Awaitable[Any]]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Protocol for pluggable periodic timing backends.

    Implementations:
        - AsyncioSchedulerBackend: interval loop on the running event loop
    """

    name: str

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 60.0,
        *,
        run_immediately: bool = False,
    ) -> None:
        """Start calling *tick_callback* every *interval_seconds*."""
        ...

    async def stop(self) -> None:
        """Stop the loop; waits for a tick in progress to finish."""
        ...

    def health(self) -> dict[str, Any]:
        """Return backend health (healthy, backend, tick_count, last_tick)."""
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    failed_ticks: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "failed_ticks": self.failed_ticks,
            **self.extra,
        }
