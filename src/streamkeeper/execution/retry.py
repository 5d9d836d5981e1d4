"""Crash-retry policy and per-job retry bookkeeping.

Example:
    >>> backoff = ExponentialBackoff(max_retries=10, base_delay=3.0, max_delay=60.0)
    >>> [backoff.next_delay(n) for n in range(6)]
    [3.0, 6.0, 12.0, 24.0, 48.0, 60.0]
    >>> backoff.should_retry(10)
    False
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from streamkeeper.core.logging import get_logger
from streamkeeper.core.timestamps import utc_now

logger = get_logger(__name__)


@dataclass
class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + jitter

    Attributes:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to spread simultaneous restarts
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_retries: int = 10
    base_delay: float = 3.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (zero-based)."""
        delay = min(
            self.base_delay * (self.multiplier ** attempt),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)

        return delay

    def should_retry(self, attempt: int) -> bool:
        """True while *attempt* is below the ceiling."""
        return attempt < self.max_retries


@dataclass
class RetryState:
    """Retry bookkeeping of one job.

    ``attempts`` only grows within a crash-retry episode. It returns to zero
    when a new episode opens (a non-retry start) or after sustained success.
    """

    attempts: int = 0
    last_success: datetime | None = None
    pending_retry: Any = None


class RetryTracker:
    """Registry of :class:`RetryState` keyed by job id."""

    def __init__(
        self,
        backoff: ExponentialBackoff,
        reset_interval_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backoff = backoff
        self.reset_interval_seconds = reset_interval_seconds
        self._clock = clock
        self._states: dict[str, RetryState] = {}

    def get(self, job_id: str) -> RetryState | None:
        return self._states.get(job_id)

    def attempts(self, job_id: str) -> int:
        state = self._states.get(job_id)
        return state.attempts if state else 0

    def begin_episode(self, job_id: str) -> RetryState:
        """Open a fresh episode: counter zero, no pending retry."""
        state = self._states.setdefault(job_id, RetryState())
        state.attempts = 0
        self._cancel_pending(state)
        return state

    def mark_running(self, job_id: str) -> None:
        """Start the sustained-success window at spawn time."""
        state = self._states.setdefault(job_id, RetryState())
        state.last_success = self._clock()
        state.pending_retry = None

    def heartbeat(self, job_id: str) -> bool:
        """Record a progress line. Returns True if the counter was reset."""
        state = self._states.get(job_id)
        if state is None:
            return False
        if state.last_success is None:
            state.last_success = self._clock()
        return self.check_reset(job_id)

    def check_reset(self, job_id: str) -> bool:
        """Zero the counter once the success window has lasted long enough."""
        state = self._states.get(job_id)
        if state is None or state.last_success is None:
            return False

        now = self._clock()
        if (now - state.last_success).total_seconds() < self.reset_interval_seconds:
            return False

        was = state.attempts
        state.last_success = now
        if was > 0:
            state.attempts = 0
            logger.info("retry_counter_reset", job_id=job_id, previous_attempts=was)
            return True
        return False

    def next_attempt(self, job_id: str) -> tuple[int, float] | None:
        """Consume one attempt.

        Returns:
            ``(attempt_number, delay_seconds)`` with a one-based attempt
            number, or ``None`` when attempts are exhausted.
        """
        state = self._states.setdefault(job_id, RetryState())
        if not self.backoff.should_retry(state.attempts):
            return None
        delay = self.backoff.next_delay(state.attempts)
        state.attempts += 1
        return state.attempts, delay

    def set_pending(self, job_id: str, handle: Any) -> None:
        state = self._states.setdefault(job_id, RetryState())
        self._cancel_pending(state)
        state.pending_retry = handle

    def is_retrying(self, job_id: str) -> bool:
        """Mid-episode: at least one attempt used, ceiling not reached."""
        state = self._states.get(job_id)
        if state is None:
            return False
        return 0 < state.attempts < self.backoff.max_retries

    def clear(self, job_id: str) -> None:
        """Drop the job's state and any pending retry timer."""
        state = self._states.pop(job_id, None)
        if state is not None:
            self._cancel_pending(state)

    def tracked_ids(self) -> list[str]:
        return list(self._states)

    @staticmethod
    def _cancel_pending(state: RetryState) -> None:
        if state.pending_retry is not None:
            state.pending_retry.cancel()
            state.pending_retry = None
