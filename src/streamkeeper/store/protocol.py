"""Job store and history sink protocols.

The manager reads and writes job records only through these narrow async
interfaces. Every call is a suspension point: callers re-validate their
in-memory state after each await.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from streamkeeper.core.models import HistoryRecord, Job, JobStatus, JobWithSource


@runtime_checkable
class JobStore(Protocol):
    """Persisted desired state of stream jobs.

    Implementations:
        - InMemoryJobStore: dict-backed (tests, embedding)
        - SQLiteJobStore: stdlib sqlite3 (default for ``streamkeeper run``)

    Failures surface as :class:`~streamkeeper.core.errors.PersistenceError`.
    """

    async def find_by_id(self, job_id: str) -> Job | None:
        """Return the job or ``None`` when it does not exist."""
        ...

    async def find_all(
        self,
        user_id: str | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        """Return jobs, optionally filtered by owner and status."""
        ...

    async def find_scheduled_in_range(self, start: datetime, end: datetime) -> list[Job]:
        """Return ``scheduled`` jobs whose ``schedule_time`` lies in [start, end]."""
        ...

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        user_id: str | None = None,
        *,
        start_time_override: datetime | None = None,
    ) -> bool:
        """Write a new status.

        Going ``live`` records ``start_time`` (the override, or now). When
        *user_id* is given the write only applies to a job owned by that user.

        Returns:
            True if a row was updated.
        """
        ...

    async def get_with_source(self, job_id: str) -> JobWithSource | None:
        """Return the job with its resolved video or playlist source."""
        ...


@runtime_checkable
class HistorySink(Protocol):
    """Receives one record per completed job run."""

    async def record_history(self, record: HistoryRecord) -> None:
        ...
