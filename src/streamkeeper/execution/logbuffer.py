"""Bounded per-job diagnostic log."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from streamkeeper.core.timestamps import to_iso8601, utc_now


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": to_iso8601(self.timestamp), "message": self.message}


class LogRingBuffer:
    """Fixed-capacity ring of :class:`LogEntry` per job id.

    The oldest entry is dropped once a ring holds ``capacity`` entries.
    Rings outlive their process so operators can read why a stream ended;
    :meth:`evict_stale` removes them once the job is inactive and quiet.
    """

    def __init__(self, capacity: int = 100, clock: Callable[[], datetime] = utc_now) -> None:
        self.capacity = capacity
        self._clock = clock
        self._rings: dict[str, deque[LogEntry]] = {}

    def append(self, job_id: str, message: str) -> LogEntry:
        entry = LogEntry(timestamp=self._clock(), message=message)
        ring = self._rings.get(job_id)
        if ring is None:
            ring = self._rings[job_id] = deque(maxlen=self.capacity)
        ring.append(entry)
        return entry

    def get(self, job_id: str) -> list[LogEntry]:
        """Entries oldest first (empty when none)."""
        return list(self._rings.get(job_id, ()))

    def remove(self, job_id: str) -> bool:
        return self._rings.pop(job_id, None) is not None

    def job_ids(self) -> list[str]:
        return list(self._rings)

    def evict_stale(self, active_ids: Iterable[str], retention_seconds: float) -> list[str]:
        """Drop rings of inactive jobs whose last entry is older than the retention window."""
        active = set(active_ids)
        now = self._clock()
        evicted: list[str] = []
        for job_id, ring in list(self._rings.items()):
            if job_id in active:
                continue
            if ring and (now - ring[-1].timestamp).total_seconds() <= retention_seconds:
                continue
            del self._rings[job_id]
            evicted.append(job_id)
        return evicted

    def __len__(self) -> int:
        return len(self._rings)
