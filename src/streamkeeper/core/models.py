"""
Domain models shared by the store, the supervisor and the schedulers.

The manager never owns job records: ``Job`` is a read view produced by the
job store. The in-memory bookkeeping types (active entries, retry state,
termination timers, log entries) live next to the component that owns them.

STDLIB ONLY - NO PYDANTIC.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from .timestamps import from_iso8601, to_iso8601


class JobStatus(str, Enum):
    """Desired lifecycle state of a stream job."""

    SCHEDULED = "scheduled"
    LIVE = "live"
    OFFLINE = "offline"


class SourceKind(str, Enum):
    """What a job's ``source_id`` points at."""

    VIDEO = "video"
    PLAYLIST = "playlist"


@dataclass(frozen=True)
class Job:
    """Read view of a persisted stream job.

    ``schedule_time`` is the planned start, ``end_time`` the planned end and
    ``start_time`` the actual start recorded when the job last went live.
    """

    id: str
    title: str = ""
    status: JobStatus = JobStatus.OFFLINE
    user_id: str | None = None
    source_id: str | None = None
    source_type: SourceKind = SourceKind.VIDEO
    schedule_time: datetime | None = None
    end_time: datetime | None = None
    start_time: datetime | None = None
    rtmp_url: str = ""
    stream_key: str = ""
    loop_video: bool = False
    use_advanced_settings: bool = False
    resolution: str | None = None
    bitrate: int | None = None
    fps: int | None = None
    platform: str | None = None
    platform_icon: str | None = None

    @property
    def destination(self) -> str:
        """Publish endpoint: ``rtmp_url`` joined with ``stream_key``."""
        base = self.rtmp_url.rstrip("/")
        if not self.stream_key:
            return base
        return f"{base}/{self.stream_key}"

    @property
    def is_live(self) -> bool:
        return self.status == JobStatus.LIVE

    def with_changes(self, **changes: Any) -> Job:
        """Return a copy with *changes* applied."""
        return replace(self, **changes)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Job:
        """Build a job from a store row (ISO strings, 0/1 flags)."""
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            status=JobStatus(row.get("status") or JobStatus.OFFLINE.value),
            user_id=row.get("user_id"),
            source_id=row.get("source_id"),
            source_type=SourceKind(row.get("source_type") or SourceKind.VIDEO.value),
            schedule_time=from_iso8601(row.get("schedule_time")),
            end_time=from_iso8601(row.get("end_time")),
            start_time=from_iso8601(row.get("start_time")),
            rtmp_url=row.get("rtmp_url") or "",
            stream_key=row.get("stream_key") or "",
            loop_video=bool(row.get("loop_video")),
            use_advanced_settings=bool(row.get("use_advanced_settings")),
            resolution=row.get("resolution"),
            bitrate=row.get("bitrate"),
            fps=row.get("fps"),
            platform=row.get("platform"),
            platform_icon=row.get("platform_icon"),
        )

    def to_row(self) -> dict[str, Any]:
        """Inverse of :meth:`from_row`."""
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "user_id": self.user_id,
            "source_id": self.source_id,
            "source_type": self.source_type.value,
            "schedule_time": to_iso8601(self.schedule_time),
            "end_time": to_iso8601(self.end_time),
            "start_time": to_iso8601(self.start_time),
            "rtmp_url": self.rtmp_url,
            "stream_key": self.stream_key,
            "loop_video": 1 if self.loop_video else 0,
            "use_advanced_settings": 1 if self.use_advanced_settings else 0,
            "resolution": self.resolution,
            "bitrate": self.bitrate,
            "fps": self.fps,
            "platform": self.platform,
            "platform_icon": self.platform_icon,
        }


@dataclass(frozen=True)
class MediaItem:
    """One media file on disk; ``filepath`` is relative to the media root."""

    id: str
    filepath: str
    title: str = ""


@dataclass(frozen=True)
class MediaSource:
    """Resolved source of a job: a single video or an ordered playlist."""

    kind: SourceKind
    id: str
    title: str = ""
    items: tuple[MediaItem, ...] = ()
    shuffle: bool = False


@dataclass(frozen=True)
class JobWithSource:
    """A job together with its resolved source (``None`` when missing)."""

    job: Job
    source: MediaSource | None = None


@dataclass(frozen=True)
class HistoryRecord:
    """One completed run of a job."""

    id: str
    job_id: str
    start_time: datetime
    end_time: datetime
    duration_seconds: int
    title: str = ""
    user_id: str | None = None
    source_id: str | None = None
    source_title: str | None = None
    platform: str = "Custom"
    platform_icon: str | None = None
    resolution: str | None = None
    bitrate: int | None = None
    fps: int | None = None
    use_advanced_settings: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "title": self.title,
            "user_id": self.user_id,
            "source_id": self.source_id,
            "source_title": self.source_title,
            "platform": self.platform,
            "platform_icon": self.platform_icon,
            "resolution": self.resolution,
            "bitrate": self.bitrate,
            "fps": self.fps,
            "start_time": to_iso8601(self.start_time),
            "end_time": to_iso8601(self.end_time),
            "duration_seconds": self.duration_seconds,
            "use_advanced_settings": self.use_advanced_settings,
        }


@dataclass(frozen=True)
class ActiveInfo:
    """Public snapshot of one running job."""

    job_id: str
    user_id: str | None
    start_time: datetime
    pid: int | None
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "user_id": self.user_id,
            "start_time": to_iso8601(self.start_time),
            "pid": self.pid,
            "retry_count": self.retry_count,
        }


@dataclass(frozen=True)
class TerminationInfo:
    """Public snapshot of an armed termination timer."""

    job_id: str
    target_end: datetime
    is_long_duration: bool
    remaining_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "target_end": to_iso8601(self.target_end),
            "is_long_duration": self.is_long_duration,
            "remaining_seconds": self.remaining_seconds,
        }


@dataclass
class SweepReport:
    """Outcome counters of one trigger or reconciliation sweep."""

    name: str
    examined: int = 0
    acted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "examined": self.examined,
            "acted": list(self.acted),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
        }


__all__ = [
    "JobStatus",
    "SourceKind",
    "Job",
    "MediaItem",
    "MediaSource",
    "JobWithSource",
    "HistoryRecord",
    "ActiveInfo",
    "TerminationInfo",
    "SweepReport",
]
