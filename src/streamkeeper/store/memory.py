"""In-memory job store.

Dict-backed implementation of :class:`JobStore` and :class:`HistorySink`.
Used by the test-suite and by embedders that keep job records elsewhere and
mirror them in.

Example:
    >>> store = InMemoryJobStore()
    >>> store.add_job(Job(id="j1", status=JobStatus.SCHEDULED))
    >>> await store.update_status("j1", JobStatus.LIVE)
    True
"""

from __future__ import annotations

from datetime import datetime

from streamkeeper.core.models import (
    HistoryRecord,
    Job,
    JobStatus,
    JobWithSource,
    MediaItem,
    MediaSource,
    SourceKind,
)
from streamkeeper.core.timestamps import ensure_utc, utc_now


class InMemoryJobStore:
    """Job store kept in plain dicts.

    Jobs are immutable; every write replaces the stored ``Job``. The
    ``status_writes`` log records each successful status write in order,
    which makes convergence easy to assert on.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._videos: dict[str, MediaItem] = {}
        self._playlists: dict[str, MediaSource] = {}
        self.history: list[HistoryRecord] = []
        self.status_writes: list[tuple[str, JobStatus]] = []

    # === Seeding ===

    def add_job(self, job: Job) -> Job:
        self._jobs[job.id] = job
        return job

    def add_video(self, item: MediaItem) -> MediaItem:
        self._videos[item.id] = item
        return item

    def add_playlist(
        self,
        playlist_id: str,
        items: list[MediaItem],
        *,
        title: str = "",
        shuffle: bool = False,
    ) -> MediaSource:
        source = MediaSource(
            kind=SourceKind.PLAYLIST,
            id=playlist_id,
            title=title,
            items=tuple(items),
            shuffle=shuffle,
        )
        self._playlists[playlist_id] = source
        return source

    def delete_job(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    def get(self, job_id: str) -> Job | None:
        """Synchronous lookup (tests)."""
        return self._jobs.get(job_id)

    # === JobStore ===

    async def find_by_id(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    async def find_all(
        self,
        user_id: str | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        jobs = list(self._jobs.values())
        if user_id is not None:
            jobs = [j for j in jobs if j.user_id == user_id]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return jobs

    async def find_scheduled_in_range(self, start: datetime, end: datetime) -> list[Job]:
        start, end = ensure_utc(start), ensure_utc(end)
        return sorted(
            (
                j
                for j in self._jobs.values()
                if j.status == JobStatus.SCHEDULED
                and j.schedule_time is not None
                and start <= j.schedule_time <= end
            ),
            key=lambda j: j.schedule_time,
        )

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        user_id: str | None = None,
        *,
        start_time_override: datetime | None = None,
    ) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        if user_id is not None and job.user_id is not None and job.user_id != user_id:
            return False

        changes: dict = {"status": status}
        if status == JobStatus.LIVE:
            changes["start_time"] = ensure_utc(start_time_override or utc_now())
        self._jobs[job_id] = job.with_changes(**changes)
        self.status_writes.append((job_id, status))
        return True

    async def get_with_source(self, job_id: str) -> JobWithSource | None:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        source: MediaSource | None = None
        if job.source_id is not None:
            if job.source_type == SourceKind.PLAYLIST:
                source = self._playlists.get(job.source_id)
            else:
                video = self._videos.get(job.source_id)
                if video is not None:
                    source = MediaSource(
                        kind=SourceKind.VIDEO,
                        id=video.id,
                        title=video.title,
                        items=(video,),
                    )
        return JobWithSource(job=job, source=source)

    # === HistorySink ===

    async def record_history(self, record: HistoryRecord) -> None:
        self.history.append(record)
