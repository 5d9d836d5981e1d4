"""SQLite job store.

Manifesto:
    The manager needs *some* persisted desired state to be runnable on its
    own. A single SQLite file holds jobs, their media sources and the run
    history; larger deployments plug their own :class:`JobStore` in.

Timestamps are stored as ISO-8601 UTC strings. Range filters are applied
after parsing so rows written with and without microseconds compare
correctly.

Tags:
    streamkeeper, store, sqlite, repository, history

Doc-Types:
    api-reference
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from streamkeeper.core.errors import PersistenceError
from streamkeeper.core.logging import get_logger
from streamkeeper.core.models import (
    HistoryRecord,
    Job,
    JobStatus,
    JobWithSource,
    MediaItem,
    MediaSource,
    SourceKind,
)
from streamkeeper.core.timestamps import ensure_utc, from_iso8601, to_iso8601, utc_now

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'offline',
    user_id TEXT,
    source_id TEXT,
    source_type TEXT NOT NULL DEFAULT 'video',
    schedule_time TEXT,
    end_time TEXT,
    start_time TEXT,
    rtmp_url TEXT NOT NULL DEFAULT '',
    stream_key TEXT NOT NULL DEFAULT '',
    loop_video INTEGER NOT NULL DEFAULT 0,
    use_advanced_settings INTEGER NOT NULL DEFAULT 0,
    resolution TEXT,
    bitrate INTEGER,
    fps INTEGER,
    platform TEXT,
    platform_icon TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs (status);

CREATE TABLE IF NOT EXISTS media (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    filepath TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS playlists (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    shuffle INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS playlist_items (
    playlist_id TEXT NOT NULL,
    media_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    PRIMARY KEY (playlist_id, position)
);

CREATE TABLE IF NOT EXISTS job_history (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    title TEXT,
    platform TEXT,
    platform_icon TEXT,
    source_id TEXT,
    source_title TEXT,
    resolution TEXT,
    bitrate INTEGER,
    fps INTEGER,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    duration_seconds INTEGER NOT NULL,
    use_advanced_settings INTEGER NOT NULL DEFAULT 0,
    user_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_job_history_job ON job_history (job_id);
"""

_JOB_COLUMNS = (
    "id", "title", "status", "user_id", "source_id", "source_type",
    "schedule_time", "end_time", "start_time", "rtmp_url", "stream_key",
    "loop_video", "use_advanced_settings", "resolution", "bitrate", "fps",
    "platform", "platform_icon",
)


class SQLiteJobStore:
    """Job store and history sink backed by one SQLite database.

    Example:
        >>> store = SQLiteJobStore.open("data/streams.db")
        >>> store.add_job(Job(id="j1", title="Morning show"))
        >>> await store.find_by_id("j1")
        Job(id='j1', ...)
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.conn.row_factory = sqlite3.Row
        self.initialize()

    @classmethod
    def open(cls, path: str | Path) -> SQLiteJobStore:
        """Open (and create) the database file at *path*."""
        path = Path(path)
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        return cls(sqlite3.connect(str(path)))

    def initialize(self) -> None:
        """Create tables if they do not exist."""
        self.conn.executescript(SCHEMA)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        try:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
            return cursor
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite error: {e}", cause=e) from e

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite error: {e}", cause=e) from e

    # === Seeding / admin ===

    def add_job(self, job: Job) -> Job:
        """Insert or replace a job record."""
        row = job.to_row()
        placeholders = ", ".join("?" for _ in _JOB_COLUMNS)
        self._execute(
            f"INSERT OR REPLACE INTO jobs ({', '.join(_JOB_COLUMNS)}, updated_at) "
            f"VALUES ({placeholders}, ?)",
            tuple(row[c] for c in _JOB_COLUMNS) + (to_iso8601(utc_now()),),
        )
        return job

    def delete_job(self, job_id: str) -> bool:
        return self._execute("DELETE FROM jobs WHERE id = ?", (job_id,)).rowcount > 0

    def add_media(self, item: MediaItem) -> MediaItem:
        self._execute(
            "INSERT OR REPLACE INTO media (id, title, filepath) VALUES (?, ?, ?)",
            (item.id, item.title, item.filepath),
        )
        return item

    def add_playlist(
        self,
        playlist_id: str,
        media_ids: list[str],
        *,
        title: str = "",
        shuffle: bool = False,
    ) -> None:
        self._execute(
            "INSERT OR REPLACE INTO playlists (id, title, shuffle) VALUES (?, ?, ?)",
            (playlist_id, title, 1 if shuffle else 0),
        )
        self._execute("DELETE FROM playlist_items WHERE playlist_id = ?", (playlist_id,))
        for position, media_id in enumerate(media_ids):
            self._execute(
                "INSERT INTO playlist_items (playlist_id, media_id, position) VALUES (?, ?, ?)",
                (playlist_id, media_id, position),
            )

    def list_history(self, job_id: str | None = None, limit: int = 50) -> list[HistoryRecord]:
        """Most recent runs first."""
        if job_id is None:
            rows = self._query(
                "SELECT * FROM job_history ORDER BY end_time DESC LIMIT ?", (limit,)
            )
        else:
            rows = self._query(
                "SELECT * FROM job_history WHERE job_id = ? ORDER BY end_time DESC LIMIT ?",
                (job_id, limit),
            )
        return [_history_from_row(r) for r in rows]

    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        """Synchronous variant of :meth:`find_all` for the CLI."""
        if status is None:
            rows = self._query("SELECT * FROM jobs ORDER BY id")
        else:
            rows = self._query("SELECT * FROM jobs WHERE status = ? ORDER BY id", (status.value,))
        return [Job.from_row(dict(r)) for r in rows]

    # === JobStore ===

    async def find_by_id(self, job_id: str) -> Job | None:
        rows = self._query("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return Job.from_row(dict(rows[0])) if rows else None

    async def find_all(
        self,
        user_id: str | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query(f"SELECT * FROM jobs{where} ORDER BY id", tuple(params))
        return [Job.from_row(dict(r)) for r in rows]

    async def find_scheduled_in_range(self, start: datetime, end: datetime) -> list[Job]:
        start, end = ensure_utc(start), ensure_utc(end)
        rows = self._query(
            "SELECT * FROM jobs WHERE status = ? AND schedule_time IS NOT NULL",
            (JobStatus.SCHEDULED.value,),
        )
        jobs = [Job.from_row(dict(r)) for r in rows]
        due = [j for j in jobs if j.schedule_time is not None and start <= j.schedule_time <= end]
        return sorted(due, key=lambda j: j.schedule_time)

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        user_id: str | None = None,
        *,
        start_time_override: datetime | None = None,
    ) -> bool:
        now = utc_now()
        sets = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status.value, to_iso8601(now)]
        if status == JobStatus.LIVE:
            sets.append("start_time = ?")
            params.append(to_iso8601(start_time_override or now))

        sql = f"UPDATE jobs SET {', '.join(sets)} WHERE id = ?"
        params.append(job_id)
        if user_id is not None:
            sql += " AND (user_id IS NULL OR user_id = ?)"
            params.append(user_id)

        updated = self._execute(sql, tuple(params)).rowcount > 0
        logger.debug("job_status_written", job_id=job_id, status=status.value, updated=updated)
        return updated

    async def get_with_source(self, job_id: str) -> JobWithSource | None:
        job = await self.find_by_id(job_id)
        if job is None:
            return None
        if job.source_id is None:
            return JobWithSource(job=job, source=None)

        if job.source_type == SourceKind.PLAYLIST:
            rows = self._query("SELECT * FROM playlists WHERE id = ?", (job.source_id,))
            if not rows:
                return JobWithSource(job=job, source=None)
            playlist = rows[0]
            item_rows = self._query(
                "SELECT m.id, m.title, m.filepath FROM playlist_items pi "
                "JOIN media m ON m.id = pi.media_id "
                "WHERE pi.playlist_id = ? ORDER BY pi.position",
                (job.source_id,),
            )
            items = tuple(
                MediaItem(id=r["id"], title=r["title"], filepath=r["filepath"])
                for r in item_rows
            )
            source = MediaSource(
                kind=SourceKind.PLAYLIST,
                id=playlist["id"],
                title=playlist["title"],
                items=items,
                shuffle=bool(playlist["shuffle"]),
            )
            return JobWithSource(job=job, source=source)

        rows = self._query("SELECT * FROM media WHERE id = ?", (job.source_id,))
        if not rows:
            return JobWithSource(job=job, source=None)
        item = MediaItem(id=rows[0]["id"], title=rows[0]["title"], filepath=rows[0]["filepath"])
        return JobWithSource(
            job=job,
            source=MediaSource(kind=SourceKind.VIDEO, id=item.id, title=item.title, items=(item,)),
        )

    # === HistorySink ===

    async def record_history(self, record: HistoryRecord) -> None:
        self._execute(
            """
            INSERT INTO job_history (
                id, job_id, title, platform, platform_icon, source_id, source_title,
                resolution, bitrate, fps, start_time, end_time, duration_seconds,
                use_advanced_settings, user_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.job_id,
                record.title,
                record.platform,
                record.platform_icon,
                record.source_id,
                record.source_title,
                record.resolution,
                record.bitrate,
                record.fps,
                to_iso8601(record.start_time),
                to_iso8601(record.end_time),
                record.duration_seconds,
                1 if record.use_advanced_settings else 0,
                record.user_id,
            ),
        )


def _history_from_row(row: sqlite3.Row) -> HistoryRecord:
    return HistoryRecord(
        id=row["id"],
        job_id=row["job_id"],
        title=row["title"] or "",
        platform=row["platform"] or "Custom",
        platform_icon=row["platform_icon"],
        source_id=row["source_id"],
        source_title=row["source_title"],
        resolution=row["resolution"],
        bitrate=row["bitrate"],
        fps=row["fps"],
        start_time=from_iso8601(row["start_time"]),
        end_time=from_iso8601(row["end_time"]),
        duration_seconds=row["duration_seconds"],
        use_advanced_settings=bool(row["use_advanced_settings"]),
        user_id=row["user_id"],
    )
