"""Run history records."""

from __future__ import annotations

import math
import uuid
from datetime import datetime

from streamkeeper.core.models import HistoryRecord, Job
from streamkeeper.core.timestamps import ensure_utc

MIN_HISTORY_DURATION_SECONDS = 1


def build_history_record(
    job: Job,
    end_time: datetime,
    *,
    start_time: datetime | None = None,
    source_title: str | None = None,
) -> HistoryRecord | None:
    """Snapshot one completed run of *job*.

    ``start_time`` defaults to the job's recorded start. Duration is floored
    to whole seconds. Returns ``None`` when there is no start time or the run
    lasted less than one second.
    """
    start = start_time or job.start_time
    if start is None:
        return None

    start, end = ensure_utc(start), ensure_utc(end_time)
    duration = math.floor((end - start).total_seconds())
    if duration < MIN_HISTORY_DURATION_SECONDS:
        return None

    return HistoryRecord(
        id=str(uuid.uuid4()),
        job_id=job.id,
        start_time=start,
        end_time=end,
        duration_seconds=duration,
        title=job.title,
        user_id=job.user_id,
        source_id=job.source_id,
        source_title=source_title,
        platform=job.platform or "Custom",
        platform_icon=job.platform_icon,
        resolution=job.resolution,
        bitrate=job.bitrate,
        fps=job.fps,
        use_advanced_settings=job.use_advanced_settings,
    )
