"""Tests for the per-job log ring and history record construction."""

from __future__ import annotations

from datetime import timedelta

from streamkeeper.core.models import Job
from streamkeeper.execution.history import build_history_record
from streamkeeper.execution.logbuffer import LogRingBuffer


class TestLogRingBuffer:
    def test_append_and_get(self, clock):
        logs = LogRingBuffer(capacity=3, clock=clock)
        logs.append("j1", "a")
        logs.append("j1", "b")
        assert [e.message for e in logs.get("j1")] == ["a", "b"]
        assert logs.get("other") == []

    def test_capacity_drops_oldest(self, clock):
        logs = LogRingBuffer(capacity=100, clock=clock)
        for n in range(150):
            logs.append("j1", f"line {n}")
        entries = logs.get("j1")
        assert len(entries) == 100
        assert entries[0].message == "line 50"
        assert entries[-1].message == "line 149"

    def test_entry_to_dict(self, clock):
        entry = LogRingBuffer(clock=clock).append("j1", "hello")
        assert entry.to_dict() == {"timestamp": clock.now.isoformat(), "message": "hello"}

    def test_evict_stale_skips_active_and_recent(self, clock):
        logs = LogRingBuffer(clock=clock)
        logs.append("old-active", "x")
        logs.append("old-idle", "x")
        clock.advance(3000)
        logs.append("recent-idle", "x")
        clock.advance(700)

        evicted = logs.evict_stale(["old-active"], retention_seconds=3600)
        assert evicted == ["old-idle"]
        assert sorted(logs.job_ids()) == ["old-active", "recent-idle"]
        assert len(logs) == 2

    def test_remove(self, clock):
        logs = LogRingBuffer(clock=clock)
        logs.append("j1", "x")
        assert logs.remove("j1") is True
        assert logs.remove("j1") is False


class TestBuildHistoryRecord:
    def test_duration_is_floored(self, clock):
        start = clock.now
        job = Job(id="j1", title="Show", user_id="u1", source_id="v1", start_time=start)
        record = build_history_record(job, start + timedelta(seconds=95.9), source_title="Clip")
        assert record.duration_seconds == 95
        assert record.job_id == "j1"
        assert record.title == "Show"
        assert record.source_title == "Clip"
        assert record.platform == "Custom"
        assert record.id

    def test_explicit_start_time_wins(self, clock):
        job = Job(id="j1", start_time=clock.now - timedelta(hours=5))
        record = build_history_record(job, clock.now, start_time=clock.now - timedelta(seconds=10))
        assert record.duration_seconds == 10

    def test_sub_second_run_skipped(self, clock):
        job = Job(id="j1", start_time=clock.now)
        assert build_history_record(job, clock.now + timedelta(milliseconds=999)) is None

    def test_one_second_is_recorded(self, clock):
        job = Job(id="j1", start_time=clock.now)
        assert build_history_record(job, clock.now + timedelta(seconds=1)).duration_seconds == 1

    def test_no_start_time(self, clock):
        assert build_history_record(Job(id="j1"), clock.now) is None

    def test_copies_encoding_fields(self, clock):
        job = Job(
            id="j1",
            start_time=clock.now,
            platform="Twitch",
            use_advanced_settings=True,
            resolution="1920x1080",
            bitrate=6000,
            fps=60,
        )
        record = build_history_record(job, clock.now + timedelta(minutes=1))
        assert record.platform == "Twitch"
        assert (record.resolution, record.bitrate, record.fps) == ("1920x1080", 6000, 60)
        assert record.use_advanced_settings is True
