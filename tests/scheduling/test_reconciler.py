"""Tests for streamkeeper.scheduling.reconciler.Reconciler."""

from __future__ import annotations

import asyncio
import signal
from datetime import timedelta

import pytest

from streamkeeper.core.errors import ErrorCategory, PersistenceError
from streamkeeper.core.models import JobStatus
from streamkeeper.scheduling.reconciler import EXITED_PROCESS

DRIFT = ErrorCategory.DRIFT_DETECTED.value
ORPHAN = ErrorCategory.ORPHAN_PROCESS.value


class TestStatusSync:
    @pytest.mark.asyncio
    async def test_live_without_process_goes_offline(self, reconciler, termination, store, clock, add_job):
        add_job("job-1", status=JobStatus.LIVE, start_time=clock.now - timedelta(hours=1))
        termination.arm("job-1", 30)

        report = await reconciler.sync_statuses()

        assert report.by_category(DRIFT) == ["job-1"]
        assert store.get("job-1").status == JobStatus.OFFLINE
        assert termination.query("job-1") is None
        assert reconciler.last_sync is report

    @pytest.mark.asyncio
    async def test_recent_start_is_skipped(self, reconciler, store, clock, add_job):
        add_job("job-1", status=JobStatus.LIVE, start_time=clock.now - timedelta(seconds=10))
        report = await reconciler.sync_statuses()

        assert report.skipped == {"job-1": "recently started"}
        assert store.get("job-1").status == JobStatus.LIVE

    @pytest.mark.asyncio
    async def test_retrying_job_is_skipped(self, reconciler, supervisor, store, runtime, clock, add_job):
        add_job("job-1")
        await supervisor.start("job-1")
        await runtime.last.crash(1)
        clock.advance(120)

        report = await reconciler.sync_statuses()
        assert report.skipped == {"job-1": "retrying"}
        assert store.get("job-1").status == JobStatus.LIVE

    @pytest.mark.asyncio
    async def test_starting_job_is_skipped(self, reconciler, supervisor, store, runtime, clock, add_job):
        add_job("job-1", status=JobStatus.LIVE, start_time=clock.now - timedelta(hours=1))
        runtime.spawn_gate = asyncio.Event()
        start_task = asyncio.create_task(supervisor.start("job-1"))
        for _ in range(5):
            await asyncio.sleep(0)

        report = await reconciler.sync_statuses()
        runtime.spawn_gate.set()
        await start_task

        assert report.skipped == {"job-1": "starting"}
        assert store.get("job-1").status == JobStatus.LIVE

    @pytest.mark.asyncio
    async def test_active_job_is_left_alone(self, reconciler, supervisor, store, clock, add_job):
        add_job("job-1")
        await supervisor.start("job-1")
        clock.advance(120)

        report = await reconciler.sync_statuses()
        assert report.findings == []
        assert report.skipped == {}
        assert report.active_after == 1

    @pytest.mark.asyncio
    async def test_orphan_process_is_killed(self, reconciler, supervisor, store, runtime, add_job):
        add_job("job-1")
        await supervisor.start("job-1")
        store.delete_job("job-1")

        report = await reconciler.sync_statuses()
        await runtime.settle()

        assert report.by_category(ORPHAN) == ["job-1"]
        assert runtime.last.signals == [signal.SIGTERM]
        assert supervisor.list_active() == []
        assert report.active_after == 0

    @pytest.mark.asyncio
    async def test_running_but_not_live_is_marked_live(self, reconciler, supervisor, store, add_job):
        add_job("job-1")
        await supervisor.start("job-1")
        store.add_job(store.get("job-1").with_changes(status=JobStatus.OFFLINE))

        report = await reconciler.sync_statuses()
        assert report.by_category(DRIFT) == ["job-1"]
        assert report.findings[0].action == "marked_live"
        assert store.get("job-1").status == JobStatus.LIVE
        assert supervisor.is_active("job-1") is True

    @pytest.mark.asyncio
    async def test_exited_entry_is_cleaned_up(self, reconciler, supervisor, store, runtime, timers, add_job):
        add_job("job-1")
        await supervisor.start("job-1")
        store.add_job(store.get("job-1").with_changes(status=JobStatus.SCHEDULED))
        handle = runtime.last
        handle.mark_exited(1)

        report = await reconciler.sync_statuses()
        assert report.by_category(EXITED_PROCESS) == ["job-1"]
        assert store.get("job-1").status == JobStatus.OFFLINE
        assert supervisor.list_active() == []

        await handle.crash(1)
        assert timers.pending("retry:") == []

    @pytest.mark.asyncio
    async def test_item_failure_does_not_abort_sweep(self, reconciler, store, clock, add_job, monkeypatch):
        hour_ago = clock.now - timedelta(hours=1)
        add_job("bad", status=JobStatus.LIVE, start_time=hour_ago)
        add_job("good", status=JobStatus.LIVE, start_time=hour_ago)
        original = store.update_status

        async def update_status(job_id, status, user_id=None, **kwargs):
            if job_id == "bad":
                raise PersistenceError("database is locked")
            return await original(job_id, status, user_id, **kwargs)

        monkeypatch.setattr(store, "update_status", update_status)

        report = await reconciler.sync_statuses()
        assert "bad" in report.errors
        assert report.by_category(DRIFT) == ["good"]
        assert store.get("good").status == JobStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_sync_is_idempotent(self, reconciler, store, clock, add_job):
        add_job("job-1", status=JobStatus.LIVE, start_time=clock.now - timedelta(hours=1))
        await reconciler.sync_statuses()
        writes = len(store.status_writes)

        again = await reconciler.sync_statuses()
        assert again.findings == []
        assert len(store.status_writes) == writes


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_reaps_exited_process(self, reconciler, supervisor, store, runtime, timers, add_job):
        add_job("job-1")
        await supervisor.start("job-1")
        handle = runtime.last
        handle.mark_exited(1)

        report = await reconciler.health_check()
        assert report.reaped == ["job-1"]
        assert store.get("job-1").status == JobStatus.OFFLINE
        assert supervisor.list_active() == []

        await handle.crash(1)
        assert timers.pending("retry:") == []

    @pytest.mark.asyncio
    async def test_reevaluates_retry_reset(self, reconciler, supervisor, runtime, timers, clock, add_job):
        add_job("job-1")
        await supervisor.start("job-1")
        await runtime.last.crash(1)
        await timers.fire_next("retry:")
        assert supervisor.retries.attempts("job-1") == 1

        clock.advance(1800)
        report = await reconciler.health_check()
        assert report.checked == 1
        assert report.retry_resets == ["job-1"]
        assert supervisor.retries.attempts("job-1") == 0
        assert reconciler.last_health is report

    @pytest.mark.asyncio
    async def test_healthy_process_untouched(self, reconciler, supervisor, add_job):
        add_job("job-1")
        await supervisor.start("job-1")
        report = await reconciler.health_check()
        assert report.reaped == []
        assert report.retry_resets == []
        assert supervisor.is_active("job-1") is True


class TestLogCleanup:
    @pytest.mark.asyncio
    async def test_evicts_only_stale_inactive_logs(self, reconciler, supervisor, clock, add_job):
        add_job("stopped")
        add_job("running")
        await supervisor.start("stopped")
        await supervisor.stop("stopped")
        await supervisor.start("running")

        clock.advance(3601)
        evicted = await reconciler.cleanup_logs()

        assert evicted == ["stopped"]
        assert supervisor.get_logs("stopped") == []
        assert supervisor.get_logs("running")

    @pytest.mark.asyncio
    async def test_recent_logs_are_kept(self, reconciler, supervisor, clock, add_job):
        add_job("stopped")
        await supervisor.start("stopped")
        await supervisor.stop("stopped")

        clock.advance(600)
        assert await reconciler.cleanup_logs() == []
