"""Tests for OpsScheduler run bookkeeping, locking and the job table."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.app.core.redis import JobLock
from src.app.scheduler import OpsScheduler, build_jobs


def _lock(token: str | None = "tok-1") -> MagicMock:
    lock = MagicMock()
    lock.acquire = AsyncMock(return_value=token)
    lock.release = AsyncMock(return_value=True)
    return lock


# ── Manual runs ────────────────────────────────────────────────────────────


class TestRunManual:
    async def test_success_recorded(self):
        job = AsyncMock(return_value={"success": True, "sent": 3})
        scheduler = OpsScheduler({"meet_reminders": job})

        run = await scheduler.run_manual("meet_reminders")

        assert run.status == "success"
        assert run.trigger == "manual"
        assert run.result == {"success": True, "sent": 3}
        assert run.finished_at is not None
        trigger, run_id = job.await_args.args
        assert trigger == "manual"
        assert run_id == run.run_id

    async def test_unsuccessful_result_marks_failed(self):
        scheduler = OpsScheduler({"mql_sync": AsyncMock(return_value={"success": False})})
        run = await scheduler.run_manual("mql_sync")
        assert run.status == "failed"

    async def test_exception_marks_failed(self):
        scheduler = OpsScheduler({"mql_sync": AsyncMock(side_effect=RuntimeError("boom"))})
        run = await scheduler.run_manual("mql_sync")
        assert run.status == "failed"
        assert run.error == "boom"
        assert scheduler.get_status()["jobs"]["mql_sync"]["processing"] is False

    async def test_unknown_job(self):
        scheduler = OpsScheduler({"mql_sync": AsyncMock()})
        with pytest.raises(KeyError):
            await scheduler.run_manual("nope")

    async def test_overlapping_run_is_skipped(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(trigger, run_id):
            started.set()
            await release.wait()
            return {"success": True}

        scheduler = OpsScheduler({"invoice_processing": slow})
        first = asyncio.create_task(scheduler.run_manual("invoice_processing"))
        await started.wait()

        second = await scheduler.run_manual("invoice_processing")
        release.set()
        first_run = await first

        assert second.status == "skipped"
        assert second.error == "already running"
        assert first_run.status == "success"


# ── Locks ──────────────────────────────────────────────────────────────────


class TestJobLock:
    async def test_lock_acquired_and_released(self):
        lock = _lock()
        scheduler = OpsScheduler({"stripe_refresh": AsyncMock(return_value={})}, job_lock=lock)

        run = await scheduler.run_manual("stripe_refresh")

        assert run.status == "success"
        lock.acquire.assert_awaited_once_with("job:stripe_refresh")
        lock.release.assert_awaited_once_with("job:stripe_refresh", "tok-1")

    async def test_held_lock_skips(self):
        job = AsyncMock()
        scheduler = OpsScheduler({"stripe_refresh": job}, job_lock=_lock(None))

        run = await scheduler.run_manual("stripe_refresh")

        assert run.status == "skipped"
        job.assert_not_awaited()

    async def test_redis_down_runs_anyway(self):
        lock = _lock()
        lock.acquire.side_effect = ConnectionError("redis down")
        job = AsyncMock(return_value={})
        scheduler = OpsScheduler({"stripe_refresh": job}, job_lock=lock)

        run = await scheduler.run_manual("stripe_refresh")

        assert run.status == "success"
        lock.release.assert_not_awaited()

    async def test_redis_down_still_blocks_overlap(self):
        lock = _lock()

        async def failing_acquire(name):
            await asyncio.sleep(0)
            raise ConnectionError("redis down")

        lock.acquire.side_effect = failing_acquire
        running = 0
        peak = 0

        async def job(trigger, run_id):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return {}

        scheduler = OpsScheduler({"stripe_refresh": job}, job_lock=lock)
        runs = await asyncio.gather(
            scheduler.run_manual("stripe_refresh"),
            scheduler.run_manual("stripe_refresh"),
        )

        assert peak == 1
        assert sorted(run.status for run in runs) == ["skipped", "success"]
        assert scheduler.get_status()["jobs"]["stripe_refresh"]["processing"] is False

    async def test_held_lock_clears_processing_flag(self):
        job = AsyncMock(return_value={})
        lock = _lock(None)
        scheduler = OpsScheduler({"stripe_refresh": job}, job_lock=lock)

        await scheduler.run_manual("stripe_refresh")
        lock.acquire.return_value = "tok-2"
        run = await scheduler.run_manual("stripe_refresh")

        assert run.status == "success"
        job.assert_awaited_once()


# ── Status and lifecycle ───────────────────────────────────────────────────


class TestStatus:
    async def test_history_newest_first(self):
        scheduler = OpsScheduler(
            {"mql_sync": AsyncMock(return_value={}), "calendar_scan": AsyncMock(return_value={})}
        )
        await scheduler.run_manual("mql_sync")
        await scheduler.run_manual("calendar_scan")

        status = scheduler.get_status()

        assert status["running"] is False
        assert status["timezone"] == "Europe/Warsaw"
        assert [run["job"] for run in status["history"]] == ["calendar_scan", "mql_sync"]
        assert status["jobs"]["mql_sync"]["last_run"]["status"] == "success"
        assert status["jobs"]["calendar_scan"]["next_run"] is None

    async def test_start_registers_cron_jobs_and_retry(self):
        scheduler = OpsScheduler(
            {"mql_sync": AsyncMock(side_effect=RuntimeError("boom")), "custom": AsyncMock()},
            timezone="UTC",
        )
        assert scheduler.start(run_startup_job=False) is True
        try:
            status = scheduler.get_status()
            assert status["running"] is True
            assert status["jobs"]["mql_sync"]["next_run"] is not None
            assert status["jobs"]["custom"]["next_run"] is None

            run = await scheduler._execute("mql_sync", "cron")
            assert run.status == "failed"
            ids = {job.id for job in scheduler._scheduler.get_jobs()}
            assert "ops_mql_sync_retry" in ids
        finally:
            scheduler.stop()
        assert scheduler.get_status()["running"] is False


# ── Job table ──────────────────────────────────────────────────────────────


def _services(**overrides) -> SimpleNamespace:
    values = dict(
        invoices=MagicMock(process_pending_invoices=AsyncMock(return_value={"total": 0})),
        proforma_reminders=MagicMock(process_all_deals=AsyncMock(return_value={})),
        meet_reminders=MagicMock(
            daily_calendar_scan=AsyncMock(return_value={}),
            process_scheduled_reminders=AsyncMock(return_value={}),
        ),
        mql_sync=MagicMock(run=AsyncMock(return_value={})),
        payment_sessions=MagicMock(refresh_open_sessions=AsyncMock(return_value={})),
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestBuildJobs:
    def test_all_jobs(self):
        assert set(build_jobs(_services())) == {
            "invoice_processing",
            "proforma_reminders",
            "calendar_scan",
            "meet_reminders",
            "mql_sync",
            "stripe_refresh",
        }

    def test_disabled_integrations_left_out(self):
        jobs = build_jobs(
            _services(invoices=None, proforma_reminders=None, meet_reminders=None, payment_sessions=None)
        )
        assert list(jobs) == ["mql_sync"]

    async def test_jobs_forward_trigger_and_run_id(self):
        services = _services()
        jobs = build_jobs(services)

        await jobs["calendar_scan"]("cron", "run-1")
        await jobs["proforma_reminders"]("manual", "run-2")

        services.meet_reminders.daily_calendar_scan.assert_awaited_once_with(trigger="cron", run_id="run-1")
        services.proforma_reminders.process_all_deals.assert_awaited_once_with(trigger="manual", run_id="run-2")


# ── Redis lock ─────────────────────────────────────────────────────────────


class TestRedisJobLock:
    async def test_acquire_sets_nx_with_ttl(self):
        redis = MagicMock(set=AsyncMock(return_value=True))
        token = await JobLock(redis, default_ttl=60).acquire("job:mql_sync")

        assert token
        redis.set.assert_awaited_once_with("salesops:lock:job:mql_sync", token, nx=True, ex=60)

    async def test_acquire_busy(self):
        redis = MagicMock(set=AsyncMock(return_value=None))
        assert await JobLock(redis).acquire("job:mql_sync", ttl=5) is None

    async def test_release_checks_token(self):
        redis = MagicMock(eval=AsyncMock(return_value=0))
        assert await JobLock(redis).release("job:mql_sync", "stale") is False
        assert redis.eval.await_args.args[2:] == ("salesops:lock:job:mql_sync", "stale")
