"""Cron scheduler for the sales-operations jobs.

Wraps an APScheduler AsyncIOScheduler with six jobs:
- invoice_processing: hourly proforma generation for flagged deals
- proforma_reminders: hourly second-payment reminders
- calendar_scan: daily Google Calendar scan at 08:00
- meet_reminders: reminder delivery every minute
- mql_sync: nightly MQL snapshot sync at 03:00 for the current year
- stripe_refresh: Stripe open-session reconciliation every 15 minutes

A job never overlaps itself: an in-process flag guards this instance and a
Redis lock guards the others. Skipped runs are still recorded in the run
history. A failed cron run is retried once, 15 minutes later.

Exports:
    OpsScheduler: Scheduler with run history and manual triggering.
    build_jobs: Job table for an OpsServices container.
"""

from __future__ import annotations

import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from pydantic import BaseModel

from src.app.core.monitoring import track_job
from src.app.core.redis import JobLock
from src.app.wiring import OpsServices

logger = structlog.get_logger(__name__)

JobFunc = Callable[[str, str], Awaitable[Any]]

HISTORY_LIMIT = 48
RETRY_DELAY = timedelta(minutes=15)
STARTUP_JOB = "invoice_processing"

JOB_SCHEDULES: dict[str, dict[str, str | int]] = {
    "invoice_processing": {"minute": 0},
    "proforma_reminders": {"minute": 0},
    "calendar_scan": {"hour": 8, "minute": 0},
    "meet_reminders": {"minute": "*"},
    "mql_sync": {"hour": 3, "minute": 0},
    "stripe_refresh": {"minute": "*/15"},
}


class JobRun(BaseModel):
    run_id: str
    job: str
    trigger: str
    started_at: datetime
    finished_at: datetime | None = None
    status: str = "running"
    result: Any = None
    error: str | None = None


def _serialize(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    return result


def _is_failure(result: Any) -> bool:
    if isinstance(result, BaseModel):
        return getattr(result, "success", True) is False
    if isinstance(result, dict):
        return result.get("success", True) is False
    return False


class OpsScheduler:
    """Args:
        jobs: Job name -> async callable taking (trigger, run_id).
        timezone: IANA zone the cron expressions run in.
        job_lock: Cross-instance lock (None relies on the in-process flag only).
    """

    def __init__(
        self,
        jobs: dict[str, JobFunc],
        timezone: str = "Europe/Warsaw",
        job_lock: JobLock | None = None,
    ) -> None:
        self._jobs = jobs
        self._timezone = ZoneInfo(timezone)
        self._job_lock = job_lock
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False
        self._processing: dict[str, bool] = {name: False for name in jobs}
        self._history: deque[JobRun] = deque(maxlen=HISTORY_LIMIT)
        self._last_runs: dict[str, JobRun] = {}

    @property
    def jobs(self) -> list[str]:
        return list(self._jobs)

    def start(self, run_startup_job: bool = True) -> bool:
        if self._started:
            return True
        try:
            self._scheduler = AsyncIOScheduler(timezone=self._timezone)
            for name in self._jobs:
                schedule = JOB_SCHEDULES.get(name)
                if schedule is None:
                    continue
                self._scheduler.add_job(
                    self._execute,
                    trigger=CronTrigger(timezone=self._timezone, **schedule),
                    args=[name, "cron"],
                    id=f"ops_{name}",
                    name=name,
                    max_instances=1,
                    coalesce=True,
                    misfire_grace_time=300,
                )
            if run_startup_job and STARTUP_JOB in self._jobs:
                self._scheduler.add_job(
                    self._execute,
                    trigger=DateTrigger(run_date=datetime.now(self._timezone)),
                    args=[STARTUP_JOB, "startup"],
                    id=f"ops_{STARTUP_JOB}_startup",
                )
            self._scheduler.start()
            self._started = True
        except Exception as exc:
            logger.warning("ops_scheduler.start_failed", error=str(exc))
            return False

        logger.info("ops_scheduler.started", jobs=self.jobs, timezone=str(self._timezone))
        return True

    def stop(self) -> None:
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("ops_scheduler.stopped")

    async def run_manual(self, job: str) -> JobRun:
        if job not in self._jobs:
            raise KeyError(job)
        return await self._execute(job, "manual")

    def get_status(self) -> dict[str, Any]:
        next_runs: dict[str, str | None] = {}
        if self._scheduler is not None:
            for scheduled in self._scheduler.get_jobs():
                next_run = getattr(scheduled, "next_run_time", None)
                next_runs[scheduled.id] = next_run.isoformat() if next_run else None
        return {
            "running": self._started,
            "timezone": str(self._timezone),
            "jobs": {
                name: {
                    "processing": self._processing[name],
                    "next_run": next_runs.get(f"ops_{name}"),
                    "last_run": (
                        self._last_runs[name].model_dump(mode="json")
                        if name in self._last_runs
                        else None
                    ),
                }
                for name in self._jobs
            },
            "history": [run.model_dump(mode="json") for run in reversed(self._history)],
        }

    # ── Execution ────────────────────────────────────────────────────────

    async def _execute(self, job: str, trigger: str) -> JobRun:
        run = JobRun(
            run_id=str(uuid.uuid4()),
            job=job,
            trigger=trigger,
            started_at=datetime.now(timezone.utc),
        )
        log = logger.bind(job=job, run_id=run.run_id, trigger=trigger)

        if self._processing[job]:
            log.info("ops_scheduler.skipped", reason="already_running")
            return self._finish(run, "skipped", error="already running")

        # Claimed before the first await so a concurrent run sees it.
        self._processing[job] = True
        token = None
        lock_name = f"job:{job}"
        try:
            if self._job_lock is not None:
                try:
                    token = await self._job_lock.acquire(lock_name)
                except Exception as exc:
                    log.warning("ops_scheduler.lock_unavailable", error=str(exc))
                else:
                    if token is None:
                        log.info("ops_scheduler.skipped", reason="locked")
                        return self._finish(run, "skipped", error="locked by another instance")

            async with track_job(job) as tracker:
                try:
                    result = await self._jobs[job](trigger, run.run_id)
                except Exception as exc:
                    tracker["status"] = "failed"
                    log.error("ops_scheduler.job_failed", error=str(exc))
                    self._finish(run, "failed", error=str(exc))
                else:
                    status = "failed" if _is_failure(result) else "success"
                    tracker["status"] = status
                    self._finish(run, status, result=_serialize(result))
                    log.info("ops_scheduler.job_completed", status=status)
        finally:
            self._processing[job] = False
            if token is not None:
                try:
                    await self._job_lock.release(lock_name, token)
                except Exception as exc:
                    log.warning("ops_scheduler.lock_release_failed", error=str(exc))

        if run.status == "failed" and trigger == "cron":
            self._schedule_retry(job)
        return run

    def _finish(
        self,
        run: JobRun,
        status: str,
        result: Any = None,
        error: str | None = None,
    ) -> JobRun:
        run.status = status
        run.result = result
        run.error = error
        run.finished_at = datetime.now(timezone.utc)
        self._history.append(run)
        self._last_runs[run.job] = run
        return run

    def _schedule_retry(self, job: str) -> None:
        if self._scheduler is None or not self._started:
            return
        run_date = datetime.now(self._timezone) + RETRY_DELAY
        self._scheduler.add_job(
            self._execute,
            trigger=DateTrigger(run_date=run_date),
            args=[job, "retry"],
            id=f"ops_{job}_retry",
            replace_existing=True,
        )
        logger.info("ops_scheduler.retry_scheduled", job=job, run_date=run_date.isoformat())


# ── Job table ───────────────────────────────────────────────────────────────


def build_jobs(services: OpsServices) -> dict[str, JobFunc]:
    """Map job names to service calls; jobs whose integration is disabled are left out."""
    jobs: dict[str, JobFunc] = {}

    if services.invoices is not None:
        invoices = services.invoices

        async def invoice_processing(trigger: str, run_id: str) -> Any:
            return await invoices.process_pending_invoices()

        jobs["invoice_processing"] = invoice_processing

    if services.proforma_reminders is not None:
        proforma_reminders = services.proforma_reminders

        async def proforma_reminder_job(trigger: str, run_id: str) -> Any:
            return await proforma_reminders.process_all_deals(trigger=trigger, run_id=run_id)

        jobs["proforma_reminders"] = proforma_reminder_job

    if services.meet_reminders is not None:
        meet_reminders = services.meet_reminders

        async def calendar_scan(trigger: str, run_id: str) -> Any:
            return await meet_reminders.daily_calendar_scan(trigger=trigger, run_id=run_id)

        async def meet_reminder_job(trigger: str, run_id: str) -> Any:
            return await meet_reminders.process_scheduled_reminders(trigger=trigger, run_id=run_id)

        jobs["calendar_scan"] = calendar_scan
        jobs["meet_reminders"] = meet_reminder_job

    mql_sync = services.mql_sync

    async def mql_sync_job(trigger: str, run_id: str) -> Any:
        return await mql_sync.run()

    jobs["mql_sync"] = mql_sync_job

    if services.payment_sessions is not None:
        payment_sessions = services.payment_sessions

        async def stripe_refresh(trigger: str, run_id: str) -> Any:
            return await payment_sessions.refresh_open_sessions()

        jobs["stripe_refresh"] = stripe_refresh

    return jobs
