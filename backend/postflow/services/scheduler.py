"""
Scheduler Service

Periodic publishing jobs:
- dispatch: publish scheduled posts that are due (every DISPATCH_INTERVAL_MINUTES)
- retry_sweep: reopen failed posts after a cooldown (every RETRY_SWEEP_INTERVAL_MINUTES)
- watchdog: push posts stuck in flight through the failure path

With a Postgres store every tick takes a pg_try_advisory_lock first so that
only one instance (the leader) runs it; other instances skip silently.
Controlled by SCHEDULER_ENABLED env (default: true).
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker

from postflow.errors import NotFound
from postflow.settings import get_settings

logger = logging.getLogger("scheduler")

# Advisory lock keys (arbitrary int64, one per job)
LOCK_DISPATCH = 910_001
LOCK_RETRY_SWEEP = 910_002
LOCK_WATCHDOG = 910_003


class SchedulerService:
    """APScheduler wrapper that runs the publishing jobs."""

    _instance: "SchedulerService | None" = None

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._publish_scheduler = None
        self._watchdog = None
        self._session_factory: async_sessionmaker | None = None
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, publish_scheduler, watchdog=None, *, session_factory: async_sessionmaker | None = None):
        """Attach the dispatcher, the watchdog and (for leader election) a session factory."""
        self._publish_scheduler = publish_scheduler
        self._watchdog = watchdog
        self._session_factory = session_factory

    async def _as_leader(self, lock_key: int, name: str, job: Callable[[], Awaitable[dict]]) -> dict | None:
        if self._session_factory is None:
            return await job()

        async with self._session_factory() as session:
            acquired = (await session.execute(text(f"SELECT pg_try_advisory_lock({lock_key})"))).scalar()
            if not acquired:
                logger.debug("[%s] Advisory lock not acquired, skipping tick", name)
                return None
            try:
                return await job()
            finally:
                await session.execute(text(f"SELECT pg_advisory_unlock({lock_key})"))

    def start(self):
        """Start the scheduler (respects SCHEDULER_ENABLED env)."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler disabled by SCHEDULER_ENABLED=false, skipping start")
            return
        if self._running:
            return
        if self._publish_scheduler is None:
            raise RuntimeError("SchedulerService.configure() must be called before start()")

        self.scheduler.add_job(
            self._run_dispatch,
            IntervalTrigger(minutes=settings.dispatch_interval_minutes),
            id="dispatch",
            name="Publish due scheduled posts",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

        self.scheduler.add_job(
            self._run_retry_sweep,
            IntervalTrigger(minutes=settings.retry_sweep_interval_minutes),
            id="retry_sweep",
            name="Requeue failed scheduled posts",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

        if settings.watchdog_enabled and self._watchdog is not None:
            self.scheduler.add_job(
                self._run_watchdog,
                IntervalTrigger(minutes=settings.watchdog_interval_minutes),
                id="watchdog",
                name="Recover posts stuck in publishing",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )

        self.scheduler.start()
        self._running = True
        logger.info("Scheduler started with %d jobs", len(self.scheduler.get_jobs()))

    def stop(self):
        """Stop the scheduler."""
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = AsyncIOScheduler()
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    async def _run_dispatch(self):
        result = await self._as_leader(LOCK_DISPATCH, "dispatch", self._publish_scheduler.run_dispatch)
        if result and result.get("selected"):
            logger.info(
                "[dispatch] Completed: %d selected, %d published, %d retried, %d failed",
                result["selected"], result["published"], result["retried"], result["failed"],
            )
        return result

    async def _run_retry_sweep(self):
        return await self._as_leader(LOCK_RETRY_SWEEP, "retry_sweep", self._publish_scheduler.run_retry_sweep)

    async def _run_watchdog(self):
        return await self._as_leader(LOCK_WATCHDOG, "watchdog", self._watchdog.run)

    def get_jobs(self) -> list[dict]:
        """Get list of all scheduled jobs."""
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })
        return jobs

    async def run_now(self, job_id: str) -> dict:
        """Run a job immediately."""
        job = self.scheduler.get_job(job_id)
        if not job:
            raise NotFound(f"Job {job_id} not found", job_id=job_id)

        try:
            result = await job.func()
            return {"ok": True, "result": result}
        except Exception as e:
            logger.exception("Failed to run job %s", job_id)
            return {"ok": False, "error": str(e)}


# Global instance
scheduler_service = SchedulerService.get_instance()
