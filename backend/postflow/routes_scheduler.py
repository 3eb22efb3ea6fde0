"""
Scheduler API Routes

Inspect the publishing jobs (dispatch, retry_sweep, watchdog), toggle the
scheduler and trigger a single tick by hand.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from postflow.errors import InvalidOperation
from postflow.services.scheduler import scheduler_service

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


class SchedulerJob(BaseModel):
    id: str
    name: str
    next_run: str | None = None
    trigger: str


class SchedulerStatus(BaseModel):
    running: bool
    jobs_count: int
    jobs: list[SchedulerJob]


class SchedulerToggle(BaseModel):
    status: str
    jobs: list[SchedulerJob] = []


class JobRunResult(BaseModel):
    ok: bool
    result: Any = None
    error: str | None = None


@router.get("/status", response_model=SchedulerStatus)
async def get_scheduler_status():
    jobs = scheduler_service.get_jobs()
    return SchedulerStatus(running=scheduler_service.is_running(), jobs_count=len(jobs), jobs=jobs)


@router.post("/start", response_model=SchedulerToggle)
async def start_scheduler():
    """Start the periodic jobs; reports `disabled` when SCHEDULER_ENABLED is off."""
    if scheduler_service.is_running():
        return SchedulerToggle(status="already_running", jobs=scheduler_service.get_jobs())

    try:
        scheduler_service.start()
    except RuntimeError as exc:
        raise InvalidOperation(str(exc)) from exc

    if not scheduler_service.is_running():
        return SchedulerToggle(status="disabled")
    return SchedulerToggle(status="started", jobs=scheduler_service.get_jobs())


@router.post("/stop", response_model=SchedulerToggle)
async def stop_scheduler():
    if not scheduler_service.is_running():
        return SchedulerToggle(status="already_stopped")
    scheduler_service.stop()
    return SchedulerToggle(status="stopped")


@router.post("/jobs/{job_id}/run", response_model=JobRunResult, response_model_exclude_none=True)
async def run_job_now(job_id: str):
    """Run one tick now. Unknown job ids are 404; a failing tick is reported as ok=false."""
    return await scheduler_service.run_now(job_id)
