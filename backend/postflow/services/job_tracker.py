"""
Processing job records for the long-running pipeline steps.

A job moves queued -> processing -> completed | failed | cancelled and is
frozen once it reaches a terminal status. Retrying means creating a new job
with ``retry_count + 1``; the failed job is left as it was.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from postflow.errors import InvalidOperation, ValidationError
from postflow.services.domain import JobStatus, JobType, ProcessingJob

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS = (60, 300, 900)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    delays: tuple[int, ...] = DEFAULT_RETRY_DELAYS

    def should_retry(self, job: ProcessingJob) -> bool:
        return job.retry_count < min(job.max_retries, self.max_retries)

    def delay_for(self, retry_number: int) -> int:
        """Seconds to wait before retry ``retry_number`` (1-based)."""
        if not self.delays:
            return 0
        index = min(max(retry_number, 1), len(self.delays)) - 1
        return self.delays[index]


class ProcessingJobTracker:
    def __init__(self, clock, policy: RetryPolicy | None = None):
        self.clock = clock
        self.policy = policy or RetryPolicy()

    def create(self, project_id: str, job_type: JobType, *, retry_count: int = 0) -> ProcessingJob:
        job = ProcessingJob(
            project_id=project_id,
            job_type=job_type,
            retry_count=retry_count,
            max_retries=self.policy.max_retries,
            created_at=self.clock.now(),
        )
        logger.info("[job] Created %s job %s for project %s (attempt %d)", job_type.value, job.id, project_id, retry_count + 1)
        return job

    def _ensure_open(self, job: ProcessingJob, action: str) -> None:
        if job.is_terminal:
            raise InvalidOperation(f"Cannot {action} job {job.id}: already {job.status.value}")

    def mark_started(self, job: ProcessingJob) -> ProcessingJob:
        self._ensure_open(job, "start")
        job.status = JobStatus.processing
        if job.started_at is None:
            job.started_at = self.clock.now()
        return job

    def update_progress(self, job: ProcessingJob, progress: int) -> ProcessingJob:
        self._ensure_open(job, "update")
        if not 0 <= progress <= 100:
            raise ValidationError(f"Job progress must be within 0..100, got {progress}")
        if progress < job.progress:
            raise ValidationError(f"Job progress cannot go backwards ({job.progress} -> {progress})")
        job.progress = progress
        return job

    def complete(self, job: ProcessingJob, result_count: int | None = None) -> ProcessingJob:
        self._ensure_open(job, "complete")
        now = self.clock.now()
        job.status = JobStatus.completed
        job.progress = 100
        job.result_count = result_count
        job.completed_at = now
        job.duration_ms = _duration_ms(job.started_at or job.created_at, now)
        logger.info("[job] %s %s completed in %sms (results=%s)", job.job_type.value, job.id, job.duration_ms, result_count)
        return job

    def fail(self, job: ProcessingJob, error_message: str) -> ProcessingJob:
        self._ensure_open(job, "fail")
        now = self.clock.now()
        job.status = JobStatus.failed
        job.error_message = error_message
        job.completed_at = now
        job.duration_ms = _duration_ms(job.started_at or job.created_at, now)
        logger.warning("[job] %s %s failed (attempt %d): %s", job.job_type.value, job.id, job.retry_count + 1, error_message)
        return job

    def cancel(self, job: ProcessingJob) -> ProcessingJob:
        self._ensure_open(job, "cancel")
        job.status = JobStatus.cancelled
        job.completed_at = self.clock.now()
        return job

    def retry_of(self, job: ProcessingJob) -> ProcessingJob:
        """New queued job for the next attempt of ``job``'s step."""
        if job.status is not JobStatus.failed:
            raise InvalidOperation(f"Only failed jobs can be retried (job {job.id} is {job.status.value})")
        return self.create(job.project_id, job.job_type, retry_count=job.retry_count + 1)


def _duration_ms(start: datetime, end: datetime) -> int:
    return max(int((end - start).total_seconds() * 1000), 0)
