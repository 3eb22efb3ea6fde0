"""
Pipeline orchestration.

API-facing methods validate against the aggregate, persist the new state,
hand a typed job to the queue and return right away. ``handle`` is the
worker side: it runs one step, reports through the job tracker and either
chains the next step, schedules a retry, or rolls the project back with a
single failure event.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Awaitable, Callable

from postflow.errors import ExternalFailure, InvalidOperation, PipelineError
from postflow.services import event_log as ev
from postflow.services import project_aggregate as agg
from postflow.services.clock import SystemClock
from postflow.services.content_generator import ContentGenerator, get_content_generator
from postflow.services.domain import (
    InsightStatus,
    JobType,
    PostDraft,
    ProcessingJob,
    Project,
    ProjectEvent,
    ScheduledPostStatus,
    WorkflowConfig,
)
from postflow.services.event_log import EventLog
from postflow.services.job_queue import (
    CleanTranscriptPayload,
    ExtractInsightsPayload,
    GeneratePostsPayload,
    JobPayload,
    JobQueue,
    PublishNowPayload,
)
from postflow.services.job_tracker import ProcessingJobTracker, RetryPolicy
from postflow.services.stage_graph import Stage, available_transitions
from postflow.storage.base import PipelineStore

logger = logging.getLogger(__name__)

StepResult = tuple[int, Callable[[], Awaitable] | None]


class PipelineService:
    def __init__(
        self,
        store: PipelineStore,
        queue: JobQueue,
        *,
        clock=None,
        generator: ContentGenerator | None = None,
        retry_policy: RetryPolicy | None = None,
        publish_scheduler=None,
        max_insights: int = 10,
        post_style: str = "professional",
    ):
        self.store = store
        self.queue = queue
        self.clock = clock or SystemClock()
        self.generator = generator or get_content_generator()
        self.tracker = ProcessingJobTracker(self.clock, retry_policy)
        self.events = EventLog(store)
        self.publish_scheduler = publish_scheduler
        self.max_insights = max_insights
        self.post_style = post_style
        self._handlers: dict[type, Callable[[JobPayload, ProcessingJob], Awaitable[StepResult]]] = {
            CleanTranscriptPayload: self._run_clean,
            ExtractInsightsPayload: self._run_extract,
            GeneratePostsPayload: self._run_generate,
            PublishNowPayload: self._run_publish_now,
        }

    # ── Helpers ─────────────────────────────────────────────

    async def _mutate(
        self,
        project_id: str,
        operation: Callable[[Project], agg.Outcome],
        *,
        job: ProcessingJob | None = None,
    ) -> Project:
        async with self.store.project_lock(project_id):
            project = await self.store.get_project(project_id)
            outcome = operation(project)
            await self.store.save_project(outcome.project, await self.events.dedupe(outcome.events))
            if job is not None:
                await self.store.save_job(job)
            return outcome.project

    async def _append_events(self, project_id: str, events: list[ProjectEvent]) -> None:
        async with self.store.project_lock(project_id):
            project = await self.store.get_project(project_id)
            await self.store.save_project(project, await self.events.dedupe(events))

    def _payload_for(self, job: ProcessingJob) -> JobPayload:
        if job.job_type is JobType.clean_transcript:
            return CleanTranscriptPayload(project_id=job.project_id, job_id=job.id)
        if job.job_type is JobType.extract_insights:
            return ExtractInsightsPayload(project_id=job.project_id, job_id=job.id, max_insights=self.max_insights)
        if job.job_type is JobType.generate_posts:
            return GeneratePostsPayload(project_id=job.project_id, job_id=job.id, style=self.post_style)
        if job.job_type is JobType.publish_post:
            return PublishNowPayload(project_id=job.project_id, job_id=job.id)
        raise ValueError(f"No payload for job type {job.job_type.value}")

    async def _start_step(self, project_id: str, job_type: JobType, guard) -> Project:
        job = self.tracker.create(project_id, job_type)
        project = await self._mutate(project_id, guard, job=job)
        await self.queue.enqueue(self._payload_for(job))
        return project

    # ── Queries ─────────────────────────────────────────────

    async def get_project(self, project_id: str) -> Project:
        return await self.store.get_project(project_id)

    async def list_projects(self, *, stage: Stage | None = None, limit: int = 50, offset: int = 0) -> list[Project]:
        return await self.store.list_projects(stage=stage, limit=limit, offset=offset)

    async def get_state(self, project_id: str) -> dict:
        project = await self.store.get_project(project_id)
        return {
            "project_id": project.id,
            "stage": project.stage,
            "progress": project.progress,
            "available_transitions": available_transitions(project.stage),
            "last_activity_at": project.last_activity_at,
        }

    async def list_events(self, project_id: str, name: str | None = None) -> list[ProjectEvent]:
        await self.store.get_project(project_id)
        return await self.events.history(project_id, name)

    async def list_jobs(self, project_id: str) -> list[ProcessingJob]:
        await self.store.get_project(project_id)
        return await self.store.list_jobs(project_id)

    # ── Commands ────────────────────────────────────────────

    async def create_project(
        self,
        title: str,
        *,
        description: str | None = None,
        transcript: str | None = None,
        workflow_config: WorkflowConfig | None = None,
        user_id: str | None = None,
    ) -> Project:
        outcome = agg.create_project(
            title,
            now=self.clock.now(),
            description=description,
            transcript=transcript,
            workflow_config=workflow_config,
            user_id=user_id,
        )
        await self.store.add_project(outcome.project, outcome.events)
        logger.info("[project=%s] Created '%s'", outcome.project.id, outcome.project.title)
        return outcome.project

    async def delete_project(self, project_id: str) -> None:
        await self.store.delete_project(project_id)
        logger.info("[project=%s] Deleted", project_id)

    async def process(self, project_id: str, user_id: str | None = None) -> Project:
        return await self._start_step(
            project_id, JobType.clean_transcript,
            lambda p: agg.start_processing(p, now=self.clock.now(), user_id=user_id),
        )

    async def extract(self, project_id: str, user_id: str | None = None) -> Project:
        return await self._start_step(
            project_id, JobType.extract_insights,
            lambda p: agg.begin_extraction(p, now=self.clock.now(), user_id=user_id),
        )

    async def generate(self, project_id: str, user_id: str | None = None) -> Project:
        return await self._start_step(
            project_id, JobType.generate_posts,
            lambda p: agg.generate_posts(p, now=self.clock.now(), user_id=user_id),
        )

    async def schedule(self, project_id: str, user_id: str | None = None) -> Project:
        job = self.tracker.create(project_id, JobType.schedule_posts)
        self.tracker.mark_started(job)
        before = await self.store.get_project(project_id)
        project = await self._mutate(project_id, lambda p: agg.schedule_posts(p, now=self.clock.now(), user_id=user_id))
        self.tracker.complete(job, result_count=len(project.scheduled_posts) - len(before.scheduled_posts))
        await self.store.save_job(job)
        return project

    async def publish_now(self, project_id: str, user_id: str | None = None) -> Project:
        return await self._start_step(
            project_id, JobType.publish_post,
            lambda p: agg.publish_now(p, now=self.clock.now(), user_id=user_id),
        )

    async def transition(self, project_id: str, target: Stage, reason: str | None = None, user_id: str | None = None) -> Project:
        return await self._mutate(
            project_id, lambda p: agg.transition_to(p, target, now=self.clock.now(), reason=reason, user_id=user_id),
        )

    async def approve_insight(self, project_id: str, insight_id: str, user_id: str | None = None) -> Project:
        project = await self._mutate(project_id, lambda p: agg.approve_insight(p, insight_id, now=self.clock.now(), user_id=user_id))
        return await self._after_insight_review(project)

    async def reject_insight(self, project_id: str, insight_id: str, reason: str | None = None, user_id: str | None = None) -> Project:
        project = await self._mutate(project_id, lambda p: agg.reject_insight(p, insight_id, reason, now=self.clock.now(), user_id=user_id))
        return await self._after_insight_review(project)

    async def approve_all_insights(self, project_id: str, user_id: str | None = None) -> Project:
        project = await self._mutate(project_id, lambda p: agg.approve_all_insights(p, now=self.clock.now(), user_id=user_id))
        return await self._after_insight_review(project)

    async def _after_insight_review(self, project: Project) -> Project:
        if project.stage is Stage.insights_approved and project.workflow_config.auto_generate_posts:
            logger.info("[project=%s] Auto-generating posts", project.id)
            return await self.generate(project.id)
        return project

    async def approve_post(self, project_id: str, post_id: str, user_id: str | None = None) -> Project:
        project = await self._mutate(project_id, lambda p: agg.approve_post(p, post_id, now=self.clock.now(), user_id=user_id))
        return await self._after_post_review(project)

    async def reject_post(self, project_id: str, post_id: str, reason: str | None = None, user_id: str | None = None) -> Project:
        project = await self._mutate(project_id, lambda p: agg.reject_post(p, post_id, reason, now=self.clock.now(), user_id=user_id))
        return await self._after_post_review(project)

    async def approve_all_posts(self, project_id: str, user_id: str | None = None) -> Project:
        project = await self._mutate(project_id, lambda p: agg.approve_all_posts(p, now=self.clock.now(), user_id=user_id))
        return await self._after_post_review(project)

    async def _after_post_review(self, project: Project) -> Project:
        if project.stage is Stage.posts_approved and project.workflow_config.auto_schedule_posts:
            logger.info("[project=%s] Auto-scheduling posts", project.id)
            return await self.schedule(project.id)
        return project

    async def cancel_scheduled_post(self, project_id: str, scheduled_post_id: str, user_id: str | None = None) -> Project:
        return await self._mutate(
            project_id, lambda p: agg.cancel_scheduled_post(p, scheduled_post_id, now=self.clock.now(), user_id=user_id),
        )

    async def archive(self, project_id: str, reason: str | None = None, user_id: str | None = None) -> Project:
        return await self._mutate(project_id, lambda p: agg.archive(p, reason, now=self.clock.now(), user_id=user_id))

    async def restore(self, project_id: str, user_id: str | None = None) -> Project:
        return await self._mutate(project_id, lambda p: agg.restore(p, now=self.clock.now(), user_id=user_id))

    async def recompute_metrics(self, project_id: str) -> Project:
        return await self._mutate(project_id, lambda p: agg.recompute_metrics(p, now=self.clock.now()))

    # ── Worker side ─────────────────────────────────────────

    async def handle(self, payload: JobPayload) -> None:
        handler = self._handlers[type(payload)]
        job = await self.store.get_job(payload.job_id)
        if job.is_terminal:
            logger.info("[job] %s %s already %s, skipping redelivery", job.job_type.value, job.id, job.status.value)
            return

        self.tracker.mark_started(job)
        await self.store.save_job(job)

        try:
            result_count, next_step = await handler(payload, job)
        except ExternalFailure as exc:
            await self._handle_failure(payload, job, exc.message, retryable=exc.retryable)
            return
        except PipelineError as exc:
            await self._handle_failure(payload, job, exc.message, retryable=False)
            return
        except Exception as exc:
            logger.exception("[job] %s %s crashed", job.job_type.value, job.id)
            await self._handle_failure(payload, job, f"{type(exc).__name__}: {exc}", retryable=False)
            return

        self.tracker.complete(job, result_count=result_count)
        await self.store.save_job(job)
        if next_step is not None:
            await next_step()

    async def _handle_failure(self, payload: JobPayload, job: ProcessingJob, message: str, *, retryable: bool) -> None:
        self.tracker.fail(job, message)
        await self.store.save_job(job)

        if retryable and self.tracker.policy.should_retry(job):
            retry = self.tracker.retry_of(job)
            delay = self.tracker.policy.delay_for(retry.retry_count)
            await self.store.save_job(retry)
            await self._append_events(job.project_id, [ev.make_event(
                job.project_id, ev.JOB_RETRY_SCHEDULED, self.clock.now(),
                {"job_type": job.job_type.value, "failed_job_id": job.id, "job_id": retry.id,
                 "retry_count": retry.retry_count, "delay_sec": delay, "error": message},
            )])
            await self.queue.enqueue(replace(payload, job_id=retry.id), delay=delay)
            logger.info("[job] Retrying %s as %s in %ss", job.id, retry.id, delay)
            return

        logger.error("[job] %s for project %s failed permanently: %s", job.job_type.value, job.project_id, message)
        await self._mutate(
            job.project_id,
            lambda p: agg.fail_processing(p, job.job_type, message, now=self.clock.now(), job_id=job.id),
        )

    async def _progress(self, job: ProcessingJob, value: int) -> None:
        if value > job.progress:
            self.tracker.update_progress(job, value)
            await self.store.save_job(job)

    async def _run_clean(self, payload: CleanTranscriptPayload, job: ProcessingJob) -> StepResult:
        project = await self.store.get_project(payload.project_id)
        cleaned = await self.generator.clean_transcript(project.raw_transcript or "")
        await self._progress(job, 80)
        project = await self._mutate(payload.project_id, lambda p: agg.record_cleaned_transcript(p, cleaned, now=self.clock.now()))

        async def chain():
            await self.extract(project.id)

        return len(cleaned.split()), chain

    async def _run_extract(self, payload: ExtractInsightsPayload, job: ProcessingJob) -> StepResult:
        project = await self.store.get_project(payload.project_id)
        drafts = await self.generator.extract_insights(project.cleaned_transcript or "", payload.max_insights)
        await self._progress(job, 80)
        project = await self._mutate(payload.project_id, lambda p: agg.add_insights(p, drafts, now=self.clock.now()))

        async def chain():
            await self._after_insight_review(project)

        return len(drafts), chain

    async def _run_generate(self, payload: GeneratePostsPayload, job: ProcessingJob) -> StepResult:
        project = await self.store.get_project(payload.project_id)
        approved = [i for i in project.insights if i.status is InsightStatus.approved]
        platforms = project.workflow_config.target_platforms
        total = max(len(approved) * len(platforms), 1)

        drafts: list[PostDraft] = []
        for insight in approved:
            for platform in platforms:
                generated = await self.generator.generate_post(insight.content, platform, payload.style)
                drafts.append(PostDraft(
                    platform=platform,
                    content=generated.content,
                    insight_id=insight.id,
                    hashtags=generated.hashtags,
                ))
                await self._progress(job, int(len(drafts) * 90 / total))

        project = await self._mutate(payload.project_id, lambda p: agg.add_posts(p, drafts, now=self.clock.now()))

        next_step = None
        if project.workflow_config.auto_schedule_posts:
            async def next_step():
                await self.approve_all_posts(project.id)

        return len(drafts), next_step

    async def _run_publish_now(self, payload: PublishNowPayload, job: ProcessingJob) -> StepResult:
        if self.publish_scheduler is None:
            raise InvalidOperation("No dispatcher attached to this worker; publish-now cannot run here")
        project = await self.store.get_project(payload.project_id)
        open_ids = {s.id for s in project.scheduled_posts if s.is_open}

        report = await self.publish_scheduler.run_dispatch(project_id=payload.project_id)
        logger.info("[job] publish-now for %s: %d of %d due posts published", payload.project_id, report["published"], report["selected"])

        project = await self.store.get_project(payload.project_id)
        published = sum(
            1 for s in project.scheduled_posts
            if s.id in open_ids and s.status is ScheduledPostStatus.published
        )
        return published, None
