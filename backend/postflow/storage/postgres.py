"""
PostgreSQL-backed pipeline store.

One session per method. The claim is an UPDATE ... WHERE status IN
(pending, retry) checked by rowcount, and the per-project lock is a
session-level advisory lock held on a dedicated connection, so both hold
across processes sharing the database.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Iterable

from sqlalchemy import and_, delete, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postflow import models
from postflow.errors import NotFound
from postflow.services.domain import (
    DISPATCHABLE,
    EventType,
    Insight,
    InsightStatus,
    JobStatus,
    JobType,
    Platform,
    Post,
    PostStatus,
    ProcessingJob,
    Project,
    ProjectEvent,
    ProjectMetrics,
    ScheduledPost,
    ScheduledPostStatus,
    WorkflowConfig,
)
from postflow.services.stage_graph import Stage
from postflow.storage.base import PipelineStore

_DISPATCHABLE_VALUES = [s.value for s in DISPATCHABLE]


# ── Row <-> domain mapping ───────────────────────────────────

def _project_values(project: Project) -> dict:
    return {
        "id": project.id,
        "title": project.title,
        "description": project.description,
        "raw_transcript": project.raw_transcript,
        "cleaned_transcript": project.cleaned_transcript,
        "stage": project.stage.value,
        "progress": project.progress,
        "workflow_config": project.workflow_config.to_dict(),
        "metrics": project.metrics.to_dict(),
        "archived_reason": project.archived_reason,
        "last_activity_at": project.last_activity_at,
        "created_at": project.created_at,
        "updated_at": project.updated_at,
    }


def _project_from_row(row: models.Project) -> Project:
    return Project(
        id=row.id,
        title=row.title,
        description=row.description,
        raw_transcript=row.raw_transcript,
        cleaned_transcript=row.cleaned_transcript,
        stage=Stage(row.stage),
        progress=row.progress,
        workflow_config=WorkflowConfig.from_dict(row.workflow_config),
        metrics=ProjectMetrics.from_dict(row.metrics),
        archived_reason=row.archived_reason,
        last_activity_at=row.last_activity_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _insight_values(insight: Insight) -> dict:
    return {
        "id": insight.id,
        "project_id": insight.project_id,
        "title": insight.title,
        "content": insight.content,
        "category": insight.category,
        "urgency": insight.urgency,
        "relatability": insight.relatability,
        "specificity": insight.specificity,
        "authority": insight.authority,
        "total_score": insight.total_score,
        "status": insight.status.value,
        "rejection_reason": insight.rejection_reason,
        "reviewed_at": insight.reviewed_at,
        "created_at": insight.created_at,
    }


def _insight_from_row(row: models.Insight) -> Insight:
    return Insight(
        id=row.id,
        project_id=row.project_id,
        title=row.title,
        content=row.content,
        category=row.category,
        urgency=row.urgency,
        relatability=row.relatability,
        specificity=row.specificity,
        authority=row.authority,
        status=InsightStatus(row.status),
        rejection_reason=row.rejection_reason,
        reviewed_at=row.reviewed_at,
        created_at=row.created_at,
    )


def _post_values(post: Post) -> dict:
    return {
        "id": post.id,
        "project_id": post.project_id,
        "insight_id": post.insight_id,
        "platform": post.platform.value,
        "content": post.content,
        "hashtags": list(post.hashtags),
        "status": post.status.value,
        "rejection_reason": post.rejection_reason,
        "published_at": post.published_at,
        "created_at": post.created_at,
    }


def _post_from_row(row: models.Post) -> Post:
    return Post(
        id=row.id,
        project_id=row.project_id,
        insight_id=row.insight_id,
        platform=Platform(row.platform),
        content=row.content,
        hashtags=list(row.hashtags or []),
        status=PostStatus(row.status),
        rejection_reason=row.rejection_reason,
        published_at=row.published_at,
        created_at=row.created_at,
    )


def _scheduled_values(item: ScheduledPost) -> dict:
    return {
        "id": item.id,
        "project_id": item.project_id,
        "post_id": item.post_id,
        "platform": item.platform.value,
        "content": item.content,
        "scheduled_time": item.scheduled_time,
        "status": item.status.value,
        "retry_count": item.retry_count,
        "last_attempt": item.last_attempt,
        "external_post_id": item.external_post_id,
        "external_url": item.external_url,
        "published_at": item.published_at,
        "error_message": item.error_message,
        "created_at": item.created_at,
    }


def _scheduled_from_row(row: models.ScheduledPost) -> ScheduledPost:
    return ScheduledPost(
        id=row.id,
        project_id=row.project_id,
        post_id=row.post_id,
        platform=Platform(row.platform),
        content=row.content,
        scheduled_time=row.scheduled_time,
        status=ScheduledPostStatus(row.status),
        retry_count=row.retry_count,
        last_attempt=row.last_attempt,
        external_post_id=row.external_post_id,
        external_url=row.external_url,
        published_at=row.published_at,
        error_message=row.error_message,
        created_at=row.created_at,
    )


def _job_values(job: ProcessingJob) -> dict:
    return {
        "id": job.id,
        "project_id": job.project_id,
        "job_type": job.job_type.value,
        "status": job.status.value,
        "progress": job.progress,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "result_count": job.result_count,
        "error_message": job.error_message,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "duration_ms": job.duration_ms,
    }


def _job_from_row(row: models.ProcessingJob) -> ProcessingJob:
    return ProcessingJob(
        id=row.id,
        project_id=row.project_id,
        job_type=JobType(row.job_type),
        status=JobStatus(row.status),
        progress=row.progress,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        result_count=row.result_count,
        error_message=row.error_message,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        duration_ms=row.duration_ms,
    )


def _event_row(event: ProjectEvent) -> models.ProjectEvent:
    return models.ProjectEvent(
        id=event.id,
        project_id=event.project_id,
        name=event.name,
        type=event.type.value,
        data=event.data,
        user_id=event.user_id,
        dedupe_key=event.key,
        occurred_at=event.occurred_at,
    )


def _event_from_row(row: models.ProjectEvent) -> ProjectEvent:
    return ProjectEvent(
        id=row.id,
        project_id=row.project_id,
        name=row.name,
        type=EventType(row.type),
        data=dict(row.data or {}),
        user_id=row.user_id,
        key=row.dedupe_key,
        occurred_at=row.occurred_at,
    )


async def _upsert(session: AsyncSession, model, values: dict) -> None:
    row = await session.get(model, values["id"])
    if row is None:
        session.add(model(**values))
        return
    for key, value in values.items():
        setattr(row, key, value)


class PostgresPipelineStore(PipelineStore):
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def _write(self, session: AsyncSession, project: Project, events: Iterable[ProjectEvent]) -> None:
        await _upsert(session, models.Project, _project_values(project))
        await session.flush()
        for insight in project.insights:
            await _upsert(session, models.Insight, _insight_values(insight))
        await session.flush()
        for post in project.posts:
            await _upsert(session, models.Post, _post_values(post))
        await session.flush()
        for item in project.scheduled_posts:
            await _upsert(session, models.ScheduledPost, _scheduled_values(item))
        for event in events:
            session.add(_event_row(event))

    async def add_project(self, project: Project, events: Iterable[ProjectEvent] = ()) -> None:
        async with self._session_factory() as session:
            await self._write(session, project, events)
            await session.commit()

    async def get_project(self, project_id: str) -> Project:
        async with self._session_factory() as session:
            row = await session.get(models.Project, project_id)
            if row is None:
                raise NotFound(f"Project {project_id} not found", project_id=project_id)
            return await self._assemble(session, row)

    async def _assemble(self, session: AsyncSession, row: models.Project) -> Project:
        project = _project_from_row(row)
        insights = await session.execute(
            select(models.Insight).where(models.Insight.project_id == row.id).order_by(models.Insight.created_at)
        )
        posts = await session.execute(
            select(models.Post).where(models.Post.project_id == row.id).order_by(models.Post.created_at)
        )
        scheduled = await session.execute(
            select(models.ScheduledPost)
            .where(models.ScheduledPost.project_id == row.id)
            .order_by(models.ScheduledPost.scheduled_time, models.ScheduledPost.platform)
        )
        project.insights = [_insight_from_row(r) for r in insights.scalars()]
        project.posts = [_post_from_row(r) for r in posts.scalars()]
        project.scheduled_posts = [_scheduled_from_row(r) for r in scheduled.scalars()]
        return project

    async def save_project(self, project: Project, events: Iterable[ProjectEvent] = ()) -> None:
        async with self._session_factory() as session:
            if await session.get(models.Project, project.id) is None:
                raise NotFound(f"Project {project.id} not found", project_id=project.id)
            await self._write(session, project, events)
            await session.commit()

    async def delete_project(self, project_id: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(delete(models.Project).where(models.Project.id == project_id))
            if result.rowcount == 0:
                raise NotFound(f"Project {project_id} not found", project_id=project_id)
            await session.commit()

    async def list_projects(self, *, stage: Stage | None = None, limit: int = 50, offset: int = 0) -> list[Project]:
        async with self._session_factory() as session:
            query = select(models.Project).order_by(models.Project.created_at.desc()).limit(limit).offset(offset)
            if stage is not None:
                query = query.where(models.Project.stage == stage.value)
            rows = (await session.execute(query)).scalars().all()
            return [await self._assemble(session, row) for row in rows]

    async def list_events(self, project_id: str, *, name: str | None = None) -> list[ProjectEvent]:
        async with self._session_factory() as session:
            query = (
                select(models.ProjectEvent)
                .where(models.ProjectEvent.project_id == project_id)
                .order_by(models.ProjectEvent.occurred_at, models.ProjectEvent.seq)
            )
            if name is not None:
                query = query.where(models.ProjectEvent.name == name)
            return [_event_from_row(r) for r in (await session.execute(query)).scalars()]

    async def has_event(self, project_id: str, name: str, key: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(models.ProjectEvent.id).where(
                    models.ProjectEvent.project_id == project_id,
                    models.ProjectEvent.name == name,
                    models.ProjectEvent.dedupe_key == key,
                ).limit(1)
            )
            return result.scalar() is not None

    async def save_job(self, job: ProcessingJob) -> None:
        async with self._session_factory() as session:
            await _upsert(session, models.ProcessingJob, _job_values(job))
            await session.commit()

    async def get_job(self, job_id: str) -> ProcessingJob:
        async with self._session_factory() as session:
            row = await session.get(models.ProcessingJob, job_id)
            if row is None:
                raise NotFound(f"Job {job_id} not found", job_id=job_id)
            return _job_from_row(row)

    async def list_jobs(self, project_id: str) -> list[ProcessingJob]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(models.ProcessingJob)
                .where(models.ProcessingJob.project_id == project_id)
                .order_by(models.ProcessingJob.created_at)
            )
            return [_job_from_row(r) for r in rows.scalars()]

    async def get_scheduled_post(self, scheduled_post_id: str) -> ScheduledPost:
        async with self._session_factory() as session:
            row = await session.get(models.ScheduledPost, scheduled_post_id)
            if row is None:
                raise NotFound(f"Scheduled post {scheduled_post_id} not found", scheduled_post_id=scheduled_post_id)
            return _scheduled_from_row(row)

    async def find_due(self, until: datetime, limit: int, project_id: str | None = None) -> list[ScheduledPost]:
        conditions = [
            models.ScheduledPost.status.in_(_DISPATCHABLE_VALUES),
            models.ScheduledPost.scheduled_time <= until,
            models.Project.stage != Stage.archived.value,
        ]
        if project_id is not None:
            conditions.append(models.ScheduledPost.project_id == project_id)
        async with self._session_factory() as session:
            rows = await session.execute(
                select(models.ScheduledPost)
                .join(models.Project, models.Project.id == models.ScheduledPost.project_id)
                .where(and_(*conditions))
                .order_by(models.ScheduledPost.scheduled_time, models.ScheduledPost.platform)
                .limit(limit)
            )
            return [_scheduled_from_row(r) for r in rows.scalars()]

    async def claim(self, scheduled_post_id: str, now: datetime) -> ScheduledPost | None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(models.ScheduledPost)
                .where(
                    models.ScheduledPost.id == scheduled_post_id,
                    models.ScheduledPost.status.in_(_DISPATCHABLE_VALUES),
                )
                .values(status=ScheduledPostStatus.publishing.value, last_attempt=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            row = await session.get(models.ScheduledPost, scheduled_post_id)
            return _scheduled_from_row(row)

    async def find_retryable_failed(
        self, *, max_retry_count: int, attempted_before: datetime, limit: int
    ) -> list[ScheduledPost]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(models.ScheduledPost)
                .join(models.Project, models.Project.id == models.ScheduledPost.project_id)
                .where(and_(
                    models.ScheduledPost.status == ScheduledPostStatus.failed.value,
                    models.ScheduledPost.retry_count < max_retry_count,
                    models.ScheduledPost.last_attempt < attempted_before,
                    models.Project.stage != Stage.archived.value,
                ))
                .order_by(models.ScheduledPost.last_attempt)
                .limit(limit)
            )
            return [_scheduled_from_row(r) for r in rows.scalars()]

    async def find_stale_in_flight(self, *, attempted_before: datetime, limit: int) -> list[ScheduledPost]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(models.ScheduledPost)
                .where(
                    models.ScheduledPost.status == ScheduledPostStatus.publishing.value,
                    models.ScheduledPost.last_attempt < attempted_before,
                )
                .limit(limit)
            )
            return [_scheduled_from_row(r) for r in rows.scalars()]

    @asynccontextmanager
    async def project_lock(self, project_id: str):
        async with self._session_factory() as session:
            await session.execute(text("SELECT pg_advisory_lock(hashtext(:key))"), {"key": project_id})
            try:
                yield
            finally:
                await session.execute(text("SELECT pg_advisory_unlock(hashtext(:key))"), {"key": project_id})
                await session.commit()
