from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Iterable

from postflow.errors import NotFound
from postflow.services.domain import (
    DISPATCHABLE,
    Insight,
    Post,
    ProcessingJob,
    Project,
    ProjectEvent,
    ScheduledPost,
    ScheduledPostStatus,
)
from postflow.services.stage_graph import Stage
from postflow.storage.base import PipelineStore


class InMemoryPipelineStore(PipelineStore):
    """Process-local store. Used for tests and single-process local runs."""

    def __init__(self) -> None:
        self._projects: dict[str, Project] = {}
        self._insights: dict[str, Insight] = {}
        self._posts: dict[str, Post] = {}
        self._scheduled: dict[str, ScheduledPost] = {}
        self._jobs: dict[str, ProcessingJob] = {}
        self._events: list[ProjectEvent] = []
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._claim_lock = asyncio.Lock()

    def _write(self, project: Project, events: Iterable[ProjectEvent]) -> None:
        self._projects[project.id] = replace(copy.deepcopy(project), insights=[], posts=[], scheduled_posts=[])
        for insight in project.insights:
            self._insights[insight.id] = copy.deepcopy(insight)
        for post in project.posts:
            self._posts[post.id] = copy.deepcopy(post)
        for item in project.scheduled_posts:
            self._scheduled[item.id] = copy.deepcopy(item)
        self._events.extend(copy.deepcopy(list(events)))

    def _assemble(self, project_id: str) -> Project:
        stored = self._projects.get(project_id)
        if stored is None:
            raise NotFound(f"Project {project_id} not found", project_id=project_id)
        project = copy.deepcopy(stored)
        project.insights = [copy.deepcopy(i) for i in self._insights.values() if i.project_id == project_id]
        project.posts = [copy.deepcopy(p) for p in self._posts.values() if p.project_id == project_id]
        project.scheduled_posts = [copy.deepcopy(s) for s in self._scheduled.values() if s.project_id == project_id]
        return project

    async def add_project(self, project: Project, events: Iterable[ProjectEvent] = ()) -> None:
        self._write(project, events)

    async def get_project(self, project_id: str) -> Project:
        return self._assemble(project_id)

    async def save_project(self, project: Project, events: Iterable[ProjectEvent] = ()) -> None:
        if project.id not in self._projects:
            raise NotFound(f"Project {project.id} not found", project_id=project.id)
        self._write(project, events)

    async def delete_project(self, project_id: str) -> None:
        if self._projects.pop(project_id, None) is None:
            raise NotFound(f"Project {project_id} not found", project_id=project_id)
        for table in (self._insights, self._posts, self._scheduled, self._jobs):
            for key in [k for k, v in table.items() if v.project_id == project_id]:
                del table[key]
        self._events = [e for e in self._events if e.project_id != project_id]
        self._locks.pop(project_id, None)

    async def list_projects(self, *, stage: Stage | None = None, limit: int = 50, offset: int = 0) -> list[Project]:
        ids = [
            p.id for p in sorted(self._projects.values(), key=lambda p: p.created_at, reverse=True)
            if stage is None or p.stage is stage
        ]
        return [self._assemble(pid) for pid in ids[offset:offset + limit]]

    async def list_events(self, project_id: str, *, name: str | None = None) -> list[ProjectEvent]:
        return [
            copy.deepcopy(e) for e in self._events
            if e.project_id == project_id and (name is None or e.name == name)
        ]

    async def has_event(self, project_id: str, name: str, key: str) -> bool:
        return any(e.project_id == project_id and e.name == name and e.key == key for e in self._events)

    async def save_job(self, job: ProcessingJob) -> None:
        self._jobs[job.id] = copy.deepcopy(job)

    async def get_job(self, job_id: str) -> ProcessingJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found", job_id=job_id)
        return copy.deepcopy(job)

    async def list_jobs(self, project_id: str) -> list[ProcessingJob]:
        jobs = [copy.deepcopy(j) for j in self._jobs.values() if j.project_id == project_id]
        return sorted(jobs, key=lambda j: j.created_at)

    async def get_scheduled_post(self, scheduled_post_id: str) -> ScheduledPost:
        item = self._scheduled.get(scheduled_post_id)
        if item is None:
            raise NotFound(f"Scheduled post {scheduled_post_id} not found", scheduled_post_id=scheduled_post_id)
        return copy.deepcopy(item)

    async def find_due(self, until: datetime, limit: int, project_id: str | None = None) -> list[ScheduledPost]:
        due = [
            s for s in self._scheduled.values()
            if s.status in DISPATCHABLE and s.scheduled_time <= until
            and (project_id is None or s.project_id == project_id)
            and self._projects[s.project_id].stage is not Stage.archived
        ]
        due.sort(key=lambda s: (s.scheduled_time, s.platform.value))
        return [copy.deepcopy(s) for s in due[:limit]]

    async def claim(self, scheduled_post_id: str, now: datetime) -> ScheduledPost | None:
        async with self._claim_lock:
            item = self._scheduled.get(scheduled_post_id)
            if item is None or item.status not in DISPATCHABLE:
                return None
            item.status = ScheduledPostStatus.publishing
            item.last_attempt = now
            return copy.deepcopy(item)

    async def find_retryable_failed(
        self, *, max_retry_count: int, attempted_before: datetime, limit: int
    ) -> list[ScheduledPost]:
        found = [
            s for s in self._scheduled.values()
            if s.status is ScheduledPostStatus.failed
            and s.retry_count < max_retry_count
            and s.last_attempt is not None and s.last_attempt < attempted_before
            and self._projects[s.project_id].stage is not Stage.archived
        ]
        found.sort(key=lambda s: s.last_attempt)
        return [copy.deepcopy(s) for s in found[:limit]]

    async def find_stale_in_flight(self, *, attempted_before: datetime, limit: int) -> list[ScheduledPost]:
        found = [
            s for s in self._scheduled.values()
            if s.status is ScheduledPostStatus.publishing
            and (s.last_attempt is None or s.last_attempt < attempted_before)
        ]
        return [copy.deepcopy(s) for s in found[:limit]]

    @asynccontextmanager
    async def project_lock(self, project_id: str):
        async with self._locks[project_id]:
            yield
