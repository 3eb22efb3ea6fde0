"""Persistence interface for projects and everything they own."""
from __future__ import annotations

import abc
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Iterable

from postflow.services.domain import (
    ProcessingJob,
    Project,
    ProjectEvent,
    ScheduledPost,
)
from postflow.services.stage_graph import Stage


class PipelineStore(abc.ABC):
    """Project aggregate storage.

    ``get_project`` returns the project with its insights, posts and scheduled
    posts attached; ``save_project`` upserts all of them and appends events in
    one unit. Children are deleted only through ``delete_project``.

    ``claim`` is the single compare-and-set the dispatcher relies on: it moves
    a scheduled post from pending/retry to publishing and returns it, or
    returns None when another dispatcher got there first.
    """

    @abc.abstractmethod
    async def add_project(self, project: Project, events: Iterable[ProjectEvent] = ()) -> None:
        ...

    @abc.abstractmethod
    async def get_project(self, project_id: str) -> Project:
        """Raises NotFound for unknown ids."""

    @abc.abstractmethod
    async def save_project(self, project: Project, events: Iterable[ProjectEvent] = ()) -> None:
        ...

    @abc.abstractmethod
    async def delete_project(self, project_id: str) -> None:
        ...

    @abc.abstractmethod
    async def list_projects(self, *, stage: Stage | None = None, limit: int = 50, offset: int = 0) -> list[Project]:
        ...

    @abc.abstractmethod
    async def list_events(self, project_id: str, *, name: str | None = None) -> list[ProjectEvent]:
        ...

    @abc.abstractmethod
    async def has_event(self, project_id: str, name: str, key: str) -> bool:
        ...

    @abc.abstractmethod
    async def save_job(self, job: ProcessingJob) -> None:
        ...

    @abc.abstractmethod
    async def get_job(self, job_id: str) -> ProcessingJob:
        """Raises NotFound for unknown ids."""

    @abc.abstractmethod
    async def list_jobs(self, project_id: str) -> list[ProcessingJob]:
        ...

    @abc.abstractmethod
    async def get_scheduled_post(self, scheduled_post_id: str) -> ScheduledPost:
        """Raises NotFound for unknown ids."""

    @abc.abstractmethod
    async def find_due(self, until: datetime, limit: int, project_id: str | None = None) -> list[ScheduledPost]:
        """Pending/retry items due by ``until``, ordered by (scheduled_time, platform).

        Items of archived projects are never due. ``project_id`` narrows the
        search to one project.
        """

    @abc.abstractmethod
    async def claim(self, scheduled_post_id: str, now: datetime) -> ScheduledPost | None:
        ...

    @abc.abstractmethod
    async def find_retryable_failed(
        self, *, max_retry_count: int, attempted_before: datetime, limit: int
    ) -> list[ScheduledPost]:
        """Failed items below ``max_retry_count`` last tried before the cutoff, archived projects excluded."""

    @abc.abstractmethod
    async def find_stale_in_flight(self, *, attempted_before: datetime, limit: int) -> list[ScheduledPost]:
        ...

    @abc.abstractmethod
    def project_lock(self, project_id: str) -> AbstractAsyncContextManager:
        """Serialize read-modify-write cycles on one project."""
