"""
Append-only project event log.

Aggregate operations return events instead of buffering them; callers hand
them to ``EventLog.dedupe`` and persist the result together with the new
project state. Keyed events are recorded at most once per
(project, name, key), which is how terminal failures stay single.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Iterable

from postflow.services.domain import EventType, ProjectEvent

if TYPE_CHECKING:
    from postflow.storage.base import PipelineStore

logger = logging.getLogger(__name__)

PROJECT_CREATED = "ProjectCreated"
STAGE_CHANGED = "StageChanged"
PROCESSING_STARTED = "ProcessingStarted"
TRANSCRIPT_CLEANED = "TranscriptCleaned"
INSIGHTS_EXTRACTED = "InsightsExtracted"
INSIGHT_APPROVED = "InsightApproved"
INSIGHT_REJECTED = "InsightRejected"
POSTS_GENERATION_REQUESTED = "PostsGenerationRequested"
POSTS_GENERATED = "PostsGenerated"
POST_APPROVED = "PostApproved"
POST_REJECTED = "PostRejected"
POSTS_SCHEDULED = "PostsScheduled"
PUBLISH_NOW_REQUESTED = "PublishNowRequested"
SCHEDULED_POST_CANCELLED = "ScheduledPostCancelled"
SCHEDULED_POST_REQUEUED = "ScheduledPostRequeued"
POST_PUBLISH_RETRY = "PostPublishRetryScheduled"
POST_PUBLISHED = "PostPublished"
PROJECT_ARCHIVED = "ProjectArchived"
PROJECT_RESTORED = "ProjectRestored"
JOB_RETRY_SCHEDULED = "JobRetryScheduled"

PROCESSING_FAILED = "ProcessingFailed"
POST_GENERATION_FAILED = "PostGenerationFailed"
POST_PUBLISH_FAILED = "PostPublishFailed"
PUBLISHING_FAILED = "PublishingFailed"


def event_type_for(name: str) -> EventType:
    if name == STAGE_CHANGED:
        return EventType.stage_changed
    if name.endswith("Failed"):
        return EventType.failure
    return EventType.action


def make_event(
    project_id: str,
    name: str,
    now: datetime,
    data: dict | None = None,
    *,
    user_id: str | None = None,
    key: str | None = None,
) -> ProjectEvent:
    return ProjectEvent(
        project_id=project_id,
        name=name,
        type=event_type_for(name),
        data=dict(data or {}),
        occurred_at=now,
        user_id=user_id,
        key=key,
    )


class EventLog:
    def __init__(self, store: "PipelineStore"):
        self.store = store

    async def dedupe(self, events: Iterable[ProjectEvent]) -> list[ProjectEvent]:
        """Drop keyed events that were already recorded (or repeat within the batch)."""
        kept: list[ProjectEvent] = []
        seen: set[tuple[str, str, str]] = set()
        for event in events:
            if event.key is not None:
                marker = (event.project_id, event.name, event.key)
                if marker in seen or await self.store.has_event(event.project_id, event.name, event.key):
                    logger.info("[events] Skipping duplicate %s for project %s (key=%s)", event.name, event.project_id, event.key)
                    continue
                seen.add(marker)
            kept.append(event)
        return kept

    async def history(self, project_id: str, name: str | None = None) -> list[ProjectEvent]:
        return await self.store.list_events(project_id, name=name)

    async def has_event(self, project_id: str, name: str, key: str) -> bool:
        return await self.store.has_event(project_id, name, key)
