from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from postflow.services import project_aggregate as agg
from postflow.services.domain import (
    InsightDraft,
    PostDraft,
    Project,
    PublishingSchedule,
    WorkflowConfig,
)
from postflow.services.publisher_adapter import PublisherAdapter, PublishResult
from postflow.services.stage_graph import Stage
from postflow.storage.memory import InMemoryPipelineStore

# 2026-01-06 is a Tuesday
TUESDAY_10AM = datetime(2026, 1, 6, 10, 0, tzinfo=timezone.utc)
NEXT_MONDAY_9AM = datetime(2026, 1, 12, 9, 0, tzinfo=timezone.utc)

TRANSCRIPT = (
    "Host: um so today we talk about shipping in small batches, you know, every single week.\n\n"
    "Guest: [00:12:31] The teams that ship weekly catch 3 times more bugs before customers do."
)


class FakeClock:
    """Manual clock; sleeping advances time instantly."""

    def __init__(self, now: datetime):
        self.current = now
        self.slept: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        if seconds > 0:
            self.current += timedelta(seconds=seconds)
        await asyncio.sleep(0)

    async def sleep_until(self, moment: datetime) -> None:
        await self.sleep((moment - self.current).total_seconds())


class RecordingPublisher(PublisherAdapter):
    """Publisher double that counts calls and fails on demand."""

    def __init__(self, platform: str = "linkedin", *, fail: bool = False, delay: float = 0.0):
        super().__init__()
        self.platform = platform
        self.fail = fail
        self.delay = delay
        self.calls: list[str | None] = []

    async def validate_credentials(self) -> bool:
        return True

    async def publish(self, content: str, *, reference: str | None = None) -> PublishResult:
        self.calls.append(reference)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            return PublishResult(success=False, platform=self.platform, error="503 Service Unavailable", retryable=True)
        return PublishResult(
            success=True,
            platform=self.platform,
            external_id=f"ext-{len(self.calls)}",
            url=f"https://example.test/{len(self.calls)}",
        )


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock(TUESDAY_10AM)


@pytest.fixture
def store():
    return InMemoryPipelineStore()


@pytest.fixture
def recording_publisher():
    return RecordingPublisher


def insight_drafts(count: int) -> list[InsightDraft]:
    return [
        InsightDraft(
            title=f"Insight {n}",
            content=f"Insight {n}: teams that ship weekly learn faster",
            urgency=20,
            relatability=20,
            specificity=15,
            authority=15,
        )
        for n in range(1, count + 1)
    ]


@pytest.fixture
def build_project():
    """Walk a project through the aggregate up to ``stage``."""

    def build(
        stage: Stage,
        *,
        now: datetime = TUESDAY_10AM,
        insights: int = 2,
        platforms: tuple[str, ...] = ("linkedin",),
        preferred_days: tuple[str, ...] = ("monday",),
        config: WorkflowConfig | None = None,
    ) -> Project:
        config = config or WorkflowConfig(
            target_platforms=platforms,
            publishing_schedule=PublishingSchedule(preferred_days=frozenset(preferred_days)),
        )
        project = agg.create_project("Weekly podcast", now=now, transcript=TRANSCRIPT, workflow_config=config).project
        if stage is Stage.raw_content:
            return project

        project = agg.start_processing(project, now=now).project
        project = agg.record_cleaned_transcript(project, "Ship in small batches.", now=now).project
        if stage is Stage.processing_content:
            return project

        project = agg.add_insights(project, insight_drafts(insights), now=now).project
        if stage is Stage.insights_ready:
            return project

        project = agg.approve_all_insights(project, now=now).project
        if stage is Stage.insights_approved:
            return project

        drafts = [
            PostDraft(platform=platform, content=f"Post about {insight.title}", insight_id=insight.id, hashtags=("growth",))
            for insight in project.insights
            for platform in project.workflow_config.target_platforms
        ]
        project = agg.add_posts(project, drafts, now=now).project
        if stage is Stage.posts_generated:
            return project

        project = agg.approve_all_posts(project, now=now).project
        if stage is Stage.posts_approved:
            return project

        project = agg.schedule_posts(project, now=now).project
        if stage is Stage.scheduled:
            return project

        raise ValueError(f"build_project does not build {stage.value}")

    return build
