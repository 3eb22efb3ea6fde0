"""
Domain types for the content pipeline.

Project is the aggregate root: insights, posts and scheduled posts are
carried on it and never outlive it. Jobs and events reference it by id.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, time, timezone
from enum import Enum, IntEnum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from postflow.errors import NotFound, ValidationError
from postflow.services.stage_graph import Stage

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 1000
MAX_SUB_SCORE = 25


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Weekday(IntEnum):
    monday = 0
    tuesday = 1
    wednesday = 2
    thursday = 3
    friday = 4
    saturday = 5
    sunday = 6

    @classmethod
    def parse(cls, value: Any) -> "Weekday":
        if isinstance(value, Weekday):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().lower()]
        except KeyError:
            raise ValidationError(f"Unknown weekday: {value!r}") from None


class Platform(str, Enum):
    linkedin = "linkedin"
    x = "x"

    @classmethod
    def parse(cls, value: Any) -> "Platform":
        raw = getattr(value, "value", value)
        normalized = str(raw).strip().lower()
        if normalized == "twitter":
            normalized = "x"
        try:
            return cls(normalized)
        except ValueError:
            raise ValidationError(f"Unsupported platform: {raw!r}") from None


class InsightStatus(str, Enum):
    draft = "draft"
    approved = "approved"
    rejected = "rejected"


class PostStatus(str, Enum):
    draft = "draft"
    approved = "approved"
    rejected = "rejected"
    published = "published"


class ScheduledPostStatus(str, Enum):
    pending = "pending"
    retry = "retry"
    publishing = "publishing"  # claimed by a dispatcher, external call in flight
    published = "published"
    failed = "failed"
    cancelled = "cancelled"


DISPATCHABLE = (ScheduledPostStatus.pending, ScheduledPostStatus.retry)
OPEN_STATUSES = (ScheduledPostStatus.pending, ScheduledPostStatus.retry, ScheduledPostStatus.publishing)


class JobType(str, Enum):
    clean_transcript = "clean_transcript"
    extract_insights = "extract_insights"
    generate_posts = "generate_posts"
    schedule_posts = "schedule_posts"
    publish_post = "publish_post"


class JobStatus(str, Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_JOB_STATUSES = (JobStatus.completed, JobStatus.failed, JobStatus.cancelled)


class EventType(str, Enum):
    stage_changed = "stage_changed"
    action = "action"
    failure = "failure"


@dataclass(frozen=True)
class PublishingSchedule:
    preferred_days: frozenset[Weekday] = frozenset({Weekday.monday, Weekday.wednesday, Weekday.friday})
    preferred_time: time = time(9, 0)
    time_zone: str = "UTC"
    minimum_interval_hours: int = 4

    def __post_init__(self):
        days = frozenset(Weekday.parse(d) for d in self.preferred_days)
        if not days:
            raise ValidationError("preferred_days must not be empty")
        object.__setattr__(self, "preferred_days", days)
        if isinstance(self.preferred_time, str):
            try:
                object.__setattr__(self, "preferred_time", time.fromisoformat(self.preferred_time))
            except ValueError:
                raise ValidationError(f"Invalid preferred_time: {self.preferred_time!r}") from None
        if self.minimum_interval_hours < 1:
            raise ValidationError("minimum_interval_hours must be >= 1")
        try:
            ZoneInfo(self.time_zone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError(f"Unknown time zone: {self.time_zone!r}") from None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    def to_dict(self) -> dict:
        return {
            "preferred_days": [d.name for d in sorted(self.preferred_days)],
            "preferred_time": self.preferred_time.strftime("%H:%M"),
            "time_zone": self.time_zone,
            "minimum_interval_hours": self.minimum_interval_hours,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "PublishingSchedule":
        if not data:
            return cls()
        defaults = cls()
        return cls(
            preferred_days=frozenset(data.get("preferred_days") or defaults.preferred_days),
            preferred_time=data.get("preferred_time") or defaults.preferred_time,
            time_zone=data.get("time_zone") or defaults.time_zone,
            minimum_interval_hours=data.get("minimum_interval_hours", defaults.minimum_interval_hours),
        )


@dataclass
class WorkflowConfig:
    auto_approve_insights: bool = False
    min_insight_score: int = 70
    auto_generate_posts: bool = False
    auto_schedule_posts: bool = False
    target_platforms: tuple[Platform, ...] = (Platform.linkedin,)
    publishing_schedule: PublishingSchedule = field(default_factory=PublishingSchedule)

    def __post_init__(self):
        if not 0 <= self.min_insight_score <= MAX_SUB_SCORE * 4:
            raise ValidationError(f"min_insight_score must be within 0..{MAX_SUB_SCORE * 4}")
        platforms: list[Platform] = []
        for raw in self.target_platforms:
            platform = Platform.parse(raw)
            if platform not in platforms:
                platforms.append(platform)
        if not platforms:
            raise ValidationError("target_platforms must not be empty")
        self.target_platforms = tuple(platforms)

    def to_dict(self) -> dict:
        return {
            "auto_approve_insights": self.auto_approve_insights,
            "min_insight_score": self.min_insight_score,
            "auto_generate_posts": self.auto_generate_posts,
            "auto_schedule_posts": self.auto_schedule_posts,
            "target_platforms": [p.value for p in self.target_platforms],
            "publishing_schedule": self.publishing_schedule.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "WorkflowConfig":
        if not data:
            return cls()
        defaults = cls()
        return cls(
            auto_approve_insights=bool(data.get("auto_approve_insights", defaults.auto_approve_insights)),
            min_insight_score=int(data.get("min_insight_score", defaults.min_insight_score)),
            auto_generate_posts=bool(data.get("auto_generate_posts", defaults.auto_generate_posts)),
            auto_schedule_posts=bool(data.get("auto_schedule_posts", defaults.auto_schedule_posts)),
            target_platforms=tuple(data.get("target_platforms") or defaults.target_platforms),
            publishing_schedule=PublishingSchedule.from_dict(data.get("publishing_schedule")),
        )


@dataclass(frozen=True)
class ProjectMetrics:
    transcript_word_count: int = 0
    insights_total: int = 0
    insights_approved: int = 0
    insights_rejected: int = 0
    posts_total: int = 0
    posts_approved: int = 0
    posts_rejected: int = 0
    posts_published: int = 0
    posts_scheduled: int = 0
    scheduled_published: int = 0
    scheduled_failed: int = 0
    scheduled_cancelled: int = 0
    publish_outcome: str | None = None
    last_activity_at: datetime | None = None
    last_published_at: datetime | None = None

    def to_dict(self) -> dict:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> "ProjectMetrics":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key.endswith("_at") and isinstance(value, str):
                value = datetime.fromisoformat(value)
            values[key] = value
        return cls(**values)


@dataclass(frozen=True)
class InsightDraft:
    """Insight as returned by the extraction step, before it joins a project."""
    title: str
    content: str
    category: str = "general"
    urgency: int = 0
    relatability: int = 0
    specificity: int = 0
    authority: int = 0


@dataclass(frozen=True)
class PostDraft:
    platform: Platform
    content: str
    insight_id: str | None = None
    hashtags: tuple[str, ...] = ()


@dataclass
class Insight:
    project_id: str
    title: str
    content: str
    category: str = "general"
    urgency: int = 0
    relatability: int = 0
    specificity: int = 0
    authority: int = 0
    status: InsightStatus = InsightStatus.draft
    rejection_reason: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    reviewed_at: datetime | None = None

    def __post_init__(self):
        for name in ("urgency", "relatability", "specificity", "authority"):
            value = getattr(self, name)
            if not 0 <= value <= MAX_SUB_SCORE:
                raise ValidationError(f"Insight {name} score must be within 0..{MAX_SUB_SCORE}, got {value}")

    @property
    def total_score(self) -> int:
        return self.urgency + self.relatability + self.specificity + self.authority

    @property
    def is_reviewed(self) -> bool:
        return self.status is not InsightStatus.draft


@dataclass
class Post:
    project_id: str
    platform: Platform
    content: str
    insight_id: str | None = None
    hashtags: list[str] = field(default_factory=list)
    status: PostStatus = PostStatus.draft
    rejection_reason: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    published_at: datetime | None = None

    @property
    def is_reviewed(self) -> bool:
        return self.status is not PostStatus.draft


@dataclass
class ScheduledPost:
    project_id: str
    post_id: str
    platform: Platform
    content: str
    scheduled_time: datetime
    status: ScheduledPostStatus = ScheduledPostStatus.pending
    retry_count: int = 0
    last_attempt: datetime | None = None
    external_post_id: str | None = None
    external_url: str | None = None
    published_at: datetime | None = None
    error_message: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


@dataclass
class ProcessingJob:
    project_id: str
    job_type: JobType
    status: JobStatus = JobStatus.queued
    progress: int = 0
    retry_count: int = 0
    max_retries: int = 3
    result_count: int | None = None
    error_message: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass
class ProjectEvent:
    project_id: str
    name: str
    type: EventType = EventType.action
    data: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)
    user_id: str | None = None
    # Dedupe key: at most one event per (project, name, key).
    key: str | None = None
    id: str = field(default_factory=new_id)


@dataclass
class Project:
    title: str
    description: str | None = None
    raw_transcript: str | None = None
    cleaned_transcript: str | None = None
    stage: Stage = Stage.raw_content
    progress: int = 0
    workflow_config: WorkflowConfig = field(default_factory=WorkflowConfig)
    metrics: ProjectMetrics = field(default_factory=ProjectMetrics)
    archived_reason: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime | None = None
    insights: list[Insight] = field(default_factory=list)
    posts: list[Post] = field(default_factory=list)
    scheduled_posts: list[ScheduledPost] = field(default_factory=list)

    def insight(self, insight_id: str) -> Insight:
        for insight in self.insights:
            if insight.id == insight_id:
                return insight
        raise NotFound(f"Insight {insight_id} not found in project {self.id}", insight_id=insight_id)

    def post(self, post_id: str) -> Post:
        for post in self.posts:
            if post.id == post_id:
                return post
        raise NotFound(f"Post {post_id} not found in project {self.id}", post_id=post_id)

    def scheduled_post(self, scheduled_post_id: str) -> ScheduledPost:
        for item in self.scheduled_posts:
            if item.id == scheduled_post_id:
                return item
        raise NotFound(
            f"Scheduled post {scheduled_post_id} not found in project {self.id}",
            scheduled_post_id=scheduled_post_id,
        )
