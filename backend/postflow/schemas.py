from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from postflow.errors import ValidationError as DomainValidationError
from postflow.services.domain import (
    DESCRIPTION_MAX_LENGTH,
    EventType,
    TITLE_MAX_LENGTH,
    InsightStatus,
    JobStatus,
    JobType,
    Platform,
    PostStatus,
    Project,
    PublishingSchedule,
    ScheduledPostStatus,
    Weekday,
    WorkflowConfig,
)
from postflow.services.stage_graph import Stage


class PublishingScheduleSchema(BaseModel):
    preferred_days: list[str] = ["monday", "wednesday", "friday"]
    preferred_time: str = "09:00"
    time_zone: str = "UTC"
    minimum_interval_hours: int = 4

    @field_validator("preferred_days")
    @classmethod
    def normalize_days(cls, value: list[str]) -> list[str]:
        try:
            return [Weekday.parse(d).name for d in value]
        except DomainValidationError as exc:
            raise ValueError(exc.message) from exc

    def to_domain(self) -> PublishingSchedule:
        return PublishingSchedule.from_dict(self.model_dump())


class WorkflowConfigSchema(BaseModel):
    auto_approve_insights: bool = False
    min_insight_score: int = 70
    auto_generate_posts: bool = False
    auto_schedule_posts: bool = False
    target_platforms: list[str] = ["linkedin"]
    publishing_schedule: PublishingScheduleSchema = Field(default_factory=PublishingScheduleSchema)

    def to_domain(self) -> WorkflowConfig:
        return WorkflowConfig.from_dict(self.model_dump())

    @classmethod
    def from_domain(cls, config: WorkflowConfig) -> "WorkflowConfigSchema":
        return cls.model_validate(config.to_dict())


class ProjectCreate(BaseModel):
    title: str = Field(min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    transcript: str | None = None
    workflow_config: WorkflowConfigSchema | None = None

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value


class ReasonRequest(BaseModel):
    reason: str | None = None


class TransitionRequest(BaseModel):
    target: Stage
    reason: str | None = None


class InsightRead(BaseModel):
    id: str
    title: str
    content: str
    category: str
    urgency: int
    relatability: int
    specificity: int
    authority: int
    total_score: int
    status: InsightStatus
    rejection_reason: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class PostRead(BaseModel):
    id: str
    insight_id: str | None = None
    platform: Platform
    content: str
    hashtags: list[str]
    status: PostStatus
    rejection_reason: str | None = None
    published_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class ScheduledPostRead(BaseModel):
    id: str
    post_id: str
    platform: Platform
    content: str
    scheduled_time: datetime
    status: ScheduledPostStatus
    retry_count: int
    last_attempt: datetime | None = None
    external_post_id: str | None = None
    external_url: str | None = None
    published_at: datetime | None = None
    error_message: str | None = None

    class Config:
        from_attributes = True


class ProjectSummary(BaseModel):
    id: str
    title: str
    stage: Stage
    progress: int
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime | None = None

    class Config:
        from_attributes = True


class ProjectRead(ProjectSummary):
    description: str | None = None
    raw_transcript: str | None = None
    cleaned_transcript: str | None = None
    archived_reason: str | None = None
    workflow_config: WorkflowConfigSchema
    metrics: dict
    insights: list[InsightRead]
    posts: list[PostRead]
    scheduled_posts: list[ScheduledPostRead]

    @classmethod
    def from_domain(cls, project: Project) -> "ProjectRead":
        return cls(
            id=project.id,
            title=project.title,
            stage=project.stage,
            progress=project.progress,
            created_at=project.created_at,
            updated_at=project.updated_at,
            last_activity_at=project.last_activity_at,
            description=project.description,
            raw_transcript=project.raw_transcript,
            cleaned_transcript=project.cleaned_transcript,
            archived_reason=project.archived_reason,
            workflow_config=WorkflowConfigSchema.from_domain(project.workflow_config),
            metrics=project.metrics.to_dict(),
            insights=[InsightRead.model_validate(i) for i in project.insights],
            posts=[PostRead.model_validate(p) for p in project.posts],
            scheduled_posts=[ScheduledPostRead.model_validate(s) for s in project.scheduled_posts],
        )


class ProjectState(BaseModel):
    project_id: str
    stage: Stage
    progress: int
    available_transitions: list[Stage]
    last_activity_at: datetime | None = None


class ProjectEventRead(BaseModel):
    id: str
    name: str
    type: EventType
    data: dict
    user_id: str | None = None
    occurred_at: datetime

    class Config:
        from_attributes = True


class ProcessingJobRead(BaseModel):
    id: str
    job_type: JobType
    status: JobStatus
    progress: int
    retry_count: int
    max_retries: int
    result_count: int | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None

    class Config:
        from_attributes = True
