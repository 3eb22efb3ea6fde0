from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    title: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    raw_transcript: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    cleaned_transcript: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    stage: Mapped[str] = mapped_column(sa.String(32), nullable=False, index=True, server_default="raw_content")
    progress: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    workflow_config: Mapped[dict] = mapped_column(sa.JSON(), nullable=False, default=dict)
    metrics: Mapped[dict] = mapped_column(sa.JSON(), nullable=False, default=dict)
    archived_reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    insights: Mapped[list["Insight"]] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    posts: Mapped[list["Post"]] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    scheduled_posts: Mapped[list["ScheduledPost"]] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    jobs: Mapped[list["ProcessingJob"]] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    events: Mapped[list["ProjectEvent"]] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )


class Insight(Base):
    __tablename__ = "insights"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    project_id: Mapped[str] = mapped_column(sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    content: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    category: Mapped[str] = mapped_column(sa.String(64), nullable=False, server_default="general")
    urgency: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    relatability: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    specificity: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    authority: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    total_score: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default="draft")
    rejection_reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    project: Mapped["Project"] = relationship(back_populates="insights")


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    project_id: Mapped[str] = mapped_column(sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    insight_id: Mapped[str | None] = mapped_column(sa.ForeignKey("insights.id", ondelete="SET NULL"), nullable=True)
    platform: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    content: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    hashtags: Mapped[list] = mapped_column(sa.JSON(), nullable=False, default=list)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default="draft")
    rejection_reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    project: Mapped["Project"] = relationship(back_populates="posts")


class ScheduledPost(Base):
    __tablename__ = "scheduled_posts"
    __table_args__ = (
        sa.Index("ix_scheduled_posts_status_time", "status", "scheduled_time"),
    )

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    project_id: Mapped[str] = mapped_column(sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    post_id: Mapped[str] = mapped_column(sa.ForeignKey("posts.id", ondelete="CASCADE"), nullable=False)
    platform: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    content: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    scheduled_time: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default="pending")
    retry_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    last_attempt: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    external_post_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    external_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    project: Mapped["Project"] = relationship(back_populates="scheduled_posts")


class ProcessingJob(Base):
    __tablename__ = "processing_jobs"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    project_id: Mapped[str] = mapped_column(sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default="queued")
    progress: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    retry_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    max_retries: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="3")
    result_count: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)

    project: Mapped["Project"] = relationship(back_populates="jobs")


class ProjectEvent(Base):
    __tablename__ = "project_events"
    __table_args__ = (
        sa.Index("ix_project_events_project_name", "project_id", "name"),
        sa.UniqueConstraint("project_id", "name", "dedupe_key", name="uq_project_events_dedupe"),
    )

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    seq: Mapped[int] = mapped_column(sa.BigInteger(), sa.Identity(), nullable=False)
    project_id: Mapped[str] = mapped_column(sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    data: Mapped[dict] = mapped_column(sa.JSON(), nullable=False, default=dict)
    user_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)

    project: Mapped["Project"] = relationship(back_populates="events")
