"""Rollup counts recomputed from a project's child collections."""
from __future__ import annotations

from postflow.services.domain import (
    InsightStatus,
    OPEN_STATUSES,
    PostStatus,
    Project,
    ProjectMetrics,
    ScheduledPostStatus,
)
from postflow.services.stage_graph import Stage


def _word_count(text: str | None) -> int:
    return len(text.split()) if text else 0


def compute_metrics(project: Project) -> ProjectMetrics:
    """Pure recomputation; same project state in, same metrics out."""
    insights = project.insights
    posts = project.posts
    scheduled = project.scheduled_posts

    published = [s for s in scheduled if s.status is ScheduledPostStatus.published]
    failed = [s for s in scheduled if s.status is ScheduledPostStatus.failed]

    outcome = None
    if project.stage is Stage.published:
        outcome = "partially_published" if failed else "published"

    published_times = [s.published_at for s in published if s.published_at is not None]

    return ProjectMetrics(
        transcript_word_count=_word_count(project.cleaned_transcript or project.raw_transcript),
        insights_total=len(insights),
        insights_approved=sum(1 for i in insights if i.status is InsightStatus.approved),
        insights_rejected=sum(1 for i in insights if i.status is InsightStatus.rejected),
        posts_total=len(posts),
        posts_approved=sum(1 for p in posts if p.status is PostStatus.approved),
        posts_rejected=sum(1 for p in posts if p.status is PostStatus.rejected),
        posts_published=sum(1 for p in posts if p.status is PostStatus.published),
        posts_scheduled=sum(1 for s in scheduled if s.status in OPEN_STATUSES),
        scheduled_published=len(published),
        scheduled_failed=len(failed),
        scheduled_cancelled=sum(1 for s in scheduled if s.status is ScheduledPostStatus.cancelled),
        publish_outcome=outcome,
        last_activity_at=project.last_activity_at,
        last_published_at=max(published_times) if published_times else None,
    )
