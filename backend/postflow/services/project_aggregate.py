"""
Project aggregate operations.

Every operation takes the current project state and returns an ``Outcome``
holding a new project state plus the events it produced. The input project
is never mutated, so a rejected operation leaves nothing behind. Callers
persist ``outcome.project`` and ``outcome.events`` together.

Stage-gated operations check the *current* stage before doing anything and
raise ``InvalidOperation`` for stale callers.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from postflow.errors import InvalidOperation, ValidationError
from postflow.services import event_log as ev
from postflow.services.domain import (
    DESCRIPTION_MAX_LENGTH,
    DISPATCHABLE,
    TITLE_MAX_LENGTH,
    Insight,
    InsightDraft,
    InsightStatus,
    JobType,
    Post,
    PostDraft,
    PostStatus,
    Project,
    ProjectEvent,
    ScheduledPost,
    ScheduledPostStatus,
    WorkflowConfig,
)
from postflow.services.metrics import compute_metrics
from postflow.services.publisher_adapter import optimize_content
from postflow.services.slots import compute_schedule_time
from postflow.services.stage_graph import Stage, ensure_transition, progress_for

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    project: Project
    events: list[ProjectEvent] = field(default_factory=list)


def _require_stage(project: Project, *stages: Stage, action: str) -> None:
    if project.stage not in stages:
        required = ", ".join(s.value for s in stages)
        raise InvalidOperation(
            f"Cannot {action} while project is in {project.stage.value} (requires {required})",
            stage=project.stage.value,
            required=[s.value for s in stages],
        )


def _transition(
    project: Project,
    target: Stage,
    now: datetime,
    events: list[ProjectEvent],
    *,
    reason: str | None = None,
    user_id: str | None = None,
) -> None:
    ensure_transition(project.stage, target)
    previous = project.stage
    project.stage = target
    project.progress = progress_for(target, project.progress)
    project.last_activity_at = now
    events.append(ev.make_event(
        project.id,
        ev.STAGE_CHANGED,
        now,
        {"from": previous.value, "to": target.value, "progress": project.progress, "reason": reason},
        user_id=user_id,
    ))
    logger.info("[project=%s] %s -> %s (%s)", project.id, previous.value, target.value, reason or "manual")


def _finish(project: Project, events: list[ProjectEvent], now: datetime) -> Outcome:
    project.updated_at = now
    project.metrics = compute_metrics(project)
    return Outcome(project=project, events=events)


# ── Lifecycle ────────────────────────────────────────────────

def create_project(
    title: str,
    *,
    now: datetime,
    description: str | None = None,
    transcript: str | None = None,
    workflow_config: WorkflowConfig | None = None,
    user_id: str | None = None,
) -> Outcome:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Project title is required")
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(f"Project title cannot exceed {TITLE_MAX_LENGTH} characters")
    if description and len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(f"Project description cannot exceed {DESCRIPTION_MAX_LENGTH} characters")

    project = Project(
        title=title,
        description=description,
        raw_transcript=transcript,
        workflow_config=workflow_config or WorkflowConfig(),
        created_at=now,
        updated_at=now,
        last_activity_at=now,
    )
    events = [ev.make_event(project.id, ev.PROJECT_CREATED, now, {"title": title}, user_id=user_id)]
    return _finish(project, events, now)


def transition_to(
    project: Project,
    target: Stage,
    *,
    now: datetime,
    reason: str | None = None,
    user_id: str | None = None,
) -> Outcome:
    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    _transition(project, target, now, events, reason=reason, user_id=user_id)
    return _finish(project, events, now)


def start_processing(project: Project, *, now: datetime, user_id: str | None = None) -> Outcome:
    _require_stage(project, Stage.raw_content, action="start processing")
    if not (project.raw_transcript or "").strip():
        raise InvalidOperation("Project has no transcript to process")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    _transition(project, Stage.processing_content, now, events, reason="processing_started", user_id=user_id)
    events.append(ev.make_event(project.id, ev.PROCESSING_STARTED, now, user_id=user_id))
    return _finish(project, events, now)


def record_cleaned_transcript(project: Project, cleaned: str, *, now: datetime) -> Outcome:
    _require_stage(project, Stage.processing_content, action="store a cleaned transcript")
    project = copy.deepcopy(project)
    project.cleaned_transcript = cleaned
    project.last_activity_at = now
    events = [ev.make_event(project.id, ev.TRANSCRIPT_CLEANED, now, {"word_count": len(cleaned.split())})]
    return _finish(project, events, now)


def begin_extraction(project: Project, *, now: datetime, user_id: str | None = None) -> Outcome:
    """Guard for an explicit extract request; re-extraction rolls back to processing."""
    _require_stage(project, Stage.processing_content, Stage.insights_ready, action="extract insights")
    if not project.cleaned_transcript:
        raise InvalidOperation("Transcript has not been cleaned yet")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    if project.stage is Stage.insights_ready:
        _transition(project, Stage.processing_content, now, events, reason="reprocess", user_id=user_id)
    return _finish(project, events, now)


def archive(project: Project, reason: str | None = None, *, now: datetime, user_id: str | None = None) -> Outcome:
    if project.stage is Stage.archived:
        raise InvalidOperation("Project is already archived")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    cancelled = []
    for item in project.scheduled_posts:
        if item.status in DISPATCHABLE:
            item.status = ScheduledPostStatus.cancelled
            cancelled.append(item.id)
    _transition(project, Stage.archived, now, events, reason=reason or "archived", user_id=user_id)
    project.archived_reason = reason
    events.append(ev.make_event(
        project.id, ev.PROJECT_ARCHIVED, now, {"reason": reason, "cancelled_scheduled_posts": cancelled}, user_id=user_id,
    ))
    return _finish(project, events, now)


def restore(project: Project, *, now: datetime, user_id: str | None = None) -> Outcome:
    _require_stage(project, Stage.archived, action="restore")
    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    _transition(project, Stage.raw_content, now, events, reason="restored", user_id=user_id)
    project.archived_reason = None
    events.append(ev.make_event(project.id, ev.PROJECT_RESTORED, now, user_id=user_id))
    return _finish(project, events, now)


def recompute_metrics(project: Project, *, now: datetime) -> Outcome:
    project = copy.deepcopy(project)
    project.metrics = compute_metrics(project)
    return Outcome(project=project, events=[])


def fail_processing(project: Project, job_type: JobType, error: str, *, now: datetime, job_id: str | None = None) -> Outcome:
    """Roll back the step a job belonged to and record its single terminal failure."""
    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    data = {"job_type": job_type.value, "job_id": job_id, "error": error}

    if job_type is JobType.generate_posts:
        if project.stage is Stage.posts_generated:
            _transition(project, Stage.insights_approved, now, events, reason="generation_failed")
        events.append(ev.make_event(project.id, ev.POST_GENERATION_FAILED, now, data, key=job_id))
    else:
        if project.stage is Stage.processing_content:
            _transition(project, Stage.raw_content, now, events, reason="processing_failed")
        events.append(ev.make_event(project.id, ev.PROCESSING_FAILED, now, data, key=job_id))
    return _finish(project, events, now)


# ── Insights ─────────────────────────────────────────────────

def _maybe_advance_insights(project: Project, now: datetime, events: list[ProjectEvent], user_id: str | None) -> None:
    if project.stage is not Stage.insights_ready or not project.insights:
        return
    if all(i.is_reviewed for i in project.insights) and any(i.status is InsightStatus.approved for i in project.insights):
        _transition(project, Stage.insights_approved, now, events, reason="all_insights_reviewed", user_id=user_id)


def _approve_insight(insight: Insight, project: Project, now: datetime, events: list, *, auto: bool = False, user_id=None):
    insight.status = InsightStatus.approved
    insight.rejection_reason = None
    insight.reviewed_at = now
    events.append(ev.make_event(
        project.id, ev.INSIGHT_APPROVED, now,
        {"insight_id": insight.id, "total_score": insight.total_score, "auto": auto},
        user_id=user_id,
    ))


def add_insights(project: Project, drafts: list[InsightDraft], *, now: datetime) -> Outcome:
    _require_stage(project, Stage.processing_content, action="add extracted insights")
    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []

    new_insights = [
        Insight(
            project_id=project.id,
            title=d.title,
            content=d.content,
            category=d.category,
            urgency=d.urgency,
            relatability=d.relatability,
            specificity=d.specificity,
            authority=d.authority,
            created_at=now,
        )
        for d in drafts
    ]
    project.insights.extend(new_insights)
    events.append(ev.make_event(project.id, ev.INSIGHTS_EXTRACTED, now, {"count": len(new_insights)}))
    _transition(project, Stage.insights_ready, now, events, reason="insights_extracted")

    config = project.workflow_config
    if config.auto_approve_insights:
        for insight in new_insights:
            if insight.total_score >= config.min_insight_score:
                _approve_insight(insight, project, now, events, auto=True)
        _maybe_advance_insights(project, now, events, None)
    return _finish(project, events, now)


def approve_insight(project: Project, insight_id: str, *, now: datetime, user_id: str | None = None) -> Outcome:
    _require_stage(project, Stage.insights_ready, action="approve insights")
    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    _approve_insight(project.insight(insight_id), project, now, events, user_id=user_id)
    project.last_activity_at = now
    _maybe_advance_insights(project, now, events, user_id)
    return _finish(project, events, now)


def reject_insight(
    project: Project, insight_id: str, reason: str | None = None, *, now: datetime, user_id: str | None = None
) -> Outcome:
    _require_stage(project, Stage.insights_ready, action="reject insights")
    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    insight = project.insight(insight_id)
    insight.status = InsightStatus.rejected
    insight.rejection_reason = reason
    insight.reviewed_at = now
    project.last_activity_at = now
    events.append(ev.make_event(project.id, ev.INSIGHT_REJECTED, now, {"insight_id": insight.id, "reason": reason}, user_id=user_id))
    _maybe_advance_insights(project, now, events, user_id)
    return _finish(project, events, now)


def approve_all_insights(project: Project, *, now: datetime, user_id: str | None = None) -> Outcome:
    _require_stage(project, Stage.insights_ready, action="approve insights")
    pending = [i.id for i in project.insights if i.status is InsightStatus.draft]
    if not pending:
        raise InvalidOperation("No pending insights to approve")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    for insight in project.insights:
        if insight.id in pending:
            _approve_insight(insight, project, now, events, user_id=user_id)
    project.last_activity_at = now
    _maybe_advance_insights(project, now, events, user_id)
    return _finish(project, events, now)


# ── Posts ────────────────────────────────────────────────────

def generate_posts(project: Project, *, now: datetime, user_id: str | None = None) -> Outcome:
    """Guard for post generation; regeneration rolls back from PostsGenerated."""
    _require_stage(project, Stage.insights_approved, Stage.posts_generated, action="generate posts")
    approved = [i for i in project.insights if i.status is InsightStatus.approved]
    if not approved:
        raise InvalidOperation("No approved insights to generate posts from")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    if project.stage is Stage.posts_generated:
        _transition(project, Stage.insights_approved, now, events, reason="regenerate", user_id=user_id)
    events.append(ev.make_event(
        project.id, ev.POSTS_GENERATION_REQUESTED, now,
        {"insights": len(approved), "platforms": [p.value for p in project.workflow_config.target_platforms]},
        user_id=user_id,
    ))
    return _finish(project, events, now)


def add_posts(project: Project, drafts: list[PostDraft], *, now: datetime) -> Outcome:
    _require_stage(project, Stage.insights_approved, action="add generated posts")
    if not drafts:
        raise InvalidOperation("Post generation produced no posts")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    for draft in drafts:
        project.posts.append(Post(
            project_id=project.id,
            platform=draft.platform,
            content=draft.content,
            insight_id=draft.insight_id,
            hashtags=list(draft.hashtags),
            created_at=now,
        ))
    events.append(ev.make_event(project.id, ev.POSTS_GENERATED, now, {"count": len(drafts)}))
    _transition(project, Stage.posts_generated, now, events, reason="posts_generated")
    return _finish(project, events, now)


def _maybe_advance_posts(project: Project, now: datetime, events: list[ProjectEvent], user_id: str | None) -> None:
    if project.stage is not Stage.posts_generated or not project.posts:
        return
    if all(p.is_reviewed for p in project.posts) and any(p.status is PostStatus.approved for p in project.posts):
        _transition(project, Stage.posts_approved, now, events, reason="all_posts_reviewed", user_id=user_id)


def approve_post(project: Project, post_id: str, *, now: datetime, user_id: str | None = None) -> Outcome:
    _require_stage(project, Stage.posts_generated, action="approve posts")
    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    post = project.post(post_id)
    post.status = PostStatus.approved
    post.rejection_reason = None
    project.last_activity_at = now
    events.append(ev.make_event(project.id, ev.POST_APPROVED, now, {"post_id": post.id, "platform": post.platform.value}, user_id=user_id))
    _maybe_advance_posts(project, now, events, user_id)
    return _finish(project, events, now)


def reject_post(
    project: Project, post_id: str, reason: str | None = None, *, now: datetime, user_id: str | None = None
) -> Outcome:
    _require_stage(project, Stage.posts_generated, action="reject posts")
    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    post = project.post(post_id)
    post.status = PostStatus.rejected
    post.rejection_reason = reason
    project.last_activity_at = now
    events.append(ev.make_event(project.id, ev.POST_REJECTED, now, {"post_id": post.id, "reason": reason}, user_id=user_id))
    _maybe_advance_posts(project, now, events, user_id)
    return _finish(project, events, now)


def approve_all_posts(project: Project, *, now: datetime, user_id: str | None = None) -> Outcome:
    _require_stage(project, Stage.posts_generated, action="approve posts")
    pending = [p.id for p in project.posts if p.status is PostStatus.draft]
    if not pending:
        raise InvalidOperation("No pending posts to approve")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    for post in project.posts:
        if post.id in pending:
            post.status = PostStatus.approved
            events.append(ev.make_event(project.id, ev.POST_APPROVED, now, {"post_id": post.id, "platform": post.platform.value}, user_id=user_id))
    project.last_activity_at = now
    _maybe_advance_posts(project, now, events, user_id)
    return _finish(project, events, now)


# ── Scheduling ───────────────────────────────────────────────

def _compose(post: Post) -> str:
    text = post.content.strip()
    missing = [f"#{tag.lstrip('#')}" for tag in post.hashtags if f"#{tag.lstrip('#')}" not in text]
    if missing:
        text = f"{text}\n\n{' '.join(missing)}"
    return optimize_content(post.platform, text)


def _schedulable_posts(project: Project) -> list[Post]:
    already = {s.post_id for s in project.scheduled_posts if s.status is not ScheduledPostStatus.cancelled}
    return [p for p in project.posts if p.status is PostStatus.approved and p.id not in already]


def schedule_posts(project: Project, *, now: datetime, user_id: str | None = None) -> Outcome:
    _require_stage(project, Stage.posts_approved, action="schedule posts")
    posts = _schedulable_posts(project)
    if not posts:
        raise InvalidOperation("No approved posts to schedule")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    schedule = project.workflow_config.publishing_schedule
    created = []
    for post in posts:
        item = ScheduledPost(
            project_id=project.id,
            post_id=post.id,
            platform=post.platform,
            content=_compose(post),
            scheduled_time=compute_schedule_time(schedule, now),
            created_at=now,
        )
        project.scheduled_posts.append(item)
        created.append(item)

    _transition(project, Stage.scheduled, now, events, reason="posts_scheduled", user_id=user_id)
    events.append(ev.make_event(
        project.id, ev.POSTS_SCHEDULED, now,
        {"count": len(created), "items": [{"id": s.id, "platform": s.platform.value, "scheduled_time": s.scheduled_time.isoformat()} for s in created]},
        user_id=user_id,
    ))
    return _finish(project, events, now)


def publish_now(project: Project, *, now: datetime, user_id: str | None = None) -> Outcome:
    _require_stage(project, Stage.posts_approved, action="publish now")
    posts = _schedulable_posts(project)
    if not posts:
        raise InvalidOperation("No approved posts to publish")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    for post in posts:
        project.scheduled_posts.append(ScheduledPost(
            project_id=project.id,
            post_id=post.id,
            platform=post.platform,
            content=_compose(post),
            scheduled_time=now,
            created_at=now,
        ))
    _transition(project, Stage.publishing, now, events, reason="publish_now", user_id=user_id)
    events.append(ev.make_event(project.id, ev.PUBLISH_NOW_REQUESTED, now, {"count": len(posts)}, user_id=user_id))
    return _finish(project, events, now)


def cancel_scheduled_post(project: Project, scheduled_post_id: str, *, now: datetime, user_id: str | None = None) -> Outcome:
    item = project.scheduled_post(scheduled_post_id)
    if item.status not in DISPATCHABLE:
        raise InvalidOperation(f"Scheduled post is {item.status.value} and cannot be cancelled")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    item = project.scheduled_post(scheduled_post_id)
    item.status = ScheduledPostStatus.cancelled
    project.last_activity_at = now
    events.append(ev.make_event(project.id, ev.SCHEDULED_POST_CANCELLED, now, {"scheduled_post_id": item.id}, user_id=user_id))
    _resolve_publishing(project, now, events)
    return _finish(project, events, now)


# ── Publishing results ───────────────────────────────────────

def _resolve_publishing(project: Project, now: datetime, events: list[ProjectEvent]) -> None:
    """Close out the Publishing stage once no scheduled post is still open."""
    if project.stage is not Stage.publishing:
        return
    live = [s for s in project.scheduled_posts if s.status is not ScheduledPostStatus.cancelled]
    if any(s.is_open for s in live):
        return

    published = sum(1 for s in live if s.status is ScheduledPostStatus.published)
    failed = sum(1 for s in live if s.status is ScheduledPostStatus.failed)
    if published:
        reason = "partially_published" if failed else "published"
        _transition(project, Stage.published, now, events, reason=reason)
    else:
        _transition(project, Stage.scheduled, now, events, reason="publish_failed")
        if failed:
            events.append(ev.make_event(project.id, ev.PUBLISHING_FAILED, now, {"failed": failed}))


def mark_publishing(project: Project, scheduled_post_id: str, *, now: datetime) -> Outcome:
    """Called right after a dispatcher claims an item; first claim starts Publishing."""
    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    project.scheduled_post(scheduled_post_id)
    if project.stage is Stage.scheduled:
        _transition(project, Stage.publishing, now, events, reason="dispatch_started")
    return _finish(project, events, now)


def record_publish_success(
    project: Project,
    scheduled_post_id: str,
    external_post_id: str | None,
    *,
    now: datetime,
    url: str | None = None,
) -> Outcome:
    item = project.scheduled_post(scheduled_post_id)
    if item.status in (ScheduledPostStatus.published, ScheduledPostStatus.cancelled):
        raise InvalidOperation(f"Scheduled post is already {item.status.value}")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    item = project.scheduled_post(scheduled_post_id)
    item.status = ScheduledPostStatus.published
    item.external_post_id = external_post_id
    item.external_url = url
    item.published_at = now
    item.error_message = None
    for post in project.posts:
        if post.id == item.post_id:
            post.status = PostStatus.published
            post.published_at = now
    project.last_activity_at = now
    events.append(ev.make_event(
        project.id, ev.POST_PUBLISHED, now,
        {"scheduled_post_id": item.id, "post_id": item.post_id, "platform": item.platform.value,
         "external_post_id": external_post_id, "url": url},
        key=item.id,
    ))
    _resolve_publishing(project, now, events)
    return _finish(project, events, now)


def _cancel_in_flight(project: Project, item: ScheduledPost, now: datetime, events: list[ProjectEvent], *, reason: str) -> None:
    item.status = ScheduledPostStatus.cancelled
    project.last_activity_at = now
    events.append(ev.make_event(
        project.id, ev.SCHEDULED_POST_CANCELLED, now, {"scheduled_post_id": item.id, "reason": reason},
    ))


def release_claim(project: Project, scheduled_post_id: str, *, now: datetime, reason: str = "project_archived") -> Outcome:
    """Cancel a claimed item that must not be published (its project was archived)."""
    item = project.scheduled_post(scheduled_post_id)
    if item.status is not ScheduledPostStatus.publishing:
        raise InvalidOperation(f"Scheduled post is {item.status.value}, not in flight")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    _cancel_in_flight(project, project.scheduled_post(scheduled_post_id), now, events, reason=reason)
    _resolve_publishing(project, now, events)
    return _finish(project, events, now)


def record_publish_failure(
    project: Project,
    scheduled_post_id: str,
    error: str,
    *,
    now: datetime,
    max_attempts: int = 3,
    backoff_base_minutes: int = 5,
) -> Outcome:
    """Count a failed attempt: retry with 5^n minute backoff, fail permanently at ``max_attempts``.

    Items of an archived project are cancelled instead of being retried.
    """
    item = project.scheduled_post(scheduled_post_id)
    if item.status is not ScheduledPostStatus.publishing:
        raise InvalidOperation(f"Scheduled post is {item.status.value}, not in flight")

    project = copy.deepcopy(project)
    events: list[ProjectEvent] = []
    item = project.scheduled_post(scheduled_post_id)
    item.retry_count += 1
    item.last_attempt = now
    item.error_message = error
    project.last_activity_at = now

    if project.stage is Stage.archived:
        _cancel_in_flight(project, item, now, events, reason="project_archived")
    elif item.retry_count < max_attempts:
        item.status = ScheduledPostStatus.retry
        item.scheduled_time = now + timedelta(minutes=backoff_base_minutes ** item.retry_count)
        events.append(ev.make_event(
            project.id, ev.POST_PUBLISH_RETRY, now,
            {"scheduled_post_id": item.id, "retry_count": item.retry_count,
             "next_attempt": item.scheduled_time.isoformat(), "error": error},
        ))
    else:
        item.status = ScheduledPostStatus.failed
        events.append(ev.make_event(
            project.id, ev.POST_PUBLISH_FAILED, now,
            {"scheduled_post_id": item.id, "platform": item.platform.value,
             "retry_count": item.retry_count, "error": error},
            key=item.id,
        ))
    _resolve_publishing(project, now, events)
    return _finish(project, events, now)


def requeue_failed(project: Project, scheduled_post_id: str, *, now: datetime, delay_minutes: int = 5) -> Outcome:
    item = project.scheduled_post(scheduled_post_id)
    if item.status is not ScheduledPostStatus.failed:
        raise InvalidOperation(f"Scheduled post is {item.status.value}, only failed items can be requeued")
    if project.stage is Stage.archived:
        raise InvalidOperation("Project is archived")

    project = copy.deepcopy(project)
    item = project.scheduled_post(scheduled_post_id)
    item.status = ScheduledPostStatus.pending
    item.scheduled_time = now + timedelta(minutes=delay_minutes)
    item.error_message = None
    events = [ev.make_event(
        project.id, ev.SCHEDULED_POST_REQUEUED, now,
        {"scheduled_post_id": item.id, "retry_count": item.retry_count, "scheduled_time": item.scheduled_time.isoformat()},
    )]
    return _finish(project, events, now)
