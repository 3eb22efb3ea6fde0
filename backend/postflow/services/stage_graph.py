"""
Project lifecycle stage graph.

Static edge table + progress lookup. Pure functions, no state.
Archive is reachable from every stage except Archived itself;
Archived only leaves through the restore edge.
"""
from __future__ import annotations

from enum import Enum

from postflow.errors import InvalidTransition


class Stage(str, Enum):
    raw_content = "raw_content"
    processing_content = "processing_content"
    insights_ready = "insights_ready"
    insights_approved = "insights_approved"
    posts_generated = "posts_generated"
    posts_approved = "posts_approved"
    scheduled = "scheduled"
    publishing = "publishing"
    published = "published"
    archived = "archived"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)

# Forward edges first, then rollback / alternate edges.
EDGES: frozenset[tuple[Stage, Stage]] = frozenset({
    (Stage.raw_content, Stage.processing_content),
    (Stage.processing_content, Stage.insights_ready),
    (Stage.insights_ready, Stage.insights_approved),
    (Stage.insights_approved, Stage.posts_generated),
    (Stage.posts_generated, Stage.posts_approved),
    (Stage.posts_approved, Stage.scheduled),
    (Stage.scheduled, Stage.publishing),
    (Stage.publishing, Stage.published),
    # processing failed
    (Stage.processing_content, Stage.raw_content),
    # insights rejected, reprocess
    (Stage.insights_ready, Stage.processing_content),
    # posts rejected, regenerate
    (Stage.posts_generated, Stage.insights_approved),
    # direct publish, bypassing scheduling
    (Stage.posts_approved, Stage.publishing),
    # publish failed, requeue
    (Stage.publishing, Stage.scheduled),
    # restore
    (Stage.archived, Stage.raw_content),
})

# None = keep the previous value (archive freezes progress).
PROGRESS: dict[Stage, int | None] = {
    Stage.raw_content: 0,
    Stage.processing_content: 10,
    Stage.insights_ready: 25,
    Stage.insights_approved: 40,
    Stage.posts_generated: 55,
    Stage.posts_approved: 70,
    Stage.scheduled: 85,
    Stage.publishing: 95,
    Stage.published: 100,
    Stage.archived: None,
}


def _validate_progress_table() -> None:
    missing = [s.value for s in Stage if s not in PROGRESS]
    extra = [k for k in PROGRESS if not isinstance(k, Stage)]
    if missing or extra or len(PROGRESS) != len(Stage):
        raise RuntimeError(f"Progress table mismatch: missing={missing} extra={extra}")
    values = [PROGRESS[s] for s in STAGE_ORDER if PROGRESS[s] is not None]
    if values != sorted(values) or any(v < 0 or v > 100 for v in values):
        raise RuntimeError(f"Progress table must be non-decreasing within 0..100: {values}")


_validate_progress_table()


def is_valid_transition(from_stage: Stage, to_stage: Stage) -> bool:
    if to_stage is Stage.archived:
        return from_stage is not Stage.archived
    return (from_stage, to_stage) in EDGES


def ensure_transition(from_stage: Stage, to_stage: Stage) -> None:
    if not is_valid_transition(from_stage, to_stage):
        raise InvalidTransition(from_stage, to_stage)


def progress_for(stage: Stage, current: int = 0) -> int:
    """Progress for ``stage``; Archived returns ``current`` unchanged."""
    value = PROGRESS[stage]
    return current if value is None else value


def available_transitions(stage: Stage) -> list[Stage]:
    return [target for target in STAGE_ORDER if is_valid_transition(stage, target)]
