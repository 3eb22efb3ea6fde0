from __future__ import annotations

import pytest

from postflow.errors import InvalidTransition
from postflow.services.stage_graph import (
    EDGES,
    Stage,
    available_transitions,
    ensure_transition,
    is_valid_transition,
    progress_for,
)


@pytest.mark.parametrize("stage", [s for s in Stage if s is not Stage.archived])
def test_archive_is_reachable_from_every_live_stage(stage):
    assert is_valid_transition(stage, Stage.archived)


def test_archived_only_leaves_through_restore():
    assert available_transitions(Stage.archived) == [Stage.raw_content]
    assert not is_valid_transition(Stage.archived, Stage.archived)


def test_only_listed_edges_are_valid():
    for source in Stage:
        for target in Stage:
            expected = (source, target) in EDGES or (target is Stage.archived and source is not Stage.archived)
            assert is_valid_transition(source, target) is expected, (source, target)


def test_rollback_edges():
    assert is_valid_transition(Stage.processing_content, Stage.raw_content)
    assert is_valid_transition(Stage.insights_ready, Stage.processing_content)
    assert is_valid_transition(Stage.posts_generated, Stage.insights_approved)
    assert is_valid_transition(Stage.publishing, Stage.scheduled)
    assert is_valid_transition(Stage.posts_approved, Stage.publishing)


def test_no_skipping_forward():
    assert not is_valid_transition(Stage.raw_content, Stage.insights_ready)
    assert not is_valid_transition(Stage.insights_approved, Stage.scheduled)
    assert not is_valid_transition(Stage.scheduled, Stage.published)
    assert not is_valid_transition(Stage.published, Stage.raw_content)


def test_ensure_transition_raises_with_both_stages():
    with pytest.raises(InvalidTransition) as info:
        ensure_transition(Stage.raw_content, Stage.published)
    assert info.value.from_stage is Stage.raw_content
    assert info.value.to_stage is Stage.published
    assert info.value.to_dict()["context"] == {"from_stage": "raw_content", "to_stage": "published"}


def test_progress_table():
    assert [progress_for(s) for s in Stage if s is not Stage.archived] == [0, 10, 25, 40, 55, 70, 85, 95, 100]


def test_archive_keeps_current_progress():
    assert progress_for(Stage.archived, 55) == 55
    assert progress_for(Stage.archived) == 0


def test_available_transitions_follow_stage_order():
    assert available_transitions(Stage.raw_content) == [Stage.processing_content, Stage.archived]
    assert available_transitions(Stage.publishing) == [Stage.scheduled, Stage.published, Stage.archived]
    assert available_transitions(Stage.published) == [Stage.archived]
