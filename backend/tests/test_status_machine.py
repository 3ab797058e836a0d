import pytest

from reel_factory.models import ContentStatus as S, PipelineLayer as L
from reel_factory.services.status_machine import (
    InvalidStatusTransition,
    allowed_transitions,
    can_transition,
    is_terminal,
    next_layer,
    reopen_status,
    validate_transition,
)


@pytest.mark.parametrize(
    "old,new",
    [
        (S.created, S.idea_ready),
        (S.idea_ready, S.prompts_ready),
        (S.prompts_ready, S.video_generated),
        (S.video_generated, S.composed),
        (S.composed, S.review_pending),
        (S.review_pending, S.approved),
        (S.review_pending, S.rejected),
        (S.approved, S.posted),
        (S.composed, S.failed),
        (S.approved, S.failed),
    ],
)
def test_allowed_edges(old, new):
    assert can_transition(old, new)
    assert validate_transition(old, new) == new


@pytest.mark.parametrize(
    "old,new",
    [
        (S.created, S.posted),
        (S.created, S.prompts_ready),
        (S.composed, S.approved),
        (S.review_pending, S.posted),
        (S.rejected, S.approved),
        (S.posted, S.failed),
        (S.failed, S.created),
    ],
)
def test_jumps_are_rejected(old, new):
    assert not can_transition(old, new)
    with pytest.raises(InvalidStatusTransition):
        validate_transition(old.value, new.value)


def test_terminal_statuses_have_no_exits():
    for status in (S.posted, S.rejected, S.failed):
        assert is_terminal(status)
        assert allowed_transitions(status) == frozenset()
    assert not is_terminal(S.approved)


def test_unknown_status_is_invalid():
    with pytest.raises(InvalidStatusTransition):
        validate_transition("draft", S.idea_ready)


def test_next_layer_follows_fixed_order():
    assert next_layer(None) == L.idea
    assert next_layer(L.video_generation) == L.composition
    assert next_layer("review") == L.distribution
    assert next_layer(L.distribution) is None


def test_reopen_status():
    assert reopen_status(None) == S.created
    assert reopen_status(L.composition) == S.composed
    assert reopen_status(L.review) == S.approved
