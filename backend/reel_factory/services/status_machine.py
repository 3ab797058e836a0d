"""
Content status transitions.

All writes to Content.status go through validate_transition() so that a
stage can never move an item along an edge that is not in the table below.

    created -> idea_ready -> prompts_ready -> video_generated -> composed -> review_pending
    review_pending -> approved -> posted
    review_pending -> rejected
    <any non-terminal> -> failed

`failed` is left only through reopen_status(), which is reserved for the
operator resume path.
"""
from __future__ import annotations

from reel_factory.models import ContentStatus, PipelineLayer

S = ContentStatus

TERMINAL_STATUSES: frozenset[ContentStatus] = frozenset({S.posted, S.rejected, S.failed})

_EDGES: dict[ContentStatus, frozenset[ContentStatus]] = {
    S.created: frozenset({S.idea_ready}),
    S.idea_ready: frozenset({S.prompts_ready}),
    S.prompts_ready: frozenset({S.video_generated}),
    S.video_generated: frozenset({S.composed}),
    S.composed: frozenset({S.review_pending}),
    S.review_pending: frozenset({S.approved, S.rejected}),
    S.approved: frozenset({S.posted}),
    S.rejected: frozenset(),
    S.posted: frozenset(),
    S.failed: frozenset(),
}

# Fixed stage order and the status each stage leaves the content in.
LAYER_ORDER: tuple[PipelineLayer, ...] = (
    PipelineLayer.idea,
    PipelineLayer.prompt_engineering,
    PipelineLayer.video_generation,
    PipelineLayer.composition,
    PipelineLayer.review,
    PipelineLayer.distribution,
)

LAYER_TARGET_STATUS: dict[PipelineLayer, ContentStatus] = {
    PipelineLayer.idea: S.idea_ready,
    PipelineLayer.prompt_engineering: S.prompts_ready,
    PipelineLayer.video_generation: S.video_generated,
    PipelineLayer.composition: S.composed,
    PipelineLayer.review: S.review_pending,
    PipelineLayer.distribution: S.posted,
}


class InvalidStatusTransition(Exception):
    """Raised when a status write does not follow an edge of the table."""

    def __init__(self, old: str, new: str):
        super().__init__(f"Invalid content status transition: {old} -> {new}")
        self.old = old
        self.new = new


def _coerce(value: str | ContentStatus) -> ContentStatus:
    try:
        return ContentStatus(value)
    except ValueError as exc:
        raise InvalidStatusTransition(str(value), str(value)) from exc


def allowed_transitions(status: str | ContentStatus) -> frozenset[ContentStatus]:
    current = _coerce(status)
    targets = _EDGES[current]
    if current not in TERMINAL_STATUSES:
        targets = targets | {S.failed}
    return targets


def can_transition(old: str | ContentStatus, new: str | ContentStatus) -> bool:
    old_s, new_s = _coerce(old), _coerce(new)
    if old_s == new_s:
        return True
    return new_s in allowed_transitions(old_s)


def validate_transition(old: str | ContentStatus, new: str | ContentStatus) -> ContentStatus:
    """Return the target status or raise InvalidStatusTransition.

    Re-writing the current status is a no-op and always allowed.
    """
    if not can_transition(old, new):
        raise InvalidStatusTransition(str(getattr(old, "value", old)), str(getattr(new, "value", new)))
    return _coerce(new)


def is_terminal(status: str | ContentStatus) -> bool:
    return _coerce(status) in TERMINAL_STATUSES


def next_layer(last_completed: str | PipelineLayer | None) -> PipelineLayer | None:
    """Stage that follows `last_completed` in the fixed order (None when done)."""
    if last_completed is None:
        return LAYER_ORDER[0]
    idx = LAYER_ORDER.index(PipelineLayer(last_completed))
    if idx + 1 >= len(LAYER_ORDER):
        return None
    return LAYER_ORDER[idx + 1]


def reopen_status(last_completed: str | PipelineLayer | None) -> ContentStatus:
    """Status a failed item is restored to before its next stage is re-run.

    The review stage is special: once it completed, a decision was pending,
    so a failure after it (i.e. during distribution) means the item had been
    approved.
    """
    if last_completed is None:
        return S.created
    layer = PipelineLayer(last_completed)
    if layer == PipelineLayer.review:
        return S.approved
    if layer == PipelineLayer.distribution:
        return S.posted
    return LAYER_TARGET_STATUS[layer]
