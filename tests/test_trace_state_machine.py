from __future__ import annotations

import pytest

from tracebridge.domain.actions import TraceAction
from tracebridge.domain.errors import InvalidTransitionError, TraceErrorKind
from tracebridge.domain.state_machine import TRANSITIONS, TraceStateMachine
from tracebridge.domain.trace import DOWNSTREAM_STATUSES, TraceStatus


@pytest.mark.parametrize(
    ("status", "action", "expected"),
    [
        (TraceStatus.PROPOSED, TraceAction.ACCEPT, TraceStatus.PENDING),
        (TraceStatus.PROPOSED, TraceAction.REJECT, TraceStatus.REJECTED),
        (TraceStatus.PROPOSED, TraceAction.DELETE, None),
        (TraceStatus.PENDING, TraceAction.REQUEST_MARK_COMPLETE, TraceStatus.NEEDS_REVIEW),
        (TraceStatus.NEEDS_REVIEW, TraceAction.APPROVE_COMPLETION, TraceStatus.COMPLETED),
        (TraceStatus.NEEDS_REVIEW, TraceAction.REJECT_COMPLETION, TraceStatus.PENDING),
    ],
)
def test_transition_table(status, action, expected) -> None:
    assert TraceStateMachine.next_status(status, action) == expected


def test_edit_leaves_status_unchanged() -> None:
    assert TraceStateMachine.next_status(TraceStatus.PENDING, TraceAction.EDIT) is TraceStatus.PENDING


def test_edit_rejected_for_completed_trace() -> None:
    with pytest.raises(InvalidTransitionError):
        TraceStateMachine.next_status(TraceStatus.COMPLETED, TraceAction.EDIT)


@pytest.mark.parametrize("status", list(TraceStatus))
@pytest.mark.parametrize(
    "action", [action for action in TraceAction if action is not TraceAction.EDIT]
)
def test_unlisted_pairs_raise_invalid_transition(status, action) -> None:
    if (status, action) in TRANSITIONS:
        pytest.skip("legal transition")
    with pytest.raises(InvalidTransitionError) as exc_info:
        TraceStateMachine.next_status(status, action)
    assert exc_info.value.kind is TraceErrorKind.INVALID_TRANSITION
    assert exc_info.value.reason == "illegal_state"


def test_downstream_states_allow_nothing() -> None:
    for status in DOWNSTREAM_STATUSES:
        assert TraceStateMachine.allowed_actions(status) == ()


def test_allowed_actions_for_pending() -> None:
    assert TraceStateMachine.allowed_actions(TraceStatus.PENDING) == (
        TraceAction.REQUEST_MARK_COMPLETE,
        TraceAction.EDIT,
    )
