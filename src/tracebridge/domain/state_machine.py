from __future__ import annotations

from tracebridge.domain.actions import TraceAction
from tracebridge.domain.errors import InvalidTransitionError
from tracebridge.domain.trace import TraceStatus

# (from, action) -> to. ``None`` means the record is removed.
TRANSITIONS: dict[tuple[TraceStatus, TraceAction], TraceStatus | None] = {
    # creation of a record that does not exist yet
    (TraceStatus.PROPOSED, TraceAction.PROPOSE): TraceStatus.PROPOSED,
    (TraceStatus.PROPOSED, TraceAction.ACCEPT): TraceStatus.PENDING,
    (TraceStatus.PROPOSED, TraceAction.REJECT): TraceStatus.REJECTED,
    (TraceStatus.PROPOSED, TraceAction.DELETE): None,
    (TraceStatus.PENDING, TraceAction.REQUEST_MARK_COMPLETE): TraceStatus.NEEDS_REVIEW,
    (TraceStatus.NEEDS_REVIEW, TraceAction.APPROVE_COMPLETION): TraceStatus.COMPLETED,
    (TraceStatus.NEEDS_REVIEW, TraceAction.REJECT_COMPLETION): TraceStatus.PENDING,
}

EDITABLE_STATUSES = frozenset(
    {
        TraceStatus.PROPOSED,
        TraceStatus.REJECTED,
        TraceStatus.PENDING,
        TraceStatus.NEEDS_REVIEW,
    }
)


class TraceStateMachine:
    @staticmethod
    def is_legal(status: TraceStatus, action: TraceAction) -> bool:
        if action is TraceAction.EDIT:
            return status in EDITABLE_STATUSES
        return (status, action) in TRANSITIONS

    @classmethod
    def next_status(cls, status: TraceStatus, action: TraceAction) -> TraceStatus | None:
        if not cls.is_legal(status, action):
            raise InvalidTransitionError(
                f"{action.value} is not allowed from {status.value}",
                reason="illegal_state",
            )
        if action is TraceAction.EDIT:
            return status
        return TRANSITIONS[(status, action)]

    @classmethod
    def allowed_actions(cls, status: TraceStatus) -> tuple[TraceAction, ...]:
        return tuple(action for action in TraceAction if cls.is_legal(status, action))
