"""
Request state machine.

    New -> NeedsClarification <-> (same) -> Triaged -> ArchitectReview <-> (same)
        -> Approved -> InProgress -> Done

Rejected is reachable from New, NeedsClarification and ArchitectReview.
InProgress falls back to Approved when an implementation attempt is unusable.
NeedsClarification, ArchitectReview and InProgress are re-entrant: another
cycle may run without a status change.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from sqlalchemy.orm import Session

from ..db.audit_service import AuditService
from ..db.base import utcnow
from ..db.models import DevRequestModel
from ..errors import IllegalTransitionError
from .enums import ActorKind, RequestStatus

S = RequestStatus

ALLOWED_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    S.NEW: frozenset({S.NEEDS_CLARIFICATION, S.TRIAGED, S.REJECTED}),
    S.NEEDS_CLARIFICATION: frozenset({S.NEEDS_CLARIFICATION, S.TRIAGED, S.REJECTED}),
    S.TRIAGED: frozenset({S.ARCHITECT_REVIEW}),
    S.ARCHITECT_REVIEW: frozenset({S.ARCHITECT_REVIEW, S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.IN_PROGRESS}),
    S.IN_PROGRESS: frozenset({S.IN_PROGRESS, S.APPROVED, S.DONE}),
    S.DONE: frozenset(),
    S.REJECTED: frozenset(),
}

RE_ENTRANT_STATES: FrozenSet[RequestStatus] = frozenset(
    {S.NEEDS_CLARIFICATION, S.ARCHITECT_REVIEW, S.IN_PROGRESS}
)

TERMINAL_STATES: FrozenSet[RequestStatus] = frozenset({S.DONE, S.REJECTED})


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    """Return True if ``current -> target`` is an allowed edge."""
    return RequestStatus(target) in ALLOWED_TRANSITIONS[RequestStatus(current)]


def transition(
    db: Session,
    request: DevRequestModel,
    target: RequestStatus,
    actor_id: str,
    actor_kind: Union[ActorKind, str] = ActorKind.AGENT,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RequestStatus:
    """Move ``request`` to ``target`` and record the change.

    The change is staged on ``db`` but not committed, so callers can commit it
    together with the review row that justifies it.

    Returns:
        The previous status.

    Raises:
        IllegalTransitionError: if the edge is not allowed.
    """
    current = RequestStatus(request.status)
    target = RequestStatus(target)
    if not can_transition(current, target):
        raise IllegalTransitionError(request.id, current.value, target.value)

    request.status = target
    request.updated_at = now or utcnow()

    if current != target:
        AuditService(db).log_status_change(
            entity_kind="Request",
            entity_id=request.id,
            old_status=current.value,
            new_status=target.value,
            actor_kind=actor_kind,
            actor_id=actor_id,
            note=note,
        )
    return current


TRACKED_FIELDS = ("implementation_status", "deployment_status")


def set_tracking_status(
    db: Session,
    request: DevRequestModel,
    field: str,
    value: Enum,
    actor_id: str,
    actor_kind: Union[ActorKind, str] = ActorKind.AGENT,
    note: Optional[str] = None,
) -> Optional[Enum]:
    """Set the implementation or deployment sub-status and audit the change.

    Sub-statuses move independently of ``status`` and have no edge table;
    the stage that owns them decides what follows what.
    """
    if field not in TRACKED_FIELDS:
        raise ValueError(f"Not a tracked status field: {field}")
    previous = getattr(request, field)
    setattr(request, field, value)
    if previous != value:
        AuditService(db).log_update(
            "Request",
            request.id,
            {field: previous.value if previous is not None else None},
            {field: value.value if value is not None else None},
            actor_kind=actor_kind,
            actor_id=actor_id,
            note=note,
        )
    return previous
