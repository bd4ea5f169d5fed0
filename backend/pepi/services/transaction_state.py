"""
Review State Machine

WHY: Every reviewable document (transaction, fund request, CI payment) moves
through the same small lifecycle, and the guards must be identical wherever a
review is triggered from (route, CLI, test).

LIFECYCLE:
    pending -> approved   (admin decision)
    pending -> rejected   (admin decision)
    approved | rejected | pending -> pending   (edit / resubmission)

approved and rejected are terminal for one review cycle. Only an edit opens a
new cycle, and an edit wipes the previous decision from the row (the audit
log keeps it).
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import InvalidState, TypeMismatch, ValidationError
from ..time_utils import utcnow


# =============================================================================
# STATUS / TYPE CONSTANTS
# =============================================================================

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
VALID_STATUSES = {STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED}

TYPE_ISSUANCE = "issuance"
TYPE_SPENDING = "spending"
TYPE_RETURN = "return"
VALID_TRANSACTION_TYPES = {TYPE_ISSUANCE, TYPE_SPENDING, TYPE_RETURN}

DECISION_APPROVE = "approve"
DECISION_REJECT = "reject"
VALID_DECISIONS = {DECISION_APPROVE, DECISION_REJECT}

DECISION_STATUS = {
    DECISION_APPROVE: STATUS_APPROVED,
    DECISION_REJECT: STATUS_REJECTED,
}

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_APPROVED, STATUS_REJECTED, STATUS_PENDING},
    STATUS_APPROVED: {STATUS_PENDING},
    STATUS_REJECTED: {STATUS_PENDING},
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def target_status(decision: str) -> str:
    if decision not in VALID_DECISIONS:
        raise ValidationError("decision must be 'approve' or 'reject'")
    return DECISION_STATUS[decision]


@dataclass(frozen=True)
class TypeGuard:
    """
    Which document kinds a review action accepts.

    field: attribute holding the kind (e.g. "transaction_type"), or None when
    the document has no kind (fund requests, CI payments).
    allowed: accepted values; None means any.
    """
    field: str | None = None
    allowed: frozenset[str] | None = None
    label: str = "document"

    def check(self, item) -> None:
        if self.field is None or self.allowed is None:
            return
        value = getattr(item, self.field)
        if value not in self.allowed:
            kinds = " or ".join(sorted(self.allowed))
            raise TypeMismatch(
                f"Only {kinds} {self.label}s can be reviewed with this action "
                f"({self.label} {item.id} is {value})."
            )


ANY_TYPE = TypeGuard()


def check_reviewable(item, decision: str, guard: TypeGuard = ANY_TYPE) -> str:
    """
    Guard for approve/reject.

    Order matters: an already-decided row reports "already processed" even if
    it is also the wrong kind, so a double click never looks like a type error.

    Returns:
        The status the item should move to

    Raises:
        ValidationError: Unknown decision
        InvalidState: Item not pending
        TypeMismatch: Item kind not accepted by this action
    """
    target = target_status(decision)
    if item.status != STATUS_PENDING:
        raise InvalidState(f"This item has already been processed (status: {item.status}).")
    if not can_transition(item.status, target):
        raise InvalidState(f"Cannot move from {item.status} to {target}.")
    guard.check(item)
    return target


def review_values(target: str, reviewer_user_id: str, notes_field: str | None, notes: str | None) -> dict:
    """Column values written by a review decision."""
    values = {
        "status": target,
        "reviewed_by_user_id": reviewer_user_id,
        "reviewed_at": utcnow(),
    }
    if notes_field:
        values[notes_field] = notes
    return values


def previous_review(item, notes_field: str = "review_notes") -> dict:
    """The decision an edit is about to wipe, for the audit log."""
    return {
        "status": item.status,
        "reviewed_by_user_id": item.reviewed_by_user_id,
        "reviewed_at": item.reviewed_at.isoformat() if item.reviewed_at else None,
        notes_field: getattr(item, notes_field),
    }


def resubmission_values(notes_field: str = "review_notes") -> dict:
    """Column values that start a new review cycle on an edited item."""
    return {
        "status": STATUS_PENDING,
        "reviewed_by_user_id": None,
        "reviewed_at": None,
        notes_field: None,
    }
