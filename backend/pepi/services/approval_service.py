# Overview: Review pipeline shared by transactions, fund requests and CI payments.

"""
Approval Workflow

WHY: An approve/reject decision touches the database, the agent's inbox, the
audit trail and any cached views. Only the database write decides whether the
operation succeeded. Email and audit are best-effort and must never undo or
fail a decision that is already committed.

PIPELINE (one call to process_approval):
    authorize  -> actor must be an admin                 (fail-fast)
    load       -> row must exist                         (fail-fast)
    validate   -> pending, right kind, book not closed   (fail-fast)
    persist    -> claim the open book, then UPDATE ... WHERE status = 'pending'
                  AND version = <as read> AND book still open; commit  (fail-fast)
    notify     -> email the agent                        (fail-soft)
    audit      -> approve / reject audit entry           (fail-soft)
    invalidate -> drop cached book summary               (fail-soft)

Fail-fast stages raise to the caller and leave nothing behind. Fail-soft
stages are logged and reported in ApprovalResult.warnings. Which stage is
which lives in StagePolicy, not in the control flow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ..errors import ConflictError, DependencyFailure, InvalidState, NotFound, ValidationError
from ..extensions import db
from ..validation import optional_text
from .agent_service import agent_email
from .audit_service import AuditAction, write_entry
from .book_service import claim_open_book, ensure_still_open, open_book_clause
from .concurrency import conditional_update
from .notification_service import NotificationResult, get_notifier, review_decision_message
from .permission_service import Actor, require_admin
from .transaction_state import (
    ANY_TYPE,
    DECISION_APPROVE,
    DECISION_REJECT,
    STATUS_PENDING,
    TypeGuard,
    check_reviewable,
    review_values,
)
from .view_cache import get_view_cache

logger = logging.getLogger(__name__)


# =============================================================================
# STAGES AND POLICY
# =============================================================================

STAGE_AUTHORIZE = "authorize"
STAGE_LOAD = "load"
STAGE_VALIDATE = "validate"
STAGE_PERSIST = "persist"
STAGE_NOTIFY = "notify"
STAGE_AUDIT = "audit"
STAGE_INVALIDATE = "invalidate"

PIPELINE = (
    STAGE_AUTHORIZE,
    STAGE_LOAD,
    STAGE_VALIDATE,
    STAGE_PERSIST,
    STAGE_NOTIFY,
    STAGE_AUDIT,
    STAGE_INVALIDATE,
)


@dataclass(frozen=True)
class StagePolicy:
    fail_fast: frozenset = frozenset({STAGE_AUTHORIZE, STAGE_LOAD, STAGE_VALIDATE, STAGE_PERSIST})
    fail_soft: frozenset = frozenset({STAGE_NOTIFY, STAGE_AUDIT, STAGE_INVALIDATE})

    def __post_init__(self):
        if self.fail_fast & self.fail_soft:
            raise ValueError("A stage cannot be both fail-fast and fail-soft")
        missing = set(PIPELINE) - self.fail_fast - self.fail_soft
        if missing:
            raise ValueError(f"Stages without a policy: {', '.join(sorted(missing))}")
        if STAGE_PERSIST in self.fail_soft:
            raise ValueError("persist must be fail-fast")

    def is_fail_soft(self, stage: str) -> bool:
        return stage in self.fail_soft


DEFAULT_POLICY = StagePolicy()


# =============================================================================
# WORKFLOW DESCRIPTION
# =============================================================================

@dataclass(frozen=True)
class ReviewWorkflow:
    """
    Everything that differs between reviewable kinds.

    prepare(item, decision, signature) -> extra column values for the update;
        may raise ValidationError.
    after_persist(item, target_status, actor) -> runs inside the same database
        transaction as the status change (e.g. creating the issuance for an
        approved fund request).
    describe(item) -> (label, value) rows for the notification body.
    """
    name: str
    model: type
    entity_type: str
    label: str
    notes_field: str
    type_guard: TypeGuard = ANY_TYPE
    require_reason_on_reject: bool = False
    recipient_field: str = "agent_id"
    amount_field: str = "amount_cents"
    tag_name: str = "transaction_id"
    prepare: Callable[[Any, str, str | None], dict] | None = None
    after_persist: Callable[[Any, str, Actor], None] | None = None
    describe: Callable[[Any], list] | None = None


@dataclass
class ApprovalResult:
    success: bool
    item: Any
    decision: str
    status: str
    entity_type: str
    notification: NotificationResult | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "decision": self.decision,
            "status": self.status,
            self.entity_type: self.item.to_dict(),
            "notification": self.notification.to_dict() if self.notification else None,
            "warnings": list(self.warnings),
        }


class _Run:
    """Mutable state threaded through one pipeline run."""

    def __init__(self, workflow: ReviewWorkflow, item_id: int, decision: str, actor: Actor,
                 reason: str | None, signature: str | None):
        self.workflow = workflow
        self.item_id = item_id
        self.decision = decision
        self.actor = actor
        self.reason = reason
        self.signature = signature
        self.item = None
        self.target = None
        self.notes = None
        self.extra: dict = {}
        self.notification: NotificationResult | None = None
        self.warnings: list[str] = []


# =============================================================================
# STAGE IMPLEMENTATIONS
# =============================================================================

def _authorize(run: _Run) -> None:
    require_admin(run.actor, run.workflow.entity_type)


def _load(run: _Run) -> None:
    item = db.session.get(run.workflow.model, run.item_id)
    if item is None:
        raise NotFound(f"{run.workflow.label} {run.item_id} not found")
    run.item = item


def _validate(run: _Run) -> None:
    wf = run.workflow
    run.target = check_reviewable(run.item, run.decision, wf.type_guard)

    book = run.item.book
    if book is not None and book.is_closed:
        raise InvalidState(f"PEPI book {book.year} is closed; its records can no longer be reviewed")

    run.notes = optional_text(run.reason, wf.notes_field)
    if run.decision == DECISION_REJECT and wf.require_reason_on_reject and not run.notes:
        raise ValidationError("A reason is required to reject this item")

    if wf.prepare is not None:
        run.extra = wf.prepare(run.item, run.decision, run.signature) or {}


def _persist(run: _Run) -> None:
    wf = run.workflow
    book_id = run.item.pepi_book_id
    version = run.item.version
    values = review_values(run.target, run.actor.user_id, wf.notes_field, run.notes)
    values.update(run.extra)
    values["version"] = version + 1
    try:
        claim_open_book(book_id)
        conditional_update(
            wf.model,
            run.item_id,
            {"status": STATUS_PENDING, "version": version},
            values,
            where=(open_book_clause(wf.model),),
        )
        if wf.after_persist is not None:
            wf.after_persist(run.item, run.target, run.actor)
        db.session.commit()
    except ConflictError:
        db.session.rollback()
        # Closed after validation: report the closed book, not a generic conflict
        ensure_still_open(book_id)
        raise
    except Exception:
        db.session.rollback()
        raise
    logger.info("%s %s %s by %s", wf.label, run.item_id, run.target, run.actor.user_id)


def _notify(run: _Run) -> None:
    wf = run.workflow
    item = run.item
    agent_id = getattr(item, wf.recipient_field)
    recipient = agent_email(agent_id)
    if not recipient:
        raise DependencyFailure(f"No email address on file for agent {agent_id}")

    agent = getattr(item, "agent", None) or getattr(item, "paying_agent", None)
    message = review_decision_message(
        label=wf.label,
        recipient=recipient,
        agent_name=agent.name if agent else "Agent",
        amount_cents=getattr(item, wf.amount_field),
        decision_status=run.target,
        notes=run.notes,
        details=wf.describe(item) if wf.describe else [],
        tag_name=wf.tag_name,
        entity_id=item.id,
    )
    run.notification = get_notifier().dispatch(message, wf.entity_type, item.id)


def _audit(run: _Run) -> None:
    wf = run.workflow
    action = AuditAction.APPROVE if run.decision == DECISION_APPROVE else AuditAction.REJECT
    details = {
        "workflow": wf.name,
        "previous_status": STATUS_PENDING,
        "status": run.target,
        "amount_cents": getattr(run.item, wf.amount_field),
        "pepi_book_id": run.item.pepi_book_id,
        wf.notes_field: run.notes,
    }
    if wf.type_guard.field:
        details[wf.type_guard.field] = getattr(run.item, wf.type_guard.field)
    write_entry(
        action,
        entity_type=wf.entity_type,
        entity_id=run.item.id,
        details=details,
        user_id=run.actor.user_id,
        ip_address=run.actor.ip_address,
    )


def _invalidate(run: _Run) -> None:
    get_view_cache().invalidate_book(run.item.pepi_book_id)


STAGE_FUNCTIONS = {
    STAGE_AUTHORIZE: _authorize,
    STAGE_LOAD: _load,
    STAGE_VALIDATE: _validate,
    STAGE_PERSIST: _persist,
    STAGE_NOTIFY: _notify,
    STAGE_AUDIT: _audit,
    STAGE_INVALIDATE: _invalidate,
}


# =============================================================================
# ENTRY POINT
# =============================================================================

def process_approval(
    workflow: ReviewWorkflow,
    item_id: int,
    decision: str,
    actor: Actor | None,
    reason: str | None = None,
    signature: str | None = None,
    policy: StagePolicy = DEFAULT_POLICY,
) -> ApprovalResult:
    """
    Run the review pipeline for one item.

    Args:
        workflow: Which kind of item and its rules
        item_id: Row id
        decision: "approve" or "reject"
        actor: Reviewer (must be an admin)
        reason: Review notes / rejection reason
        signature: Commander signature, for workflows that take one
        policy: Stage failure policy

    Returns:
        ApprovalResult with the updated item and any side-effect warnings

    Raises:
        Unauthorized, NotFound, InvalidState, TypeMismatch, ValidationError,
        ConflictError: Only from fail-fast stages
    """
    run = _Run(workflow, item_id, decision, actor, reason, signature)

    for stage in PIPELINE:
        fn = STAGE_FUNCTIONS[stage]
        if not policy.is_fail_soft(stage):
            fn(run)
            continue
        try:
            fn(run)
        except Exception as exc:
            message = exc.message if isinstance(exc, DependencyFailure) else str(exc)
            logger.warning(
                "%s stage failed for %s %s (decision already committed): %s",
                stage, workflow.entity_type, item_id, message,
                exc_info=not isinstance(exc, DependencyFailure),
            )
            run.warnings.append(f"{stage}: {message}")

    return ApprovalResult(
        success=True,
        item=run.item,
        decision=decision,
        status=run.target,
        entity_type=workflow.entity_type,
        notification=run.notification,
        warnings=run.warnings,
    )
