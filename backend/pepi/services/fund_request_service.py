"""
Fund Request Service

WHY: Agents ask for money before any of it leaves the safe. A request is not
a ledger row; only its approval creates one.

LIFECYCLE:
1. Create (pending) - agent, on the active book; admins are emailed
2. Approve - creates an approved issuance to the agent in the same database
   transaction and links it through transaction_id
3. Reject - rejection_reason recorded; nothing reaches the ledger
"""

from __future__ import annotations

import logging

from ..errors import DependencyFailure, NotFound, Unauthorized
from ..extensions import db
from ..models import FundRequest, Transaction
from ..models.agents import ROLE_AGENT
from ..validation import optional_text, parse_int, require_choice, require_positive_cents
from . import book_service
from .agent_service import admin_emails, get_agent
from .approval_service import ApprovalResult, ReviewWorkflow, process_approval
from .audit_service import AuditAction, record_for
from .notification_service import get_notifier, new_fund_request_message
from .permission_service import Actor, require_role
from .transaction_state import (
    DECISION_APPROVE,
    DECISION_REJECT,
    STATUS_APPROVED,
    STATUS_PENDING,
    TYPE_ISSUANCE,
    VALID_STATUSES,
)

logger = logging.getLogger(__name__)


def _issue_funds(request: FundRequest, target: str, actor: Actor) -> None:
    if target != STATUS_APPROVED:
        return
    tx = Transaction(
        pepi_book_id=request.pepi_book_id,
        agent_id=request.agent_id,
        transaction_type=TYPE_ISSUANCE,
        amount_cents=request.amount_cents,
        description=f"Fund request #{request.id}",
        case_number=request.case_number,
        is_initial_funding=False,
        status=STATUS_APPROVED,
        reviewed_by_user_id=actor.user_id,
        reviewed_at=request.reviewed_at,
        created_by_user_id=actor.user_id,
    )
    db.session.add(tx)
    db.session.flush()
    request.transaction_id = tx.id


def _describe(request: FundRequest) -> list[tuple[str, str]]:
    return [
        ("Request #", str(request.id)),
        ("Case Number", request.case_number),
    ]


FUND_REQUEST_REVIEW = ReviewWorkflow(
    name="fund_request_review",
    model=FundRequest,
    entity_type="fund_request",
    label="Fund Request",
    notes_field="rejection_reason",
    tag_name="fund_request_id",
    after_persist=_issue_funds,
    describe=_describe,
)


def get_fund_request(request_id: int) -> FundRequest:
    request = db.session.get(FundRequest, request_id)
    if not request:
        raise NotFound(f"Fund request {request_id} not found")
    return request


def list_fund_requests(actor: Actor | None, status: str | None = None, book_id: int | None = None) -> list[FundRequest]:
    require_role(actor, ROLE_AGENT, "fund_request")
    query = db.session.query(FundRequest)
    if not actor.is_admin:
        query = query.filter(FundRequest.agent_id == actor.agent_id)
    if status is not None:
        query = query.filter(FundRequest.status == require_choice(status, "status", VALID_STATUSES))
    if book_id is not None:
        query = query.filter(FundRequest.pepi_book_id == book_id)
    return query.order_by(FundRequest.requested_at.desc(), FundRequest.id.desc()).all()


def create_fund_request(
    actor: Actor | None,
    amount_cents,
    case_number: str | None = None,
    agent_signature: str | None = None,
    agent_id=None,
) -> FundRequest:
    """
    File a request against the active book.

    Agents file for themselves; admins may file on behalf of an agent.
    Admin notification is best-effort.
    """
    require_role(actor, ROLE_AGENT, "fund_request")
    amount = require_positive_cents(amount_cents)
    book = book_service.require_active_book()
    book_service.ensure_open(book)

    if actor.is_admin and agent_id is not None:
        target_agent_id = get_agent(parse_int(agent_id, "agent_id")).id
    else:
        if agent_id is not None and parse_int(agent_id, "agent_id") != actor.agent_id:
            raise Unauthorized("Agents can only request funds for themselves")
        target_agent_id = actor.agent_id

    request = FundRequest(
        agent_id=target_agent_id,
        pepi_book_id=book.id,
        amount_cents=amount,
        case_number=optional_text(case_number, "case_number"),
        agent_signature=optional_text(agent_signature, "agent_signature"),
        status=STATUS_PENDING,
    )
    try:
        book_service.claim_open_book(book.id, require_active=True)
        db.session.add(request)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    record_for(actor, AuditAction.CREATE, "fund_request", request.id, {
        "amount_cents": amount,
        "agent_id": target_agent_id,
        "pepi_book_id": book.id,
    })
    notify_admins_new_fund_request(request)
    return request


def notify_admins_new_fund_request(request: FundRequest):
    """Email every active admin. Failures are logged and returned as None."""
    recipients = admin_emails()
    if not recipients:
        logger.warning("No admin email addresses on file; fund request %s not announced", request.id)
        return None
    agent_name = request.agent.name if request.agent else "An agent"
    try:
        message = new_fund_request_message(recipients, agent_name, request)
        return get_notifier().dispatch(message, "fund_request", request.id)
    except DependencyFailure as exc:
        logger.warning("Fund request %s notification failed: %s", request.id, exc.message)
        return None


def approve_fund_request(actor: Actor | None, request_id: int) -> ApprovalResult:
    return process_approval(FUND_REQUEST_REVIEW, request_id, DECISION_APPROVE, actor)


def reject_fund_request(actor: Actor | None, request_id: int, reason: str | None = None) -> ApprovalResult:
    return process_approval(FUND_REQUEST_REVIEW, request_id, DECISION_REJECT, actor, reason=reason)
