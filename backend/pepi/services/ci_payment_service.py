"""
CI Payment Service

Payments to confidential informants. Each record carries signature evidence
and goes through the same review cycle as a transaction. Approval needs the
commander's signature; rejection needs a reason.

CI payments are evidence of where cash went. They are not ledger rows and do
not move the book balance; the monthly memo reports them separately.
"""

from __future__ import annotations

from datetime import date

from ..errors import NotFound, Unauthorized, ValidationError
from ..extensions import db
from ..models import CiPayment
from ..models.agents import ROLE_AGENT
from ..validation import optional_text, parse_date, parse_int, require_choice, require_positive_cents, require_text
from ..time_utils import to_iso_date
from . import book_service
from .agent_service import get_agent
from .approval_service import ApprovalResult, ReviewWorkflow, process_approval
from .audit_service import AuditAction, record_for
from .permission_service import Actor, require_role
from .transaction_state import DECISION_APPROVE, DECISION_REJECT, STATUS_PENDING, VALID_STATUSES


def _commander_signoff(payment: CiPayment, decision: str, signature: str | None) -> dict:
    if decision != DECISION_APPROVE:
        return {}
    if not signature or not str(signature).strip():
        raise ValidationError("Commander signature is required to approve a CI payment")
    return {"commander_signature": signature}


def _describe(payment: CiPayment) -> list[tuple[str, str]]:
    return [
        ("Payment Date", to_iso_date(payment.payment_date)),
        ("Paid To", payment.paid_to),
        ("Case Number", payment.case_number),
        ("Receipt Number", payment.receipt_number),
    ]


CI_PAYMENT_REVIEW = ReviewWorkflow(
    name="ci_payment_review",
    model=CiPayment,
    entity_type="ci_payment",
    label="CI Payment",
    notes_field="rejection_reason",
    require_reason_on_reject=True,
    recipient_field="paying_agent_id",
    amount_field="amount_paid_cents",
    tag_name="ci_payment_id",
    prepare=_commander_signoff,
    describe=_describe,
)


def get_ci_payment(payment_id: int) -> CiPayment:
    payment = db.session.get(CiPayment, payment_id)
    if not payment:
        raise NotFound(f"CI payment {payment_id} not found")
    return payment


def list_ci_payments(actor: Actor | None, status: str | None = None, book_id: int | None = None) -> list[CiPayment]:
    require_role(actor, ROLE_AGENT, "ci_payment")
    query = db.session.query(CiPayment)
    if not actor.is_admin:
        query = query.filter(CiPayment.paying_agent_id == actor.agent_id)
    if status is not None:
        query = query.filter(CiPayment.status == require_choice(status, "status", VALID_STATUSES))
    if book_id is not None:
        query = query.filter(CiPayment.pepi_book_id == book_id)
    return query.order_by(CiPayment.payment_date.desc(), CiPayment.id.desc()).all()


def create_ci_payment(actor: Actor | None, data: dict) -> CiPayment:
    """
    Record a CI payment (pending) on the active book.

    Required: amount_paid_cents, ci_signature, paying_agent_signature.
    payment_date defaults to today; paying_agent_id defaults to the actor.
    """
    require_role(actor, ROLE_AGENT, "ci_payment")
    book = book_service.require_active_book()
    book_service.ensure_open(book)

    paying_agent_id = data.get("paying_agent_id")
    if paying_agent_id is None:
        paying_agent_id = actor.agent_id
    else:
        paying_agent_id = parse_int(paying_agent_id, "paying_agent_id")
        if not actor.is_admin and paying_agent_id != actor.agent_id:
            raise Unauthorized("Agents can only record CI payments they made")
        get_agent(paying_agent_id)

    payment = CiPayment(
        pepi_book_id=book.id,
        paying_agent_id=paying_agent_id,
        payment_date=parse_date(data.get("payment_date"), "payment_date") or date.today(),
        amount_paid_cents=require_positive_cents(data.get("amount_paid_cents"), "amount_paid_cents"),
        receipt_number=optional_text(data.get("receipt_number"), "receipt_number"),
        case_number=optional_text(data.get("case_number"), "case_number"),
        paid_to=optional_text(data.get("paid_to"), "paid_to"),
        ci_printed_name=optional_text(data.get("ci_printed_name"), "ci_printed_name"),
        ci_signature=require_text(data.get("ci_signature"), "ci_signature"),
        paying_agent_printed_name=optional_text(data.get("paying_agent_printed_name"), "paying_agent_printed_name"),
        paying_agent_signature=require_text(data.get("paying_agent_signature"), "paying_agent_signature"),
        witness_printed_name=optional_text(data.get("witness_printed_name"), "witness_printed_name"),
        witness_signature=optional_text(data.get("witness_signature"), "witness_signature"),
        status=STATUS_PENDING,
        created_by_user_id=actor.user_id,
    )
    try:
        book_service.claim_open_book(book.id, require_active=True)
        db.session.add(payment)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    record_for(actor, AuditAction.CREATE, "ci_payment", payment.id, {
        "amount_paid_cents": payment.amount_paid_cents,
        "paying_agent_id": payment.paying_agent_id,
        "pepi_book_id": book.id,
    })
    return payment


def approve_ci_payment(actor: Actor | None, payment_id: int, commander_signature: str | None) -> ApprovalResult:
    return process_approval(CI_PAYMENT_REVIEW, payment_id, DECISION_APPROVE, actor, signature=commander_signature)


def reject_ci_payment(actor: Actor | None, payment_id: int, reason: str | None) -> ApprovalResult:
    return process_approval(CI_PAYMENT_REVIEW, payment_id, DECISION_REJECT, actor, reason=reason)
