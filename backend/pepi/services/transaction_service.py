"""
Transaction Service

WHY: Agents record what they were issued, what they spent and what they
handed back. Admins review each record before it counts toward the book.

LIFECYCLE (guards in transaction_state.py):
1. Create (pending) - agent or admin, active open book only
2. Approve / Reject - admin, through the review pipeline (approval_service)
3. Edit - owner or admin while the book is open; always back to pending
4. Delete - admin, pending only

Creating or editing never touches the balance directly: balances are
recomputed from approved rows by ledger_service.
"""

from __future__ import annotations

from sqlalchemy import delete

from ..errors import ConflictError, InvalidState, NotFound, Unauthorized, ValidationError
from ..extensions import db
from ..models import Agent, Transaction
from ..models.agents import ROLE_ADMIN, ROLE_AGENT
from ..time_utils import to_iso_date
from ..validation import (
    optional_text,
    parse_bool,
    parse_date,
    parse_int,
    require_choice,
    require_positive_cents,
)
from . import book_service
from .approval_service import ApprovalResult, ReviewWorkflow, process_approval
from .audit_service import AuditAction, record_for
from .change_feed import OP_DELETE, note_change
from .concurrency import conditional_update
from .permission_service import Actor, can_modify_transaction, require_role
from .transaction_state import (
    DECISION_APPROVE,
    DECISION_REJECT,
    STATUS_PENDING,
    TYPE_SPENDING,
    VALID_STATUSES,
    VALID_TRANSACTION_TYPES,
    TypeGuard,
    previous_review,
    resubmission_values,
)

INITIAL_FUNDING_MARKER = "initial funding"

TEXT_FIELDS = ("receipt_number", "description", "spending_category", "case_number", "paid_to", "ecr_number")
EDITABLE_FIELDS = set(TEXT_FIELDS) | {"transaction_type", "amount_cents", "date_to_evidence", "agent_id",
                                      "is_initial_funding"}
ADMIN_ONLY_FIELDS = {"agent_id", "is_initial_funding"}


def looks_like_initial_funding(description: str | None) -> bool:
    """
    Legacy heuristic: rows described as "initial funding" are the book's seed money.

    Only consulted when a row is created without an explicit flag; afterwards
    the stored is_initial_funding flag is the sole source of truth.
    """
    return bool(description) and INITIAL_FUNDING_MARKER in description.lower()


# =============================================================================
# REVIEW WORKFLOWS
# =============================================================================

def _describe(tx: Transaction) -> list[tuple[str, str]]:
    return [
        ("Type", tx.transaction_type.capitalize()),
        ("Paid To", tx.paid_to),
        ("Case Number", tx.case_number),
        ("Receipt Number", tx.receipt_number),
        ("Description", tx.description),
        ("Date to Evidence", to_iso_date(tx.date_to_evidence)),
    ]


SPENDING_REVIEW = ReviewWorkflow(
    name="spending_review",
    model=Transaction,
    entity_type="transaction",
    label="Spending Transaction",
    notes_field="review_notes",
    type_guard=TypeGuard("transaction_type", frozenset({TYPE_SPENDING}), "transaction"),
    tag_name="transaction_id",
    describe=_describe,
)

TRANSACTION_REVIEW = ReviewWorkflow(
    name="transaction_review",
    model=Transaction,
    entity_type="transaction",
    label="Transaction",
    notes_field="review_notes",
    type_guard=TypeGuard("transaction_type", None, "transaction"),
    tag_name="transaction_id",
    describe=_describe,
)


def approve_spending_transaction(actor: Actor | None, transaction_id: int, notes: str | None = None) -> ApprovalResult:
    return process_approval(SPENDING_REVIEW, transaction_id, DECISION_APPROVE, actor, reason=notes)


def reject_spending_transaction(actor: Actor | None, transaction_id: int, reason: str | None = None) -> ApprovalResult:
    return process_approval(SPENDING_REVIEW, transaction_id, DECISION_REJECT, actor, reason=reason)


def review_transaction(actor: Actor | None, transaction_id: int, decision: str, notes: str | None = None) -> ApprovalResult:
    return process_approval(TRANSACTION_REVIEW, transaction_id, decision, actor, reason=notes)


# =============================================================================
# LOOKUPS
# =============================================================================

def get_transaction(transaction_id: int) -> Transaction:
    tx = db.session.get(Transaction, transaction_id)
    if not tx:
        raise NotFound(f"Transaction {transaction_id} not found")
    return tx


def get_transaction_for(actor: Actor | None, transaction_id: int) -> Transaction:
    require_role(actor, ROLE_AGENT, "transaction")
    tx = get_transaction(transaction_id)
    if not can_modify_transaction(actor, tx):
        raise Unauthorized("You can only view your own transactions")
    return tx


def list_transactions(
    book_id: int | None = None,
    agent_id: int | None = None,
    status: str | None = None,
    transaction_type: str | None = None,
    limit: int = 200,
    offset: int = 0,
) -> list[Transaction]:
    query = db.session.query(Transaction)
    if book_id is not None:
        query = query.filter(Transaction.pepi_book_id == book_id)
    if agent_id is not None:
        query = query.filter(Transaction.agent_id == agent_id)
    if status is not None:
        query = query.filter(Transaction.status == require_choice(status, "status", VALID_STATUSES))
    if transaction_type is not None:
        query = query.filter(
            Transaction.transaction_type == require_choice(transaction_type, "transaction_type", VALID_TRANSACTION_TYPES)
        )
    limit = max(1, min(limit, 1000))
    return (
        query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .offset(max(0, offset))
        .limit(limit)
        .all()
    )


def list_for_actor(actor: Actor | None, **filters) -> list[Transaction]:
    """Admins see everything; agents only their own rows."""
    require_role(actor, ROLE_AGENT, "transaction")
    if not actor.is_admin:
        filters["agent_id"] = actor.agent_id
    return list_transactions(**filters)


def pending_queue(actor: Actor | None, book_id: int | None = None) -> list[Transaction]:
    require_role(actor, ROLE_ADMIN, "transaction")
    if book_id is None:
        active = book_service.get_active_book()
        book_id = active.id if active else None
    return list_transactions(book_id=book_id, status=STATUS_PENDING)


# =============================================================================
# CREATE / EDIT / DELETE
# =============================================================================

def _resolve_agent(actor: Actor, agent_id) -> int | None:
    if not actor.is_admin:
        if agent_id is not None and parse_int(agent_id, "agent_id") != actor.agent_id:
            raise Unauthorized("Agents can only record transactions for themselves")
        return actor.agent_id
    if agent_id is None:
        return None
    agent_id = parse_int(agent_id, "agent_id")
    agent = db.session.get(Agent, agent_id)
    if not agent or not agent.is_active:
        raise ValidationError(f"Agent {agent_id} not found or inactive")
    return agent_id


def create_transaction(
    actor: Actor | None,
    transaction_type: str,
    amount_cents,
    agent_id=None,
    description: str | None = None,
    receipt_number: str | None = None,
    book_id: int | None = None,
    is_initial_funding=None,
    spending_category: str | None = None,
    case_number: str | None = None,
    paid_to: str | None = None,
    ecr_number: str | None = None,
    date_to_evidence=None,
) -> Transaction:
    """
    Record a new pending transaction.

    Args:
        actor: Creator; agents may only create rows for themselves
        book_id: Defaults to the active book

    Raises:
        Unauthorized: No role, or an agent recording for someone else
        ValidationError: Bad type or non-positive amount
        InvalidState: Target book is not active or is closed
    """
    require_role(actor, ROLE_AGENT, "transaction")
    transaction_type = require_choice(transaction_type, "transaction_type", VALID_TRANSACTION_TYPES)
    amount = require_positive_cents(amount_cents)

    if book_id is None:
        book = book_service.require_active_book()
    else:
        book = book_service.get_book(parse_int(book_id, "book_id"))
    book_service.ensure_open(book)
    if not book.is_active:
        raise InvalidState(f"PEPI book {book.year} is not active; new transactions go to the active book")

    description = optional_text(description, "description")
    flag = parse_bool(is_initial_funding, "is_initial_funding")
    if flag is None:
        flag = looks_like_initial_funding(description)

    tx = Transaction(
        pepi_book_id=book.id,
        agent_id=_resolve_agent(actor, agent_id),
        transaction_type=transaction_type,
        amount_cents=amount,
        description=description,
        receipt_number=optional_text(receipt_number, "receipt_number"),
        is_initial_funding=flag,
        spending_category=optional_text(spending_category, "spending_category"),
        case_number=optional_text(case_number, "case_number"),
        paid_to=optional_text(paid_to, "paid_to"),
        ecr_number=optional_text(ecr_number, "ecr_number"),
        date_to_evidence=parse_date(date_to_evidence, "date_to_evidence"),
        status=STATUS_PENDING,
        created_by_user_id=actor.user_id,
    )
    try:
        book_service.claim_open_book(book.id, require_active=True)
        db.session.add(tx)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    record_for(actor, AuditAction.CREATE, "transaction", tx.id, {
        "transaction_type": tx.transaction_type,
        "amount_cents": tx.amount_cents,
        "pepi_book_id": tx.pepi_book_id,
        "agent_id": tx.agent_id,
    })
    return tx


def _clean_change(actor: Actor, key: str, value):
    if key == "transaction_type":
        return require_choice(value, "transaction_type", VALID_TRANSACTION_TYPES)
    if key == "amount_cents":
        return require_positive_cents(value)
    if key == "date_to_evidence":
        return parse_date(value, key)
    if key == "agent_id":
        return _resolve_agent(actor, value)
    if key == "is_initial_funding":
        return bool(parse_bool(value, key))
    return optional_text(value, key)


def _audit_value(key, value):
    return to_iso_date(value) if key == "date_to_evidence" else value


def edit_transaction(actor: Actor | None, transaction_id: int, changes: dict) -> Transaction:
    """
    Edit a transaction and send it back for review.

    WHY: A corrected record is a new claim. Whatever was decided about the old
    version no longer applies, so the row returns to pending with its review
    fields cleared. The previous decision is kept in the audit entry.

    Every field is validated before anything is written. The write is one
    conditional UPDATE on the version that was read, on a book that is still
    open, so an edit never races an approval or a close.

    Raises:
        Unauthorized: Not the owning agent or an admin, or an agent touching admin-only fields
        InvalidState: Book is closed
        ValidationError: Bad field values
        ConflictError: The row changed since it was read
    """
    require_role(actor, ROLE_AGENT, "transaction")
    tx = get_transaction(transaction_id)

    if not can_modify_transaction(actor, tx):
        record_for(actor, AuditAction.PERMISSION_DENIED, "transaction", tx.id, {"reason": "not owner"})
        raise Unauthorized("You can only edit your own transactions")
    book_service.ensure_open(tx.book)

    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown transaction fields: {', '.join(sorted(unknown))}")
    if not actor.is_admin and set(changes) & ADMIN_ONLY_FIELDS:
        raise Unauthorized("Only admins can change the agent or the initial-funding flag")

    cleaned = {key: _clean_change(actor, key, value) for key, value in changes.items()}

    book_id = tx.pepi_book_id
    version = tx.version
    before = {key: _audit_value(key, getattr(tx, key)) for key in cleaned}
    previous = previous_review(tx, "review_notes")
    values = {**cleaned, **resubmission_values("review_notes"), "version": version + 1}
    try:
        book_service.claim_open_book(book_id)
        conditional_update(
            Transaction,
            tx.id,
            {"version": version},
            values,
            where=(book_service.open_book_clause(Transaction),),
        )
        db.session.commit()
    except ConflictError:
        db.session.rollback()
        book_service.ensure_still_open(book_id)
        raise
    except Exception:
        db.session.rollback()
        raise

    record_for(actor, AuditAction.UPDATE, "transaction", tx.id, {
        "previous_review": previous,
        "before": before,
        "after": {key: _audit_value(key, getattr(tx, key)) for key in cleaned},
    })
    return tx


def delete_transaction(actor: Actor | None, transaction_id: int) -> None:
    require_role(actor, ROLE_ADMIN, "transaction")
    tx = get_transaction(transaction_id)
    book_service.ensure_open(tx.book)
    if tx.status != STATUS_PENDING:
        raise InvalidState(f"Only pending transactions can be deleted (status: {tx.status})")

    book_id = tx.pepi_book_id
    snapshot = {
        "transaction_type": tx.transaction_type,
        "amount_cents": tx.amount_cents,
        "pepi_book_id": book_id,
        "agent_id": tx.agent_id,
        "description": tx.description,
    }
    try:
        book_service.claim_open_book(book_id)
        result = db.session.execute(
            delete(Transaction)
            .where(
                Transaction.id == tx.id,
                Transaction.status == STATUS_PENDING,
                Transaction.version == tx.version,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError(f"Transaction {transaction_id} was modified by another request; reload and try again")
        note_change(db.session, "transactions", OP_DELETE, transaction_id, snapshot)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    db.session.expunge(tx)
    record_for(actor, AuditAction.DELETE, "transaction", transaction_id, snapshot)
