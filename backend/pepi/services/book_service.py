# Overview: PEPI book lifecycle: create, activate, close, reset, add funds.

"""
Fund Book Lifecycle

WHY: Every transaction, fund request and CI payment belongs to a book, and
new work always lands in the single active book. The book's state decides
what may still change.

LIFECYCLE:
    created (inactive) -> active <-> inactive
    active -> closed   (terminal: closing balance frozen, never reopened)

INVARIANTS:
- At most one active book. activate_book() switches the flag inside one
  database transaction, and a partial unique index backs it up.
- A closed book is never active and its closing balance never changes.
- Nothing posts to, or is edited in, a closed book.
- Consumers ask get_active_book() every time; nobody caches "the active book".
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, InvalidState, NotFound, ValidationError
from ..extensions import db
from ..models import CiPayment, FundRequest, PepiBook, Transaction
from ..time_utils import utcnow
from ..validation import optional_text, require_book_year, require_positive_cents
from . import ledger_service
from .audit_service import AuditAction, record_for
from .change_feed import OP_DELETE, OP_UPDATE, note_change
from .concurrency import conditional_update, lock_for_update
from .permission_service import Actor, require_admin
from .transaction_state import STATUS_APPROVED, TYPE_ISSUANCE
from .view_cache import get_view_cache

logger = logging.getLogger(__name__)


# =============================================================================
# LOOKUPS
# =============================================================================

def get_book(book_id: int) -> PepiBook:
    book = db.session.get(PepiBook, book_id)
    if not book:
        raise NotFound(f"PEPI book {book_id} not found")
    return book


def list_books() -> list[PepiBook]:
    return db.session.query(PepiBook).order_by(PepiBook.year.desc()).all()


def get_active_book() -> PepiBook | None:
    """The single accessor for the active book."""
    return db.session.query(PepiBook).filter(PepiBook.is_active.is_(True)).first()


def require_active_book() -> PepiBook:
    book = get_active_book()
    if book is None:
        raise InvalidState("No active PEPI book. An admin must create or activate one first.")
    return book


def ensure_open(book: PepiBook) -> None:
    if book.is_closed:
        raise InvalidState(f"PEPI book {book.year} is closed")


# =============================================================================
# WRITE GUARDS
# =============================================================================

def open_book_clause(model):
    """WHERE clause for a conditional write: the row's book is still open."""
    return model.pepi_book_id.in_(select(PepiBook.id).where(PepiBook.is_closed.is_(False)))


def claim_open_book(book_id: int, require_active: bool = False) -> None:
    """
    Write-lock the book row for the current transaction, if it is still open.

    Every write that changes what a book holds calls this first. close_book
    locks the same row before it computes the closing balance, so a close and
    a ledger write never interleave. Caller commits or rolls back.

    Raises:
        InvalidState: Book is closed (or, with require_active, not active)
    """
    stmt = update(PepiBook).where(PepiBook.id == book_id, PepiBook.is_closed.is_(False))
    if require_active:
        stmt = stmt.where(PepiBook.is_active.is_(True))
    result = db.session.execute(
        stmt.values(updated_at=utcnow()).execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        book = db.session.get(PepiBook, book_id, populate_existing=True)
        if book is None:
            raise NotFound(f"PEPI book {book_id} not found")
        ensure_open(book)
        raise InvalidState(f"PEPI book {book.year} is not the active book")


def ensure_still_open(book_id: int) -> None:
    """Re-read the book after a failed conditional write; InvalidState if it closed meanwhile."""
    book = db.session.get(PepiBook, book_id, populate_existing=True)
    if book is not None:
        ensure_open(book)


def get_book_summary(book_id: int) -> dict:
    """Cached book_summary; entries are dropped by the change feed."""
    book = get_book(book_id)
    return get_view_cache().get_summary(book.id, lambda: ledger_service.book_summary(book))


# =============================================================================
# CREATE / ACTIVATE
# =============================================================================

def create_book(actor: Actor | None, year, starting_amount_cents, activate: bool = False) -> PepiBook:
    """
    Create a book for one year.

    The new book is inactive unless activate=True. When activating, any
    currently active book is deactivated in the same transaction.

    Raises:
        Unauthorized: Actor is not an admin
        ValidationError: Year outside 2000-2100 or starting amount <= 0
        ConflictError: A book for this year already exists
    """
    require_admin(actor, "pepi_book")
    year = require_book_year(year)
    starting = require_positive_cents(starting_amount_cents, "starting_amount_cents")

    if db.session.query(PepiBook).filter_by(year=year).first():
        raise ConflictError(f"A PEPI book for {year} already exists")

    book = PepiBook(
        year=year,
        starting_amount_cents=starting,
        is_active=False,
        is_closed=False,
        created_by_user_id=actor.user_id,
    )
    try:
        db.session.add(book)
        db.session.flush()
        if activate:
            _switch_active(book)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError(f"A PEPI book for {year} already exists") from exc

    record_for(actor, AuditAction.BOOK_CREATED, "pepi_book", book.id, {
        "year": year,
        "starting_amount_cents": starting,
        "activated": activate,
    })
    return book


def _switch_active(book: PepiBook) -> None:
    """
    Deactivate every other book, then activate `book`. Caller commits.

    Two statements rather than one: SQLite checks unique indexes row by row,
    so a single UPDATE flipping both flags could trip the partial index.
    """
    previous = get_active_book()
    db.session.execute(
        update(PepiBook)
        .where(PepiBook.is_active.is_(True), PepiBook.id != book.id)
        .values(is_active=False)
        .execution_options(synchronize_session="fetch")
    )
    if previous is not None and previous.id != book.id:
        note_change(db.session, "pepi_books", OP_UPDATE, previous.id, {"is_active": False})
    book.is_active = True
    db.session.flush()


def activate_book(actor: Actor | None, book_id: int) -> PepiBook:
    """
    Make `book_id` the active book.

    Raises:
        InvalidState: Book is closed
        ConflictError: Another request activated a book at the same moment
    """
    require_admin(actor, "pepi_book")
    book = get_book(book_id)
    ensure_open(book)
    if book.is_active:
        return book

    previous = get_active_book()
    try:
        _switch_active(book)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Another book was activated concurrently; reload and try again") from exc

    record_for(actor, AuditAction.BOOK_ACTIVATED, "pepi_book", book.id, {
        "year": book.year,
        "previous_active_book_id": previous.id if previous else None,
    })
    return book


def deactivate_book(actor: Actor | None, book_id: int) -> PepiBook:
    require_admin(actor, "pepi_book")
    book = get_book(book_id)
    if not book.is_active:
        return book
    book.is_active = False
    db.session.commit()
    record_for(actor, AuditAction.BOOK_DEACTIVATED, "pepi_book", book.id, {"year": book.year})
    return book


# =============================================================================
# CLOSE
# =============================================================================

def close_book(actor: Actor | None, book_id: int) -> PepiBook:
    """
    Close the active book and freeze its balance.

    The book row is locked first, and every ledger write claims the same row
    (claim_open_book), so no approval can land between computing the balance
    and freezing it. The write itself is still conditioned on the book being
    active and open.

    Raises:
        InvalidState: Book already closed, or not the active book
        ConflictError: Book changed state concurrently
    """
    require_admin(actor, "pepi_book")
    get_book(book_id)

    try:
        book = (
            lock_for_update(db.session.query(PepiBook).filter(PepiBook.id == book_id))
            .populate_existing()
            .one()
        )
        if book.is_closed:
            raise InvalidState(f"PEPI book {book.year} is already closed")
        if not book.is_active:
            raise InvalidState(f"Only the active book can be closed; PEPI book {book.year} is not active")

        balance = ledger_service.get_book_balance(book)
        conditional_update(
            PepiBook,
            book.id,
            {"is_active": True, "is_closed": False},
            {
                "is_active": False,
                "is_closed": True,
                "closing_balance_cents": balance,
                "closed_at": utcnow(),
                "closed_by_user_id": actor.user_id,
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("PEPI book %s closed with balance %s", book.year, balance)
    record_for(actor, AuditAction.BOOK_CLOSED, "pepi_book", book.id, {
        "year": book.year,
        "closing_balance_cents": balance,
    })
    return book


# =============================================================================
# RESET
# =============================================================================

def check_reset_confirmation(phrase: str | None) -> None:
    expected = current_app.config.get("RESET_CONFIRMATION_PHRASE", "RESET PEPI BOOK")
    if (phrase or "").strip() != expected:
        raise ValidationError(f'Type "{expected}" to confirm the reset')


def reset_active_book(actor: Actor | None, book_id: int, confirmation: str | None) -> dict:
    """
    Delete every fund request, CI payment and transaction of the active book.

    The book row itself stays, so its balance returns to the starting amount.
    All three deletes commit together or not at all. Irreversible.

    Returns:
        Number of rows deleted per table
    """
    require_admin(actor, "pepi_book")
    check_reset_confirmation(confirmation)
    book = get_book(book_id)
    if not book.is_active:
        raise InvalidState(f"Only the active book can be reset; PEPI book {book.year} is not active")
    ensure_open(book)

    counts = {}
    try:
        claim_open_book(book.id, require_active=True)
        # fund_requests reference transactions, so they go first
        for model in (FundRequest, CiPayment, Transaction):
            result = db.session.execute(
                delete(model)
                .where(model.pepi_book_id == book.id)
                .execution_options(synchronize_session=False)
            )
            counts[model.__tablename__] = result.rowcount
            note_change(db.session, model.__tablename__, OP_DELETE, None, {"pepi_book_id": book.id})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.warning("PEPI book %s reset by %s: %s", book.year, actor.user_id, counts)
    record_for(actor, AuditAction.BOOK_RESET, "pepi_book", book.id, {"year": book.year, "deleted": counts})
    return counts


# =============================================================================
# FUND ADDITIONS
# =============================================================================

def add_funds(actor: Actor | None, book_id: int, amount_cents, description: str | None = None) -> Transaction:
    """
    Record money added to the active book.

    Stored as an already-approved, book-level issuance (no agent), so it moves
    the balance immediately and shows up as additional funds in reports.
    """
    require_admin(actor, "pepi_book")
    amount = require_positive_cents(amount_cents)
    book = get_book(book_id)
    ensure_open(book)
    if not book.is_active:
        raise InvalidState(f"Funds can only be added to the active book; PEPI book {book.year} is not active")

    now = utcnow()
    tx = Transaction(
        pepi_book_id=book.id,
        agent_id=None,
        transaction_type=TYPE_ISSUANCE,
        amount_cents=amount,
        description=optional_text(description, "description") or f"Additional funds for {book.year} PEPI Book",
        is_initial_funding=False,
        status=STATUS_APPROVED,
        reviewed_by_user_id=actor.user_id,
        reviewed_at=now,
        created_by_user_id=actor.user_id,
    )
    try:
        claim_open_book(book.id, require_active=True)
        db.session.add(tx)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    record_for(actor, AuditAction.FUNDS_ADDED, "pepi_book", book.id, {
        "transaction_id": tx.id,
        "amount_cents": amount,
    })
    return tx


def list_fund_additions(book_id: int) -> list[Transaction]:
    return (
        db.session.query(Transaction)
        .filter(
            Transaction.pepi_book_id == book_id,
            Transaction.agent_id.is_(None),
            Transaction.transaction_type == TYPE_ISSUANCE,
            Transaction.is_initial_funding.is_(False),
        )
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .all()
    )
