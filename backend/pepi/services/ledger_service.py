# Overview: Fund ledger calculations; balances are always recomputed from history.

"""
PEPI Ledger Invariants (authoritative)

- balance = starting amount + approved issuances + approved returns - approved spending.
- Pending and rejected rows are inert: they never move any figure here.
- Nothing is cached as source of truth. Every figure is a pure fold over the
  persisted rows, so it can be re-derived (and audited) at any time.
- Order does not matter: the fold is a sum.
- A transaction's ledger date is the instant it was approved (reviewed_at).

The pure functions take any iterable of objects with transaction_type,
amount_cents, status (and, for reports, is_initial_funding / agent_id /
reviewed_at). The query helpers load those rows for one book.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from ..extensions import db
from ..models import CiPayment, PepiBook, Transaction
from ..time_utils import month_bounds, to_utc_z
from .transaction_state import (
    STATUS_APPROVED,
    STATUS_PENDING,
    TYPE_ISSUANCE,
    TYPE_RETURN,
    TYPE_SPENDING,
    VALID_TRANSACTION_TYPES,
)


# =============================================================================
# PURE CALCULATIONS
# =============================================================================

def signed_amount(tx) -> int:
    """Contribution of one transaction to the balance (0 unless approved)."""
    if tx.status != STATUS_APPROVED:
        return 0
    if tx.transaction_type in (TYPE_ISSUANCE, TYPE_RETURN):
        return tx.amount_cents
    if tx.transaction_type == TYPE_SPENDING:
        return -tx.amount_cents
    raise ValueError(f"Unknown transaction type: {tx.transaction_type}")


def compute_balance(starting_amount_cents: int, transactions: Iterable) -> int:
    balance = starting_amount_cents
    for tx in transactions:
        balance += signed_amount(tx)
    return balance


def totals_by_type(transactions: Iterable) -> dict[str, int]:
    totals = {t: 0 for t in VALID_TRANSACTION_TYPES}
    for tx in transactions:
        if tx.status == STATUS_APPROVED:
            totals[tx.transaction_type] += tx.amount_cents
    return totals


def additional_funds(transactions: Iterable) -> int:
    """
    Approved issuances that are not the book's initial funding.

    Reporting figure only; the authoritative balance never reads it. The
    initial-funding decision is the row's is_initial_funding flag, fixed when
    the row was created.
    """
    return sum(
        tx.amount_cents
        for tx in transactions
        if tx.status == STATUS_APPROVED
        and tx.transaction_type == TYPE_ISSUANCE
        and not tx.is_initial_funding
    )


def _ledger_date(tx) -> datetime | None:
    return tx.reviewed_at or tx.created_at


def _strip_tz(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is not None:
        return value.replace(tzinfo=None)
    return value


def split_by_period(transactions: Iterable, start: datetime, end: datetime):
    """
    Partition approved transactions into (before start, within [start, end)).

    Rows dated at or after end are dropped.
    """
    before, within = [], []
    for tx in transactions:
        if tx.status != STATUS_APPROVED:
            continue
        when = _strip_tz(_ledger_date(tx))
        if when is None:
            continue
        if when < start:
            before.append(tx)
        elif when < end:
            within.append(tx)
    return before, within


# =============================================================================
# BOOK QUERIES
# =============================================================================

def book_transactions(book_id: int) -> list[Transaction]:
    return (
        db.session.query(Transaction)
        .filter(Transaction.pepi_book_id == book_id)
        .order_by(Transaction.id.asc())
        .all()
    )


def get_book_balance(book: PepiBook) -> int:
    return compute_balance(book.starting_amount_cents, book_transactions(book.id))


def book_summary(book: PepiBook) -> dict:
    """
    Headline figures for one book.

    Returns a plain dict so it can be cached and serialized as-is.
    """
    txs = book_transactions(book.id)
    totals = totals_by_type(txs)
    return {
        "book_id": book.id,
        "year": book.year,
        "starting_amount_cents": book.starting_amount_cents,
        "balance_cents": compute_balance(book.starting_amount_cents, txs),
        "total_issued_cents": totals[TYPE_ISSUANCE],
        "total_spent_cents": totals[TYPE_SPENDING],
        "total_returned_cents": totals[TYPE_RETURN],
        "additional_funds_cents": additional_funds(txs),
        "pending_count": sum(1 for tx in txs if tx.status == STATUS_PENDING),
        "is_active": book.is_active,
        "is_closed": book.is_closed,
        "closing_balance_cents": book.closing_balance_cents,
        "closed_at": to_utc_z(book.closed_at),
    }


def monthly_summary(book: PepiBook, year: int, month: int) -> dict:
    """
    Figures for the monthly reconciliation memo.

    WHY: The commander signs off one memo per month. The memo states what the
    fund held when the month opened, what moved during it, and what it held
    when the month closed.

    - opening: starting amount plus every approved row dated before the month
    - issued_to_agents: approved issuances to an agent during the month
    - additional_unit_issue: approved book-level issuances during the month,
      excluding initial funding
    - spent / returned: approved spending / returns during the month
    - ci_payments: approved CI payments dated in the month (informational;
      they are not ledger rows)
    - closing: opening plus the month's approved movement
    - ytd_spent: approved spending from the book's start through month end
    """
    start, end = month_bounds(year, month)
    txs = book_transactions(book.id)
    before, within = split_by_period(txs, start, end)

    opening = compute_balance(book.starting_amount_cents, before)
    closing = compute_balance(opening, within)

    issued_to_agents = sum(
        tx.amount_cents for tx in within
        if tx.transaction_type == TYPE_ISSUANCE and tx.agent_id is not None
    )
    unit_issue = sum(
        tx.amount_cents for tx in within
        if tx.transaction_type == TYPE_ISSUANCE and tx.agent_id is None and not tx.is_initial_funding
    )
    within_totals = totals_by_type(within)
    before_totals = totals_by_type(before)

    ci_rows = (
        db.session.query(CiPayment)
        .filter(
            CiPayment.pepi_book_id == book.id,
            CiPayment.status == STATUS_APPROVED,
            CiPayment.payment_date >= start.date(),
            CiPayment.payment_date < end.date(),
        )
        .all()
    )

    return {
        "book_id": book.id,
        "book_year": book.year,
        "year": year,
        "month": month,
        "opening_balance_cents": opening,
        "issued_to_agents_cents": issued_to_agents,
        "additional_unit_issue_cents": unit_issue,
        "spent_cents": within_totals[TYPE_SPENDING],
        "returned_cents": within_totals[TYPE_RETURN],
        "ci_payments_cents": sum(p.amount_paid_cents for p in ci_rows),
        "ci_payment_count": len(ci_rows),
        "closing_balance_cents": closing,
        "ytd_spent_cents": before_totals[TYPE_SPENDING] + within_totals[TYPE_SPENDING],
    }
