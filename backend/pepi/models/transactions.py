from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z


class Transaction(db.Model):
    """
    A single movement of PEPI money.

    LIFECYCLE (see services/transaction_state.py):
        pending -> approved | rejected
        any status -> pending on edit (review fields cleared)

    Only approved rows count toward a book's balance:
    issuance and return add, spending subtracts.

    agent_id is null for book-level entries such as fund additions.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        db.Index("ix_transactions_book_status", "pepi_book_id", "status"),
        db.Index("ix_transactions_agent_created", "agent_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pepi_book_id = db.Column(db.Integer, db.ForeignKey("pepi_books.id"), nullable=False, index=True)
    agent_id = db.Column(db.Integer, db.ForeignKey("agents.id"), nullable=True, index=True)

    transaction_type = db.Column(db.String(16), nullable=False)  # issuance, spending, return
    amount_cents = db.Column(db.Integer, nullable=False)
    receipt_number = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)

    # Marks the book's own starting deposit so reports can leave it out of
    # "additional funds". Inferred from the description at creation when not given.
    is_initial_funding = db.Column(db.Boolean, nullable=False, default=False)

    # Spending detail
    spending_category = db.Column(db.String(64), nullable=True)
    case_number = db.Column(db.String(64), nullable=True)
    paid_to = db.Column(db.String(255), nullable=True)
    ecr_number = db.Column(db.String(64), nullable=True)
    date_to_evidence = db.Column(db.Date, nullable=True)

    # Review
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    review_notes = db.Column(db.Text, nullable=True)
    reviewed_by_user_id = db.Column(db.String(64), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Bumped by every review or edit write; conditional writes expect the value they read
    version = db.Column(db.Integer, nullable=False, default=1)

    created_by_user_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    book = db.relationship("PepiBook", backref=db.backref("transactions", lazy=True))
    agent = db.relationship("Agent", backref=db.backref("transactions", lazy=True))

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} {self.transaction_type} {self.amount_cents} {self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pepi_book_id": self.pepi_book_id,
            "agent_id": self.agent_id,
            "agent_name": self.agent.name if self.agent else None,
            "transaction_type": self.transaction_type,
            "amount_cents": self.amount_cents,
            "receipt_number": self.receipt_number,
            "description": self.description,
            "is_initial_funding": self.is_initial_funding,
            "spending_category": self.spending_category,
            "case_number": self.case_number,
            "paid_to": self.paid_to,
            "ecr_number": self.ecr_number,
            "date_to_evidence": to_iso_date(self.date_to_evidence),
            "status": self.status,
            "version": self.version,
            "review_notes": self.review_notes,
            "reviewed_by_user_id": self.reviewed_by_user_id,
            "reviewed_at": to_utc_z(self.reviewed_at),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class FundRequest(db.Model):
    """
    An agent's request for money, reviewed before any ledger movement exists.

    Approval creates an approved issuance Transaction for the agent in the same
    book and links it through transaction_id.
    """
    __tablename__ = "fund_requests"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_fund_requests_amount_positive"),
        db.Index("ix_fund_requests_book_status", "pepi_book_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    agent_id = db.Column(db.Integer, db.ForeignKey("agents.id"), nullable=False, index=True)
    pepi_book_id = db.Column(db.Integer, db.ForeignKey("pepi_books.id"), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    case_number = db.Column(db.String(64), nullable=True)
    agent_signature = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    reviewed_by_user_id = db.Column(db.String(64), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True)

    requested_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    agent = db.relationship("Agent", backref=db.backref("fund_requests", lazy=True))
    book = db.relationship("PepiBook", backref=db.backref("fund_requests", lazy=True))
    transaction = db.relationship("Transaction")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "agent_name": self.agent.name if self.agent else None,
            "pepi_book_id": self.pepi_book_id,
            "amount_cents": self.amount_cents,
            "case_number": self.case_number,
            "status": self.status,
            "version": self.version,
            "rejection_reason": self.rejection_reason,
            "reviewed_by_user_id": self.reviewed_by_user_id,
            "reviewed_at": to_utc_z(self.reviewed_at),
            "transaction_id": self.transaction_id,
            "requested_at": to_utc_z(self.requested_at),
        }


class CiPayment(db.Model):
    """
    Payment to a confidential informant.

    Carries signature images (data URLs) from the informant, the paying agent,
    an optional witness and, on approval, the commander. Reviewed on the same
    pending -> approved | rejected cycle as transactions.
    """
    __tablename__ = "ci_payments"
    __table_args__ = (
        db.CheckConstraint("amount_paid_cents > 0", name="ck_ci_payments_amount_positive"),
        db.Index("ix_ci_payments_book_status", "pepi_book_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pepi_book_id = db.Column(db.Integer, db.ForeignKey("pepi_books.id"), nullable=False, index=True)
    paying_agent_id = db.Column(db.Integer, db.ForeignKey("agents.id"), nullable=False, index=True)

    payment_date = db.Column(db.Date, nullable=False)
    amount_paid_cents = db.Column(db.Integer, nullable=False)
    receipt_number = db.Column(db.String(64), nullable=True)
    case_number = db.Column(db.String(64), nullable=True)
    paid_to = db.Column(db.String(255), nullable=True)

    ci_printed_name = db.Column(db.String(120), nullable=True)
    ci_signature = db.Column(db.Text, nullable=False)
    paying_agent_printed_name = db.Column(db.String(120), nullable=True)
    paying_agent_signature = db.Column(db.Text, nullable=False)
    witness_printed_name = db.Column(db.String(120), nullable=True)
    witness_signature = db.Column(db.Text, nullable=True)
    commander_signature = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    reviewed_by_user_id = db.Column(db.String(64), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_by_user_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    book = db.relationship("PepiBook", backref=db.backref("ci_payments", lazy=True))
    paying_agent = db.relationship("Agent", backref=db.backref("ci_payments", lazy=True))

    def to_dict(self, include_signatures: bool = False) -> dict:
        data = {
            "id": self.id,
            "pepi_book_id": self.pepi_book_id,
            "paying_agent_id": self.paying_agent_id,
            "paying_agent_name": self.paying_agent.name if self.paying_agent else None,
            "payment_date": to_iso_date(self.payment_date),
            "amount_paid_cents": self.amount_paid_cents,
            "receipt_number": self.receipt_number,
            "case_number": self.case_number,
            "paid_to": self.paid_to,
            "ci_printed_name": self.ci_printed_name,
            "paying_agent_printed_name": self.paying_agent_printed_name,
            "witness_printed_name": self.witness_printed_name,
            "has_commander_signature": bool(self.commander_signature),
            "status": self.status,
            "version": self.version,
            "rejection_reason": self.rejection_reason,
            "reviewed_by_user_id": self.reviewed_by_user_id,
            "reviewed_at": to_utc_z(self.reviewed_at),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
        if include_signatures:
            data.update({
                "ci_signature": self.ci_signature,
                "paying_agent_signature": self.paying_agent_signature,
                "witness_signature": self.witness_signature,
                "commander_signature": self.commander_signature,
            })
        return data
