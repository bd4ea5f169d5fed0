from __future__ import annotations

from sqlalchemy.orm import validates

from ..extensions import db
from ..errors import InvalidState
from ..time_utils import to_utc_z


class PepiBook(db.Model):
    """
    One funding period (normally a calendar year) of the PEPI fund.

    INVARIANTS:
    - At most one book is active. Enforced by the partial unique index below
      and by book_service.activate_book, which swaps the flag in one DB transaction.
    - A closed book is never active (check constraint).
    - closing_balance_cents is written once, at close time, and never changes.

    The balance is not stored here: it is always recomputed from the book's
    transactions (see services/ledger_service.py).
    """
    __tablename__ = "pepi_books"
    __table_args__ = (
        db.UniqueConstraint("year", name="uq_pepi_books_year"),
        db.Index(
            "uq_pepi_books_single_active",
            "is_active",
            unique=True,
            sqlite_where=db.text("is_active = 1"),
            postgresql_where=db.text("is_active"),
        ),
        db.CheckConstraint("NOT (is_active AND is_closed)", name="ck_pepi_books_closed_inactive"),
        db.CheckConstraint("starting_amount_cents > 0", name="ck_pepi_books_starting_amount"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    year = db.Column(db.Integer, nullable=False)
    starting_amount_cents = db.Column(db.Integer, nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=False)
    is_closed = db.Column(db.Boolean, nullable=False, default=False)
    closing_balance_cents = db.Column(db.Integer, nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_by_user_id = db.Column(db.String(64), nullable=True)

    created_by_user_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    @validates("closing_balance_cents")
    def _freeze_closing_balance(self, key, value):
        if self.closing_balance_cents is not None and value != self.closing_balance_cents:
            raise InvalidState(f"PEPI book {self.year} is closed; its closing balance cannot change")
        return value

    def __repr__(self) -> str:
        return f"<PepiBook id={self.id} year={self.year} active={self.is_active} closed={self.is_closed}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "year": self.year,
            "starting_amount_cents": self.starting_amount_cents,
            "is_active": self.is_active,
            "is_closed": self.is_closed,
            "closing_balance_cents": self.closing_balance_cents,
            "closed_at": to_utc_z(self.closed_at),
            "closed_by_user_id": self.closed_by_user_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
