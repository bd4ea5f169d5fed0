# Overview: Database-level concurrency guards for state transitions.

from __future__ import annotations

from sqlalchemy import update

from ..errors import ConflictError
from ..extensions import db
from .change_feed import OP_UPDATE, note_change, snapshot_values


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The conditional writes below are the authoritative guard either way.
    """
    return query.with_for_update()


def conditional_update(model, row_id: int, expected: dict, values: dict, where=()) -> int:
    """
    UPDATE model SET values WHERE id = row_id AND <every expected column matches>
    AND <every clause in `where`>.

    WHY: Two reviewers racing on the same pending row must not both win. The
    database applies the WHERE clause atomically, so exactly one UPDATE
    matches; the loser sees rowcount 0 and gets ConflictError.

    The caller owns the transaction: on ConflictError nothing has been written
    and the caller should roll back. On success the change is queued for the
    change feed and published when the caller commits.

    `where` carries conditions on other tables (e.g. "its book is still open")
    so they are checked by the same statement that writes the row.

    Returns:
        Number of affected rows (always 1 on success)

    Raises:
        ConflictError: If no row matched the expected state
    """
    stmt = update(model).where(model.id == row_id)
    for column, value in expected.items():
        stmt = stmt.where(getattr(model, column) == value)
    for clause in where:
        stmt = stmt.where(clause)
    stmt = stmt.values(**values).execution_options(synchronize_session=False)

    result = db.session.execute(stmt)
    if result.rowcount == 0:
        raise ConflictError(
            f"{model.__name__} {row_id} was modified by another request; reload and try again"
        )

    row = db.session.get(model, row_id)
    db.session.refresh(row)
    note_change(db.session, model.__tablename__, OP_UPDATE, row_id, snapshot_values(row))
    return result.rowcount
