# Overview: In-process change feed; publishes committed row changes to subscribers.

"""
Push-based change notifications for views that must stay fresh.

DESIGN:
- Subscribers register per table with an optional filter and get back a
  Subscription handle they can cancel.
- SQLAlchemy session events collect inserts/updates/deletes during each flush
  and publish them only after the surrounding transaction commits. Rolled
  back work is never published.
- Bulk statements (conditional updates, book reset) bypass the unit of work,
  so the code issuing them records the change with note_change().

Subscriber callbacks run inside the session's after_commit hook and must not
emit SQL. Their job is to mark derived state stale; recomputation happens on
the next read.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from flask import current_app, has_app_context
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

OP_INSERT = "insert"
OP_UPDATE = "update"
OP_DELETE = "delete"

_PENDING_KEY = "pepi_pending_changes"
_installed = False


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    operation: str
    row_id: int | None
    values: dict[str, Any] = field(default_factory=dict)


class Subscription:
    """Handle returned by ChangeFeed.subscribe; cancel() stops delivery."""

    def __init__(self, feed: "ChangeFeed", table: str, callback: Callable[[ChangeEvent], None], filter=None):
        self._feed = feed
        self.table = table
        self.callback = callback
        self.filter = filter or {}
        self.active = True

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        for key, expected in self.filter.items():
            # Bulk events may not carry every column; unknown means "maybe"
            if key in change.values and change.values[key] != expected:
                return False
        return True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._feed._remove(self)


class ChangeFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[Subscription]] = {}

    def subscribe(self, table: str, callback: Callable[[ChangeEvent], None], filter: dict | None = None) -> Subscription:
        sub = Subscription(self, table, callback, filter)
        with self._lock:
            self._subscriptions.setdefault(table, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.table, [])
            if sub in subs:
                subs.remove(sub)

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(table, []))

    def publish(self, change: ChangeEvent) -> None:
        with self._lock:
            subs = list(self._subscriptions.get(change.table, []))
        for sub in subs:
            if not sub.active or not sub.matches(change):
                continue
            try:
                sub.callback(change)
            except Exception:
                # The data is already committed; a broken subscriber must not surface here.
                logger.exception("Change feed subscriber failed for %s %s", change.table, change.operation)


def get_feed() -> ChangeFeed | None:
    if not has_app_context():
        return None
    return current_app.extensions.get("pepi_change_feed")


def _snapshot(obj) -> tuple[str, int | None, dict[str, Any]]:
    state = inspect(obj)
    loaded = state.dict
    values = {attr.key: loaded[attr.key] for attr in state.mapper.column_attrs if attr.key in loaded}
    row_id = values.get("id")
    # Expired rows only carry their modified columns
    if row_id is None and state.identity:
        row_id = state.identity[0]
    return obj.__tablename__, row_id, values


def note_change(session: Session, table: str, operation: str, row_id: int | None, values: dict | None = None) -> None:
    """Queue a change made outside the ORM unit of work for publication on commit."""
    session.info.setdefault(_PENDING_KEY, []).append(
        ChangeEvent(table=table, operation=operation, row_id=row_id, values=dict(values or {}))
    )


def snapshot_values(obj) -> dict[str, Any]:
    return _snapshot(obj)[2]


def _after_flush(session, flush_context):
    pending = session.info.setdefault(_PENDING_KEY, [])
    for obj in session.new:
        table, row_id, values = _snapshot(obj)
        pending.append(ChangeEvent(table, OP_INSERT, row_id, values))
    for obj in session.dirty:
        if not session.is_modified(obj, include_collections=False):
            continue
        table, row_id, values = _snapshot(obj)
        pending.append(ChangeEvent(table, OP_UPDATE, row_id, values))
    for obj in session.deleted:
        table, row_id, values = _snapshot(obj)
        pending.append(ChangeEvent(table, OP_DELETE, row_id, values))


def _after_commit(session):
    pending = session.info.pop(_PENDING_KEY, [])
    if not pending:
        return
    feed = get_feed()
    if feed is None:
        return
    for change in pending:
        feed.publish(change)


def _after_rollback(session):
    session.info.pop(_PENDING_KEY, None)


def install_session_hooks() -> None:
    """Attach the collection hooks to every SQLAlchemy Session (idempotent)."""
    global _installed
    if _installed:
        return
    event.listen(Session, "after_flush", _after_flush)
    event.listen(Session, "after_commit", _after_commit)
    event.listen(Session, "after_rollback", _after_rollback)
    _installed = True
