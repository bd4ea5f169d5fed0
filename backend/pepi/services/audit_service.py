# Overview: Append-only audit trail writes and reads.

"""
Audit Log Service

WHY: Every decision about public money must be reconstructable later: who
approved what, when, from where, and what the row looked like before an edit
wiped its review fields.

DESIGN PRINCIPLES:
- Append-only: entries are never updated or deleted (the model enforces it).
- Written AFTER the business change commits, in a separate commit. An audit
  failure can therefore never undo or block the change it describes.
- record() is the best-effort entry point used by services: it logs and
  swallows failures. write_entry() raises DependencyFailure for callers that
  want to report the failure (the approval pipeline turns it into a warning).
"""

from __future__ import annotations

import logging

from flask import has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from ..errors import DependencyFailure
from ..extensions import db
from ..models import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditAction:
    LOGIN = "login"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    REJECT = "reject"
    EMAIL_SENT = "email_sent"
    EMAIL_FAILED = "email_failed"
    BOOK_CREATED = "book_created"
    BOOK_ACTIVATED = "book_activated"
    BOOK_DEACTIVATED = "book_deactivated"
    BOOK_CLOSED = "book_closed"
    BOOK_RESET = "book_reset"
    FUNDS_ADDED = "funds_added"
    PERMISSION_DENIED = "permission_denied"


def client_ip() -> str:
    """
    Best guess at the caller's address.

    Proxy headers first (first hop of X-Forwarded-For, then X-Real-IP), then
    the socket peer. Outside a request (CLI) the address is "unknown".
    """
    if not has_request_context():
        return "unknown"
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.remote_addr or "unknown"


def write_entry(
    action: str,
    entity_type: str | None = None,
    entity_id=None,
    details: dict | None = None,
    user_id: str | None = None,
    ip_address: str | None = None,
) -> AuditLogEntry:
    """
    Append one audit entry and commit it.

    Raises:
        DependencyFailure: If the write fails (the session is rolled back)
    """
    entry = AuditLogEntry(
        user_id=user_id,
        ip_address=ip_address or client_ip(),
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details or {},
    )
    try:
        db.session.add(entry)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise DependencyFailure(f"Audit write failed for {action} {entity_type} {entity_id}: {exc}") from exc
    return entry


def record(action: str, entity_type: str | None = None, entity_id=None, details: dict | None = None,
           user_id: str | None = None, ip_address: str | None = None) -> AuditLogEntry | None:
    """Best-effort variant of write_entry: failures are logged, never raised."""
    try:
        return write_entry(action, entity_type, entity_id, details, user_id, ip_address)
    except DependencyFailure:
        logger.exception("Audit log entry dropped: %s %s %s", action, entity_type, entity_id)
        return None


def record_for(actor, action: str, entity_type: str | None = None, entity_id=None,
               details: dict | None = None) -> AuditLogEntry | None:
    return record(
        action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        user_id=actor.user_id if actor else None,
        ip_address=actor.ip_address if actor else None,
    )


def list_entries(
    action: str | None = None,
    entity_type: str | None = None,
    entity_id=None,
    user_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditLogEntry]:
    """Newest first, optionally filtered."""
    query = db.session.query(AuditLogEntry)
    if action:
        query = query.filter(AuditLogEntry.action == action)
    if entity_type:
        query = query.filter(AuditLogEntry.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditLogEntry.entity_id == str(entity_id))
    if user_id:
        query = query.filter(AuditLogEntry.user_id == user_id)
    limit = max(1, min(limit, 500))
    return (
        query.order_by(AuditLogEntry.timestamp.desc(), AuditLogEntry.id.desc())
        .offset(max(0, offset))
        .limit(limit)
        .all()
    )
