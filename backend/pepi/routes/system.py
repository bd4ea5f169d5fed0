# backend/pepi/routes/system.py
"""
Health and session endpoints.
"""

import time
from flask import Blueprint, current_app, jsonify, g
from sqlalchemy import text

from ..decorators import require_auth
from ..extensions import db
from ..services import identity_service
from ..services.book_service import get_active_book
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        active = get_active_book()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"active_book_year": active.year if active else None},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_email_health() -> dict:
    configured = bool(current_app.config.get("RESEND_API_KEY"))
    return {
        "status": "healthy" if configured else "degraded",
        "details": {
            "configured": configured,
            "delivery": current_app.config.get("EMAIL_DELIVERY"),
        },
    }


@system_bp.get("/health")
def health():
    """
    Dependency health.

    Email being unconfigured only degrades the service: notifications are
    best-effort and never block a decision.
    """
    database = check_database_health()
    email = check_email_health()
    healthy = database["status"] == "healthy"
    return jsonify({
        "status": "healthy" if healthy and email["status"] == "healthy" else ("degraded" if healthy else "unhealthy"),
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database, "email": email},
    }), 200 if healthy else 503


@system_bp.post("/session")
@require_auth
def record_session():
    """Called by the dashboard right after sign-in; writes the login audit entry."""
    identity_service.record_login(g.actor)
    return jsonify({"user_id": g.actor.user_id, "role": g.actor.role}), 200
