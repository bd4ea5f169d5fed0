# Overview: Flask API routes for reading the audit trail (admin only).

from flask import Blueprint, request, jsonify

from ..decorators import require_auth, require_admin
from ..errors import PepiError, error_response, internal_error
from ..services import audit_service
from ..validation import parse_int


audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit-logs")


@audit_bp.get("")
@require_auth
@require_admin
def list_audit_logs_route():
    """
    Query params: action, entity_type, entity_id, user_id, limit (max 500), offset.
    Newest first.
    """
    try:
        args = request.args
        entries = audit_service.list_entries(
            action=args.get("action"),
            entity_type=args.get("entity_type"),
            entity_id=args.get("entity_id"),
            user_id=args.get("user_id"),
            limit=parse_int(args.get("limit", "100"), "limit"),
            offset=parse_int(args.get("offset", "0"), "offset"),
        )
        return jsonify({"audit_logs": [e.to_dict() for e in entries]}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list audit logs")
