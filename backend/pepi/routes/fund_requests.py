# Overview: Flask API routes for fund requests; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth
from ..errors import PepiError, error_response, internal_error
from ..services import fund_request_service
from ..validation import parse_int


fund_requests_bp = Blueprint("fund_requests", __name__, url_prefix="/api/fund-requests")


@fund_requests_bp.get("")
@require_auth
def list_fund_requests_route():
    try:
        book_id = request.args.get("book_id")
        requests = fund_request_service.list_fund_requests(
            g.actor,
            status=request.args.get("status"),
            book_id=parse_int(book_id, "book_id") if book_id is not None else None,
        )
        return jsonify({"fund_requests": [r.to_dict() for r in requests]}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list fund requests")


@fund_requests_bp.post("")
@require_auth
def create_fund_request_route():
    """
    Request funds from the active book.

    Request body:
    {
        "amount_cents": 20000,
        "case_number": "24-118",  (optional)
        "agent_signature": "data:image/png;base64,...",  (optional)
        "agent_id": 3  (admins only, optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        fund_request = fund_request_service.create_fund_request(
            g.actor,
            amount_cents=data.get("amount_cents"),
            case_number=data.get("case_number"),
            agent_signature=data.get("agent_signature"),
            agent_id=data.get("agent_id"),
        )
        return jsonify({"fund_request": fund_request.to_dict()}), 201
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create fund request")


@fund_requests_bp.post("/<int:request_id>/approve")
@require_auth
def approve_fund_request_route(request_id: int):
    """Approve (admin); creates the matching approved issuance."""
    try:
        result = fund_request_service.approve_fund_request(g.actor, request_id)
        return jsonify(result.to_dict()), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to approve fund request")


@fund_requests_bp.post("/<int:request_id>/reject")
@require_auth
def reject_fund_request_route(request_id: int):
    try:
        data = request.get_json(silent=True) or {}
        result = fund_request_service.reject_fund_request(g.actor, request_id, data.get("reason"))
        return jsonify(result.to_dict()), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to reject fund request")
