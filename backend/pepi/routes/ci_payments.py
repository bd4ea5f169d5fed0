# Overview: Flask API routes for confidential-informant payments; parses input and returns JSON responses.

"""
CI Payment API Routes

SECURITY:
- Signature images are only returned on the single-payment endpoint
- Approval requires a commander signature; rejection requires a reason
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth
from ..errors import PepiError, Unauthorized, error_response, internal_error
from ..services import ci_payment_service
from ..services.permission_service import require_role
from ..models.agents import ROLE_AGENT
from ..validation import parse_int


ci_payments_bp = Blueprint("ci_payments", __name__, url_prefix="/api/ci-payments")


@ci_payments_bp.get("")
@require_auth
def list_ci_payments_route():
    try:
        book_id = request.args.get("book_id")
        payments = ci_payment_service.list_ci_payments(
            g.actor,
            status=request.args.get("status"),
            book_id=parse_int(book_id, "book_id") if book_id is not None else None,
        )
        return jsonify({"ci_payments": [p.to_dict() for p in payments]}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list CI payments")


@ci_payments_bp.get("/<int:payment_id>")
@require_auth
def get_ci_payment_route(payment_id: int):
    """Full record including signatures (receipt / print view)."""
    try:
        require_role(g.actor, ROLE_AGENT, "ci_payment")
        payment = ci_payment_service.get_ci_payment(payment_id)
        if not g.actor.is_admin and payment.paying_agent_id != g.actor.agent_id:
            raise Unauthorized("You can only view your own CI payments")
        return jsonify({"ci_payment": payment.to_dict(include_signatures=True)}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to load CI payment")


@ci_payments_bp.post("")
@require_auth
def create_ci_payment_route():
    """
    Record a CI payment on the active book.

    Request body:
    {
        "amount_paid_cents": 10000,
        "payment_date": "2025-03-02",
        "ci_signature": "data:image/png;base64,...",
        "paying_agent_signature": "data:image/png;base64,...",
        "witness_signature": "...", "ci_printed_name": "...",
        "paid_to": "...", "case_number": "...", "receipt_number": "..."
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        payment = ci_payment_service.create_ci_payment(g.actor, data)
        return jsonify({"ci_payment": payment.to_dict()}), 201
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create CI payment")


@ci_payments_bp.post("/<int:payment_id>/approve")
@require_auth
def approve_ci_payment_route(payment_id: int):
    """
    Request body:
    {
        "commander_signature": "data:image/png;base64,..."
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        result = ci_payment_service.approve_ci_payment(g.actor, payment_id, data.get("commander_signature"))
        return jsonify(result.to_dict()), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to approve CI payment")


@ci_payments_bp.post("/<int:payment_id>/reject")
@require_auth
def reject_ci_payment_route(payment_id: int):
    try:
        data = request.get_json(silent=True) or {}
        result = ci_payment_service.reject_ci_payment(g.actor, payment_id, data.get("reason"))
        return jsonify(result.to_dict()), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to reject CI payment")
