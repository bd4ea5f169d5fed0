# Overview: Flask API routes for transactions and their review; parses input and returns JSON responses.

"""
Transaction API Routes

DESIGN:
- Agents create and edit their own transactions; admins see and review all
- Approve/reject go through the review pipeline; side-effect problems come
  back as "warnings" on a 200, never as an error status
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth
from ..errors import PepiError, error_response, internal_error
from ..services import transaction_service
from ..services.transaction_state import DECISION_APPROVE, DECISION_REJECT
from ..validation import parse_int


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")

CREATE_FIELDS = (
    "agent_id", "description", "receipt_number", "book_id", "is_initial_funding",
    "spending_category", "case_number", "paid_to", "ecr_number", "date_to_evidence",
)


# =============================================================================
# CRUD
# =============================================================================

@transactions_bp.get("")
@require_auth
def list_transactions_route():
    """
    Query params: book_id, agent_id, status, type, limit, offset.
    Agents only ever see their own rows.
    """
    try:
        args = request.args
        filters = {
            "status": args.get("status"),
            "transaction_type": args.get("type"),
            "limit": parse_int(args.get("limit", "200"), "limit"),
            "offset": parse_int(args.get("offset", "0"), "offset"),
        }
        if args.get("book_id") is not None:
            filters["book_id"] = parse_int(args["book_id"], "book_id")
        if args.get("agent_id") is not None:
            filters["agent_id"] = parse_int(args["agent_id"], "agent_id")
        txs = transaction_service.list_for_actor(g.actor, **filters)
        return jsonify({"transactions": [tx.to_dict() for tx in txs]}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list transactions")


@transactions_bp.get("/pending")
@require_auth
def pending_transactions_route():
    try:
        book_id = request.args.get("book_id")
        txs = transaction_service.pending_queue(
            g.actor, parse_int(book_id, "book_id") if book_id is not None else None
        )
        return jsonify({"transactions": [tx.to_dict() for tx in txs]}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list pending transactions")


@transactions_bp.get("/<int:transaction_id>")
@require_auth
def get_transaction_route(transaction_id: int):
    try:
        tx = transaction_service.get_transaction_for(g.actor, transaction_id)
        return jsonify({"transaction": tx.to_dict()}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to load transaction")


@transactions_bp.post("")
@require_auth
def create_transaction_route():
    """
    Create a pending transaction on the active book.

    Request body:
    {
        "transaction_type": "spending",
        "amount_cents": 15000,
        "agent_id": 3,  (optional; agents always record for themselves)
        "description": "Buy money, case 24-118",
        "receipt_number": "R-0042",
        "paid_to": "...", "case_number": "...", "ecr_number": "...",
        "spending_category": "...", "date_to_evidence": "2025-03-02"
    }

    Returns:
        201: Transaction created (status: pending)
        400: Invalid input
        409: No active book, or book closed
    """
    try:
        data = request.get_json(silent=True) or {}
        tx = transaction_service.create_transaction(
            g.actor,
            transaction_type=data.get("transaction_type"),
            amount_cents=data.get("amount_cents"),
            **{key: data.get(key) for key in CREATE_FIELDS},
        )
        return jsonify({"transaction": tx.to_dict()}), 201
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create transaction")


@transactions_bp.patch("/<int:transaction_id>")
@require_auth
def edit_transaction_route(transaction_id: int):
    """Edit and resubmit; the transaction always returns to pending."""
    try:
        data = request.get_json(silent=True) or {}
        tx = transaction_service.edit_transaction(g.actor, transaction_id, data)
        return jsonify({"transaction": tx.to_dict()}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to edit transaction")


@transactions_bp.delete("/<int:transaction_id>")
@require_auth
def delete_transaction_route(transaction_id: int):
    try:
        transaction_service.delete_transaction(g.actor, transaction_id)
        return jsonify({"deleted": True}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to delete transaction")


# =============================================================================
# REVIEW
# =============================================================================

@transactions_bp.post("/<int:transaction_id>/approve-spending")
@require_auth
def approve_spending_route(transaction_id: int):
    """
    Approve a pending spending transaction (admin).

    Request body (optional):
    {
        "notes": "Receipt verified"
    }

    Returns:
        200: Approved; "warnings" lists any email/audit problems
        400: Not a spending transaction
        403: Not an admin
        409: Already processed, or approved concurrently
    """
    try:
        data = request.get_json(silent=True) or {}
        result = transaction_service.approve_spending_transaction(g.actor, transaction_id, data.get("notes"))
        return jsonify(result.to_dict()), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to approve spending transaction")


@transactions_bp.post("/<int:transaction_id>/reject-spending")
@require_auth
def reject_spending_route(transaction_id: int):
    try:
        data = request.get_json(silent=True) or {}
        result = transaction_service.reject_spending_transaction(g.actor, transaction_id, data.get("reason"))
        return jsonify(result.to_dict()), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to reject spending transaction")


@transactions_bp.post("/<int:transaction_id>/approve")
@require_auth
def approve_transaction_route(transaction_id: int):
    """Approve a pending transaction of any type (admin)."""
    try:
        data = request.get_json(silent=True) or {}
        result = transaction_service.review_transaction(g.actor, transaction_id, DECISION_APPROVE, data.get("notes"))
        return jsonify(result.to_dict()), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to approve transaction")


@transactions_bp.post("/<int:transaction_id>/reject")
@require_auth
def reject_transaction_route(transaction_id: int):
    try:
        data = request.get_json(silent=True) or {}
        result = transaction_service.review_transaction(g.actor, transaction_id, DECISION_REJECT, data.get("reason"))
        return jsonify(result.to_dict()), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to reject transaction")
