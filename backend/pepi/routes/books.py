# Overview: Flask API routes for PEPI books; parses input and returns JSON responses.

"""
PEPI Book API Routes

DESIGN:
- Reads are open to any agent; every write is admin-only (checked in book_service)
- Summaries come from the per-book view cache
- Reset needs the confirmation phrase in the body

SECURITY:
- All operations audited by book_service with the caller's user id and IP
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_agent
from ..errors import PepiError, ValidationError, error_response, internal_error
from ..services import book_service, ledger_service
from ..validation import parse_bool, parse_int


books_bp = Blueprint("books", __name__, url_prefix="/api/books")


# =============================================================================
# READS
# =============================================================================

@books_bp.get("")
@require_auth
@require_agent
def list_books_route():
    try:
        books = book_service.list_books()
        return jsonify({"books": [b.to_dict() for b in books]}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list books")


@books_bp.get("/active")
@require_auth
@require_agent
def active_book_route():
    """
    The active book and its summary.

    Returns:
        200: {"book": {...}, "summary": {...}} or {"book": null, "summary": null}
    """
    try:
        book = book_service.get_active_book()
        if book is None:
            return jsonify({"book": None, "summary": None}), 200
        return jsonify({
            "book": book.to_dict(),
            "summary": book_service.get_book_summary(book.id),
        }), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to load active book")


@books_bp.get("/<int:book_id>")
@require_auth
@require_agent
def get_book_route(book_id: int):
    try:
        book = book_service.get_book(book_id)
        return jsonify({"book": book.to_dict()}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to load book")


@books_bp.get("/<int:book_id>/summary")
@require_auth
@require_agent
def book_summary_route(book_id: int):
    try:
        return jsonify({"summary": book_service.get_book_summary(book_id)}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to compute book summary")


@books_bp.get("/<int:book_id>/monthly")
@require_auth
@require_agent
def monthly_summary_route(book_id: int):
    """
    Monthly reconciliation figures.

    Query params: year (defaults to the book's year), month (1-12, required)
    """
    try:
        book = book_service.get_book(book_id)
        month_arg = request.args.get("month")
        if month_arg is None:
            raise ValidationError("month is required")
        month = parse_int(month_arg, "month")
        if not 1 <= month <= 12:
            raise ValidationError("month must be between 1 and 12")
        year = parse_int(request.args.get("year", book.year), "year")
        return jsonify({"memo": ledger_service.monthly_summary(book, year, month)}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to compute monthly summary")


@books_bp.get("/<int:book_id>/funds")
@require_auth
@require_agent
def list_fund_additions_route(book_id: int):
    try:
        book_service.get_book(book_id)
        additions = book_service.list_fund_additions(book_id)
        return jsonify({"fund_additions": [tx.to_dict() for tx in additions]}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list fund additions")


# =============================================================================
# LIFECYCLE (admin)
# =============================================================================

@books_bp.post("")
@require_auth
def create_book_route():
    """
    Create a book.

    Request body:
    {
        "year": 2025,
        "starting_amount_cents": 1000000,
        "activate": true  (optional, default: false)
    }

    Returns:
        201: Book created
        400: Invalid year or amount
        403: Not an admin
        409: Year already has a book
    """
    try:
        data = request.get_json(silent=True) or {}
        book = book_service.create_book(
            g.actor,
            year=data.get("year"),
            starting_amount_cents=data.get("starting_amount_cents"),
            activate=bool(parse_bool(data.get("activate"), "activate")),
        )
        return jsonify({"book": book.to_dict()}), 201
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create book")


@books_bp.post("/<int:book_id>/activate")
@require_auth
def activate_book_route(book_id: int):
    try:
        book = book_service.activate_book(g.actor, book_id)
        return jsonify({"book": book.to_dict()}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to activate book")


@books_bp.post("/<int:book_id>/deactivate")
@require_auth
def deactivate_book_route(book_id: int):
    try:
        book = book_service.deactivate_book(g.actor, book_id)
        return jsonify({"book": book.to_dict()}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to deactivate book")


@books_bp.post("/<int:book_id>/close")
@require_auth
def close_book_route(book_id: int):
    """
    Close the active book. Terminal: there is no reopen.

    Returns:
        200: Book closed with closing_balance_cents frozen
        409: Book already closed or not active
    """
    try:
        book = book_service.close_book(g.actor, book_id)
        return jsonify({"book": book.to_dict()}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to close book")


@books_bp.post("/<int:book_id>/reset")
@require_auth
def reset_book_route(book_id: int):
    """
    Delete all transactions, CI payments and fund requests of the active book.

    Request body:
    {
        "confirmation": "RESET PEPI BOOK"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        deleted = book_service.reset_active_book(g.actor, book_id, data.get("confirmation"))
        return jsonify({"deleted": deleted}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to reset book")


@books_bp.post("/<int:book_id>/funds")
@require_auth
def add_funds_route(book_id: int):
    """
    Add funds to the active book.

    Request body:
    {
        "amount_cents": 50000,
        "description": "Q2 supplemental allocation"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        tx = book_service.add_funds(g.actor, book_id, data.get("amount_cents"), data.get("description"))
        return jsonify({"transaction": tx.to_dict()}), 201
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to add funds")
