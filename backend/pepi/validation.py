from __future__ import annotations

from datetime import date
from typing import Any

from .errors import ValidationError

# Maximum single amount: $9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999

MIN_BOOK_YEAR = 2000
MAX_BOOK_YEAR = 2100


def parse_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for JSON and CLI input.

    Accepts ints and plain digit strings. Rejects bools, floats, decimals and
    scientific notation so "12.5" or 1e3 never silently become cents.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def require_positive_cents(value: Any, field: str = "amount_cents") -> int:
    if value is None:
        raise ValidationError(f"{field} is required")
    cents = parse_int(value, field)
    if cents <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    if cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds maximum of {MAX_AMOUNT_CENTS} cents")
    return cents


def require_book_year(value: Any) -> int:
    if value is None:
        raise ValidationError("year is required")
    year = parse_int(value, "year")
    if not MIN_BOOK_YEAR <= year <= MAX_BOOK_YEAR:
        raise ValidationError(f"year must be between {MIN_BOOK_YEAR} and {MAX_BOOK_YEAR}")
    return year


def require_text(value: Any, field: str) -> str:
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip()


def optional_text(value: Any, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    stripped = value.strip()
    return stripped or None


def parse_date(value: Any, field: str) -> date | None:
    """YYYY-MM-DD string (or a date) to a date; None passes through."""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a YYYY-MM-DD date")
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise ValidationError(f"{field} must be a YYYY-MM-DD date")


def require_choice(value: Any, field: str, choices) -> str:
    if value not in choices:
        allowed = ", ".join(sorted(choices))
        raise ValidationError(f"{field} must be one of: {allowed}")
    return value


def parse_bool(value: Any, field: str) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "1", "yes"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "0", "no"}:
        return False
    raise ValidationError(f"{field} must be a boolean")
