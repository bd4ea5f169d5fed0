# Overview: Domain error taxonomy shared by services, routes and the CLI.

"""
Every caller-facing failure carries a stable machine-readable ``kind`` plus a
human-readable message. Routes turn these into ``{"error", "kind"}`` JSON
bodies; the CLI prints them.

DependencyFailure is the odd one out: it describes a best-effort side effect
(email, audit write) that failed after the business change was committed. It
is logged and reported as a warning, never raised to the caller.
"""

from __future__ import annotations

from flask import current_app, jsonify


class PepiError(Exception):
    """Base class for domain errors."""

    kind = "error"
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind}


class Unauthorized(PepiError):
    """Actor lacks the required role, or there is no actor at all."""

    kind = "unauthorized"
    http_status = 403


class Unauthenticated(Unauthorized):
    """No identity, or an identity token that failed verification."""

    http_status = 401


class NotFound(PepiError):
    kind = "not_found"
    http_status = 404


class InvalidState(PepiError):
    """Transition not legal from the entity's current state."""

    kind = "invalid_state"
    http_status = 409


class TypeMismatch(PepiError):
    """Wrong transaction kind for the workflow being run."""

    kind = "type_mismatch"
    http_status = 400


class ValidationError(PepiError):
    """Malformed input: non-positive amount, out-of-range year, empty field."""

    kind = "validation_error"
    http_status = 400


class ConflictError(PepiError):
    """A conditional write matched zero rows or a uniqueness rule was hit."""

    kind = "conflict"
    http_status = 409


class DependencyFailure(PepiError):
    """A best-effort side effect (email, audit write) failed."""

    kind = "dependency_failure"
    http_status = 502


def error_response(exc: PepiError):
    return jsonify(exc.to_dict()), exc.http_status


def internal_error(log_message: str):
    """Log the active exception and answer a generic 500."""
    current_app.logger.exception(log_message)
    return jsonify({"error": "Internal server error", "kind": "internal"}), 500
