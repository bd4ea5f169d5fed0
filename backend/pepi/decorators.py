# Overview: Request decorators that attach the verified actor to flask.g.

from functools import wraps
from flask import request, g

from .errors import PepiError, error_response
from .models.agents import ROLE_ADMIN, ROLE_AGENT
from .services import identity_service, permission_service
from .services.audit_service import client_ip


def _bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


def require_auth(f):
    """
    Verify the bearer token and set g.actor.

    Returns 401 if the header is missing or the token does not verify. A valid
    token without an agent profile still gets through; role checks decide.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            g.actor = identity_service.resolve_actor(_bearer_token(), client_ip())
        except PepiError as e:
            return error_response(e)
        return f(*args, **kwargs)

    return decorated_function


def require_role(role: str):
    """Require @require_auth first; answers 403 via permission_service.require_role."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                permission_service.require_role(g.get("actor"), role, resource=request.path)
            except PepiError as e:
                return error_response(e)
            return f(*args, **kwargs)

        return decorated_function
    return decorator


require_admin = require_role(ROLE_ADMIN)
require_agent = require_role(ROLE_AGENT)
