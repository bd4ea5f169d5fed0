# Overview: Maps external identity tokens to actors; never issues credentials.

"""
Identity Resolution

The identity provider signs a JWT whose "sub" claim is the user id. We verify
the signature and audience, then look the subject up in agents.user_id to find
the caller's role. Password handling, sessions and token refresh all live with
the provider.
"""

from __future__ import annotations

import logging

from flask import current_app
from jose import JWTError, jwt

from ..errors import NotFound, Unauthenticated
from ..extensions import db
from ..models import Agent
from .audit_service import AuditAction, record_for
from .permission_service import Actor

logger = logging.getLogger(__name__)


def decode_token(token: str) -> dict:
    secret = current_app.config.get("IDENTITY_JWT_SECRET")
    if not secret:
        logger.error("IDENTITY_JWT_SECRET is not configured; rejecting all tokens")
        raise Unauthenticated("Identity verification is not configured")
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[current_app.config.get("IDENTITY_JWT_ALGORITHM", "HS256")],
            audience=current_app.config.get("IDENTITY_JWT_AUDIENCE") or None,
        )
    except JWTError as exc:
        raise Unauthenticated("Invalid or expired token") from exc


def actor_for_user(user_id: str, ip_address: str | None = None) -> Actor:
    agent = db.session.query(Agent).filter_by(user_id=user_id).first()
    return Actor(user_id=user_id, agent=agent, ip_address=ip_address)


def resolve_actor(token: str | None, ip_address: str | None = None) -> Actor:
    """
    Verify a bearer token and build the Actor.

    A valid token whose user has no agent row still yields an Actor; it just
    has no role, so every role check denies it.

    Raises:
        Unauthenticated: Missing, malformed, expired or unverifiable token
    """
    if not token:
        raise Unauthenticated("Authentication required")
    claims = decode_token(token)
    subject = claims.get("sub")
    if not subject:
        raise Unauthenticated("Token has no subject")
    return actor_for_user(str(subject), ip_address)


def actor_for_email(email: str, ip_address: str | None = None) -> Actor:
    """CLI helper: act as the agent with this email."""
    agent = db.session.query(Agent).filter(db.func.lower(Agent.email) == email.strip().lower()).first()
    if not agent:
        raise NotFound(f"No agent with email {email}")
    return Actor(user_id=agent.user_id or f"agent:{agent.id}", agent=agent, ip_address=ip_address)


def record_login(actor: Actor) -> None:
    record_for(actor, AuditAction.LOGIN, entity_type="agent", entity_id=actor.agent_id,
               details={"role": actor.role})
