# Overview: Agent profile management and recipient lookups.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, NotFound, ValidationError
from ..extensions import db
from ..models import Agent
from ..models.agents import ROLE_ADMIN, ROLE_AGENT, VALID_ROLES
from ..validation import optional_text, require_choice, require_text
from .audit_service import AuditAction, record_for
from .permission_service import Actor, require_admin

UPDATABLE_FIELDS = {"name", "badge_number", "email", "phone", "role", "user_id"}


def get_agent(agent_id: int) -> Agent:
    agent = db.session.get(Agent, agent_id)
    if not agent:
        raise NotFound(f"Agent {agent_id} not found")
    return agent


def list_agents(include_inactive: bool = False) -> list[Agent]:
    query = db.session.query(Agent)
    if not include_inactive:
        query = query.filter(Agent.is_active.is_(True))
    return query.order_by(Agent.name.asc()).all()


def _normalize_email(value) -> str | None:
    email = optional_text(value, "email")
    if email is None:
        return None
    if "@" not in email:
        raise ValidationError("email must be a valid address")
    return email.lower()


def _commit_unique(action_label: str) -> None:
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError(f"Cannot {action_label}: email or user id already belongs to another agent") from exc


def create_agent(
    actor: Actor | None,
    name: str,
    email: str | None = None,
    role: str = ROLE_AGENT,
    badge_number: str | None = None,
    phone: str | None = None,
    user_id: str | None = None,
) -> Agent:
    """
    Create an agent profile (admin only).

    Raises:
        Unauthorized: Actor is not an admin
        ValidationError: Missing name, bad email or unknown role
        ConflictError: Email or user id already taken
    """
    require_admin(actor, "agent")
    agent = Agent(
        name=require_text(name, "name"),
        email=_normalize_email(email),
        role=require_choice(role, "role", VALID_ROLES),
        badge_number=optional_text(badge_number, "badge_number"),
        phone=optional_text(phone, "phone"),
        user_id=optional_text(user_id, "user_id"),
        is_active=True,
    )
    db.session.add(agent)
    _commit_unique("create agent")
    record_for(actor, AuditAction.CREATE, "agent", agent.id, {"name": agent.name, "role": agent.role})
    return agent


def update_agent(actor: Actor | None, agent_id: int, changes: dict) -> Agent:
    require_admin(actor, "agent")
    agent = get_agent(agent_id)

    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown agent fields: {', '.join(sorted(unknown))}")

    before = {key: getattr(agent, key) for key in changes}
    for key, value in changes.items():
        if key == "name":
            value = require_text(value, "name")
        elif key == "email":
            value = _normalize_email(value)
        elif key == "role":
            value = require_choice(value, "role", VALID_ROLES)
        else:
            value = optional_text(value, key)
        setattr(agent, key, value)

    _commit_unique("update agent")
    record_for(actor, AuditAction.UPDATE, "agent", agent.id, {
        "before": before,
        "after": {key: getattr(agent, key) for key in changes},
    })
    return agent


def set_agent_active(actor: Actor | None, agent_id: int, is_active: bool) -> Agent:
    require_admin(actor, "agent")
    if is_active is None:
        raise ValidationError("is_active is required")
    agent = get_agent(agent_id)
    if actor.agent_id == agent.id and not is_active:
        raise ValidationError("You cannot deactivate your own profile")
    agent.is_active = bool(is_active)
    db.session.commit()
    record_for(actor, AuditAction.UPDATE, "agent", agent.id, {"is_active": agent.is_active})
    return agent


def agent_email(agent_id: int | None) -> str | None:
    """Email of an active agent, or None."""
    if agent_id is None:
        return None
    agent = db.session.get(Agent, agent_id)
    if not agent or not agent.is_active or not agent.email:
        return None
    return agent.email


def admin_emails() -> list[str]:
    rows = (
        db.session.query(Agent.email)
        .filter(Agent.role == ROLE_ADMIN, Agent.is_active.is_(True), Agent.email.isnot(None))
        .order_by(Agent.id.asc())
        .all()
    )
    return [email for (email,) in rows]
