# Overview: Role checks for every admin-gated operation.

"""
Capability Checks

WHY: Role strings compared ad hoc in every handler drift apart. Every gated
operation calls require_role() instead, which answers the same way everywhere
and leaves an audit trail for denials.

DESIGN PRINCIPLES:
- Fail closed: no agent row, inactive agent, or unknown role means no role.
- admin implies agent: anything an agent may do, an admin may do.
- Denials are logged (permission_denied); grants are not.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import Unauthorized
from ..models import Agent
from ..models.agents import ROLE_ADMIN, ROLE_AGENT
from .audit_service import AuditAction, record_for

ROLE_RANK = {
    ROLE_AGENT: 1,
    ROLE_ADMIN: 2,
}


@dataclass
class Actor:
    """
    The caller of a service operation.

    user_id is the identity provider's subject; agent is the matching agents
    row, if any. ip_address is recorded on audit entries.
    """
    user_id: str | None
    agent: Agent | None = None
    ip_address: str | None = None

    @property
    def role(self) -> str | None:
        if self.agent is None or not self.agent.is_active:
            return None
        return self.agent.role

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def agent_id(self) -> int | None:
        return self.agent.id if self.agent is not None else None


@dataclass(frozen=True)
class RoleCheck:
    allowed: bool
    role: str | None
    required: str
    reason: str | None = None


def check_role(actor: Actor | None, required: str) -> RoleCheck:
    """Pure check; never raises, never logs."""
    if required not in ROLE_RANK:
        raise ValueError(f"Unknown role: {required}")
    if actor is None or actor.user_id is None:
        return RoleCheck(False, None, required, "Authentication required")
    role = actor.role
    if role is None:
        return RoleCheck(False, None, required, "No active agent profile for this user")
    if ROLE_RANK.get(role, 0) < ROLE_RANK[required]:
        return RoleCheck(False, role, required, f"Only {required}s can perform this action")
    return RoleCheck(True, role, required)


def require_role(actor: Actor | None, required: str, resource: str | None = None) -> RoleCheck:
    """
    Raise Unauthorized unless actor holds `required` (or better).

    Call before any write in the operation: the denial audit entry commits
    the session.
    """
    check = check_role(actor, required)
    if not check.allowed:
        record_for(
            actor,
            AuditAction.PERMISSION_DENIED,
            entity_type=resource,
            details={"required_role": required, "role": check.role, "reason": check.reason},
        )
        raise Unauthorized(check.reason)
    return check


def require_admin(actor: Actor | None, resource: str | None = None) -> RoleCheck:
    return require_role(actor, ROLE_ADMIN, resource)


def can_modify_transaction(actor: Actor | None, tx) -> bool:
    """Owner agent or admin."""
    if actor is None or actor.role is None:
        return False
    if actor.is_admin:
        return True
    return tx.agent_id is not None and tx.agent_id == actor.agent_id
