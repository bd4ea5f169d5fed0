# Overview: Flask API routes for agent profiles; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_agent
from ..errors import PepiError, ValidationError, error_response, internal_error
from ..services import agent_service
from ..validation import parse_bool


agents_bp = Blueprint("agents", __name__, url_prefix="/api/agents")


@agents_bp.get("")
@require_auth
@require_agent
def list_agents_route():
    try:
        include_inactive = bool(parse_bool(request.args.get("include_inactive"), "include_inactive"))
        agents = agent_service.list_agents(include_inactive=include_inactive)
        return jsonify({"agents": [a.to_dict() for a in agents]}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to list agents")


@agents_bp.get("/me")
@require_auth
def current_agent_route():
    """The caller's own profile and role (null agent when none is linked)."""
    actor = g.actor
    return jsonify({
        "user_id": actor.user_id,
        "role": actor.role,
        "agent": actor.agent.to_dict() if actor.agent else None,
    }), 200


@agents_bp.post("")
@require_auth
def create_agent_route():
    """
    Create an agent profile (admin).

    Request body:
    {
        "name": "Jane Doe",
        "email": "jdoe@example.gov",
        "role": "agent",  (agent | admin)
        "badge_number": "4411",  (optional)
        "phone": "...",  (optional)
        "user_id": "..."  (identity provider id, optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        agent = agent_service.create_agent(
            g.actor,
            name=data.get("name"),
            email=data.get("email"),
            role=data.get("role", "agent"),
            badge_number=data.get("badge_number"),
            phone=data.get("phone"),
            user_id=data.get("user_id"),
        )
        return jsonify({"agent": agent.to_dict()}), 201
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to create agent")


@agents_bp.patch("/<int:agent_id>")
@require_auth
def update_agent_route(agent_id: int):
    try:
        data = dict(request.get_json(silent=True) or {})
        if not data:
            raise ValidationError("No changes supplied")
        agent = None
        if "is_active" in data:
            agent = agent_service.set_agent_active(g.actor, agent_id, parse_bool(data.pop("is_active"), "is_active"))
        if data:
            agent = agent_service.update_agent(g.actor, agent_id, data)
        return jsonify({"agent": agent.to_dict()}), 200
    except PepiError as e:
        return error_response(e)
    except Exception:
        return internal_error("Failed to update agent")
