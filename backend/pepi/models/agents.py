from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

ROLE_AGENT = "agent"
ROLE_ADMIN = "admin"
VALID_ROLES = {ROLE_AGENT, ROLE_ADMIN}


class Agent(db.Model):
    """
    Task-force member and system user.

    The identity provider owns credentials; an agent row links the provider's
    user id (``user_id``) to a role. Role "admin" reviews transactions and
    manages books and agents; role "agent" works on their own transactions.
    """
    __tablename__ = "agents"
    __table_args__ = (
        db.UniqueConstraint("email", name="uq_agents_email"),
        db.UniqueConstraint("user_id", name="uq_agents_user_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # External identity reference (provider "sub" claim). Null until the agent signs up.
    user_id = db.Column(db.String(64), nullable=True, index=True)

    name = db.Column(db.String(120), nullable=False)
    badge_number = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    role = db.Column(db.String(16), nullable=False, default=ROLE_AGENT)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def __repr__(self) -> str:
        return f"<Agent id={self.id} name={self.name!r} role={self.role}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "badge_number": self.badge_number,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
