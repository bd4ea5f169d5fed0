"""
Pytest fixtures for PEPI backend tests.

Every test gets its own app on an in-memory SQLite database, agents with
known identity-provider ids, and an email transport that records messages
instead of calling Resend.
"""

import pytest
from jose import jwt

from pepi import create_app
from pepi.errors import DependencyFailure
from pepi.extensions import db
from pepi.models import Agent
from pepi.services import book_service
from pepi.services.notification_service import Notifier
from pepi.services.permission_service import Actor

JWT_SECRET = "test-secret"


class RecordingTransport:
    """Stands in for ResendTransport; set fail=True to simulate an outage."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, message):
        if self.fail:
            raise DependencyFailure("Email provider unreachable: simulated outage")
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


@pytest.fixture(scope='function')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'IDENTITY_JWT_SECRET': JWT_SECRET,
        'EMAIL_DELIVERY': 'sync',
        'RESEND_API_KEY': '',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def outbox(app):
    transport = RecordingTransport()
    app.extensions["pepi_notifier"] = Notifier(transport)
    return transport


def _make_agent(name, email, role, user_id):
    agent = Agent(name=name, email=email, role=role, user_id=user_id, badge_number=None, is_active=True)
    db.session.add(agent)
    db.session.commit()
    return agent


@pytest.fixture(scope='function')
def admin(app):
    return _make_agent("Commander Reyes", "admin@pepi.test", "admin", "admin-uid")


@pytest.fixture(scope='function')
def agent(app):
    return _make_agent("Agent Brooks", "brooks@pepi.test", "agent", "agent-uid")


@pytest.fixture(scope='function')
def other_agent(app):
    return _make_agent("Agent Kim", "kim@pepi.test", "agent", "other-uid")


@pytest.fixture(scope='function')
def admin_actor(admin):
    return Actor(user_id="admin-uid", agent=admin, ip_address="127.0.0.1")


@pytest.fixture(scope='function')
def agent_actor(agent):
    return Actor(user_id="agent-uid", agent=agent, ip_address="127.0.0.1")


@pytest.fixture(scope='function')
def other_actor(other_agent):
    return Actor(user_id="other-uid", agent=other_agent, ip_address="127.0.0.1")


@pytest.fixture(scope='function')
def active_book(admin_actor):
    """2025 book, active, starting at $1,000.00."""
    return book_service.create_book(admin_actor, 2025, 100000, activate=True)


def token_for(user_id):
    return jwt.encode({"sub": user_id, "aud": "authenticated"}, JWT_SECRET, algorithm="HS256")


def auth_headers(user_id):
    return {"Authorization": f"Bearer {token_for(user_id)}"}


@pytest.fixture(scope='function')
def admin_headers(admin):
    return auth_headers("admin-uid")


@pytest.fixture(scope='function')
def agent_headers(agent):
    return auth_headers("agent-uid")
