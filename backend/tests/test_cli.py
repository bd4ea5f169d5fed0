"""
CLI command tests: bootstrap admin, book creation and the guarded reset.
"""

from pepi.models import Agent, PepiBook
from pepi.extensions import db


class TestAgentCommands:

    def test_bootstrap_admin_without_actor(self, app):
        runner = app.test_cli_runner()
        result = runner.invoke(args=[
            "agents", "create", "--name", "Commander Reyes", "--email", "Admin@PEPI.test", "--role", "admin",
        ])

        assert result.exit_code == 0, result.output
        assert "bootstrap admin" in result.output
        assert db.session.query(Agent).filter_by(email="admin@pepi.test").one().role == "admin"

    def test_second_agent_needs_actor(self, app, admin):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["agents", "create", "--name", "Agent Diaz", "--email", "diaz@pepi.test"])

        assert result.exit_code != 0
        assert "--as" in result.output


class TestBookCommands:

    def test_create_and_list(self, app, admin):
        runner = app.test_cli_runner()
        result = runner.invoke(args=[
            "books", "create", "--year", "2025", "--starting-amount-cents", "100000",
            "--activate", "--as", "admin@pepi.test",
        ])

        assert result.exit_code == 0, result.output
        assert db.session.query(PepiBook).filter_by(year=2025).one().is_active

        listing = runner.invoke(args=["books", "list"])
        assert "$1,000.00" in listing.output
        assert "ACTIVE" in listing.output

    def test_reset_with_wrong_phrase_fails(self, app, admin, active_book):
        runner = app.test_cli_runner()
        result = runner.invoke(args=[
            "books", "reset", str(active_book.id), "--confirm", "yes", "--as", "admin@pepi.test",
        ])

        assert result.exit_code != 0
        assert "validation_error" in result.output
