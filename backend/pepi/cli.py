# Overview: Flask CLI command groups for bootstrap, book lifecycle and agent management.

# backend/pepi/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent). Use `flask db upgrade` once migrations exist.
#
# Agents:
# - python -m flask agents list [--all]
# - python -m flask agents create --name "Jane Doe" --email jdoe@example.gov --role admin [--as admin@example.gov]
#   The very first admin can be created without --as.
#
# Books (every write needs --as <admin email>):
# - python -m flask books list
# - python -m flask books create --year 2025 --starting-amount-cents 1000000 [--activate] --as admin@example.gov
# - python -m flask books activate 2 --as admin@example.gov
# - python -m flask books close 2 --as admin@example.gov
# - python -m flask books reset 2 --confirm "RESET PEPI BOOK" --as admin@example.gov
#   Irreversible: deletes the active book's transactions, CI payments and fund requests.

import click
from flask.cli import with_appcontext

from .errors import PepiError
from .extensions import db
from .models import Agent
from .models.agents import ROLE_ADMIN, VALID_ROLES
from .services import agent_service, book_service, ledger_service
from .services.identity_service import actor_for_email
from .services.notification_service import format_currency


def _actor(email: str | None):
    if not email:
        raise click.UsageError("--as <admin email> is required")
    try:
        return actor_for_email(email, ip_address="cli")
    except PepiError as e:
        raise click.ClickException(e.message)


def _run(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except PepiError as e:
        raise click.ClickException(f"[{e.kind}] {e.message}")


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@click.group('agents')
def agents_group():
    """Agent profile management."""


@agents_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive agents')
@with_appcontext
def list_agents(include_inactive):
    agents = agent_service.list_agents(include_inactive=include_inactive)
    if not agents:
        click.echo("No agents found.")
        return
    for agent in agents:
        status = "active" if agent.is_active else "inactive"
        click.echo(f"{agent.id:>4}  {agent.name:<30} {agent.role:<6} {agent.email or '-':<35} {status}")


@agents_group.command('create')
@click.option('--name', prompt=True)
@click.option('--email', prompt=True)
@click.option('--role', type=click.Choice(sorted(VALID_ROLES)), default='agent', show_default=True)
@click.option('--badge-number', default=None)
@click.option('--user-id', default=None, help='Identity provider user id')
@click.option('--as', 'as_email', default=None, help='Email of the admin performing the action')
@with_appcontext
def create_agent(name, email, role, badge_number, user_id, as_email):
    """
    Create an agent profile.

    Bootstrap: while no admin exists, the first admin may be created without --as.
    """
    has_admin = db.session.query(Agent).filter_by(role=ROLE_ADMIN, is_active=True).first() is not None
    if not has_admin and role == ROLE_ADMIN and not as_email:
        agent = Agent(name=name, email=email.strip().lower(), role=ROLE_ADMIN, badge_number=badge_number,
                      user_id=user_id, is_active=True)
        db.session.add(agent)
        db.session.commit()
        click.echo(f"PASS Created bootstrap admin {agent.name} (ID: {agent.id})")
        return

    agent = _run(agent_service.create_agent, _actor(as_email), name=name, email=email, role=role,
                 badge_number=badge_number, user_id=user_id)
    click.echo(f"PASS Created agent {agent.name} (ID: {agent.id}, role: {agent.role})")


@click.group('books')
def books_group():
    """PEPI book lifecycle."""


@books_group.command('list')
@with_appcontext
def list_books():
    books = book_service.list_books()
    if not books:
        click.echo("No PEPI books found.")
        return
    for book in books:
        flags = []
        if book.is_active:
            flags.append("ACTIVE")
        if book.is_closed:
            flags.append("CLOSED")
        if book.is_closed:
            balance = book.closing_balance_cents
        else:
            balance = ledger_service.get_book_balance(book)
        click.echo(
            f"{book.id:>4}  {book.year}  start {format_currency(book.starting_amount_cents):>14}  "
            f"balance {format_currency(balance):>14}  {' '.join(flags)}"
        )


@books_group.command('create')
@click.option('--year', type=int, required=True)
@click.option('--starting-amount-cents', type=int, required=True)
@click.option('--activate', is_flag=True, help='Make the new book the active book')
@click.option('--as', 'as_email', default=None, help='Email of the admin performing the action')
@with_appcontext
def create_book(year, starting_amount_cents, activate, as_email):
    book = _run(book_service.create_book, _actor(as_email), year, starting_amount_cents, activate=activate)
    click.echo(f"PASS Created PEPI book {book.year} (ID: {book.id}){' [ACTIVE]' if book.is_active else ''}")


@books_group.command('activate')
@click.argument('book_id', type=int)
@click.option('--as', 'as_email', default=None)
@with_appcontext
def activate_book(book_id, as_email):
    book = _run(book_service.activate_book, _actor(as_email), book_id)
    click.echo(f"PASS PEPI book {book.year} is now active")


@books_group.command('close')
@click.argument('book_id', type=int)
@click.option('--as', 'as_email', default=None)
@with_appcontext
def close_book(book_id, as_email):
    book = _run(book_service.close_book, _actor(as_email), book_id)
    click.echo(f"PASS PEPI book {book.year} closed with balance {format_currency(book.closing_balance_cents)}")


@books_group.command('reset')
@click.argument('book_id', type=int)
@click.option('--confirm', 'confirmation', required=True, help='The reset confirmation phrase')
@click.option('--as', 'as_email', default=None)
@with_appcontext
def reset_book(book_id, confirmation, as_email):
    """Delete all transactions, CI payments and fund requests of the active book."""
    deleted = _run(book_service.reset_active_book, _actor(as_email), book_id, confirmation)
    summary = ", ".join(f"{count} {table}" for table, count in deleted.items())
    click.echo(f"PASS Reset PEPI book {book_id}: deleted {summary}")


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(agents_group)
    app.cli.add_command(books_group)
