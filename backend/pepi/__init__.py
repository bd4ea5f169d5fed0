# backend/pepi/__init__.py
from flask import Flask, request

from .config import Config
from .errors import PepiError, error_response
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Change feed, cached views and email delivery live on app.extensions
    from .services.change_feed import ChangeFeed, install_session_hooks
    from .services.notification_service import Notifier
    from .services.view_cache import BookViewCache

    install_session_hooks()
    feed = ChangeFeed()
    view_cache = BookViewCache()
    view_cache.attach(feed)
    app.extensions["pepi_change_feed"] = feed
    app.extensions["pepi_view_cache"] = view_cache
    app.extensions["pepi_notifier"] = Notifier.from_config(app.config)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.books import books_bp
    from .routes.transactions import transactions_bp
    from .routes.fund_requests import fund_requests_bp
    from .routes.ci_payments import ci_payments_bp
    from .routes.agents import agents_bp
    from .routes.audit import audit_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(books_bp)
    app.register_blueprint(transactions_bp)
    app.register_blueprint(fund_requests_bp)
    app.register_blueprint(ci_payments_bp)
    app.register_blueprint(agents_bp)
    app.register_blueprint(audit_bp)

    @app.errorhandler(PepiError)
    def handle_domain_error(e):
        return error_response(e)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = set(app.config.get("CORS_ALLOWED_ORIGINS", ()))
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
