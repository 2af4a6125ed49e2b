"""
Agency Operations Platform
Flask Application Factory.

Usage:
    from agencyops import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from agencyops.config import config
from agencyops.core.exceptions import (
    AuthorizationError,
    ConflictError,
    DependencyFailure,
    NotFoundError,
    StaleStateError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from agencyops.middleware.identity import init_identity_middleware
from agencyops.middleware.logging_config import configure_logging
from agencyops.middleware.rate_limiter import init_rate_limits
from agencyops.middleware.timing import init_request_timing
from agencyops.models import db
from agencyops.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import engine as _sa_engine, event as _sa_event  # noqa: E402


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def _register_error_handlers(app):
    """One JSON shape and status per domain exception, for every blueprint."""

    @app.errorhandler(NotFoundError)
    def _not_found(error):
        logger.debug("Not found: %s", error)
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @app.errorhandler(ValidationError)
    def _validation(error):
        return api_error(E.VALIDATION_RULE, str(error), status=422, details=error.details)

    @app.errorhandler(ConflictError)
    def _conflict(error):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @app.errorhandler(AuthorizationError)
    def _forbidden(error):
        logger.info("Forbidden %s %s: %s", request.method, request.path, error.reason)
        return api_error(E.FORBIDDEN, AuthorizationError.public_message)

    @app.errorhandler(StaleStateError)
    def _stale(error):
        details = {"current_status": error.actual} if error.actual else None
        return api_error(E.CONFLICT_STATE, str(error), details=details)

    @app.errorhandler(TokenInvalidError)
    def _token_invalid(error):
        return api_error(E.TOKEN_INVALID, str(error))

    @app.errorhandler(TokenExpiredError)
    def _token_expired(error):
        return api_error(E.TOKEN_EXPIRED, str(error))

    @app.errorhandler(TokenAlreadyUsedError)
    def _token_used(error):
        return api_error(E.TOKEN_USED, str(error))

    @app.errorhandler(DependencyFailure)
    def _dependency(error):
        logger.error("Dependency failure (%s) on %s %s", error.dependency, request.method, request.path)
        return api_error(E.DEPENDENCY, str(error))

    @app.errorhandler(404)
    def _route_not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def _too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(429)
    def _rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiate so ProductionConfig can refuse to start without its secrets
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing, then identity (timing logs the acting role) ──────
    init_request_timing(app)
    init_identity_middleware(app)

    # ── Collaborators behind simple interfaces ───────────────────────────
    from agencyops.services.blob_store import init_blob_store
    from agencyops.services.notifier import init_notifier

    init_blob_store(app)
    init_notifier(app)

    # Attachments travel as multipart bodies
    if not app.config.get("MAX_CONTENT_LENGTH"):
        app.config["MAX_CONTENT_LENGTH"] = app.config["MAX_ATTACHMENT_BYTES"] + 1024 * 1024

    # ── Import all models so Alembic can detect them ─────────────────────
    from agencyops.models import activation as _activation_models  # noqa: F401
    from agencyops.models import audit as _audit_models            # noqa: F401
    from agencyops.models import auth as _auth_models              # noqa: F401
    from agencyops.models import client as _client_models          # noqa: F401
    from agencyops.models import onboarding as _onboarding_models  # noqa: F401
    from agencyops.models import work as _work_models              # noqa: F401

    if app.config.get("DEBUG") and app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from agencyops.blueprints.activation_bp import activation_bp
    from agencyops.blueprints.dashboard_bp import dashboard_bp
    from agencyops.blueprints.events_bp import events_bp
    from agencyops.blueprints.health_bp import health_bp
    from agencyops.blueprints.onboarding_bp import onboarding_bp
    from agencyops.blueprints.request_bp import request_bp
    from agencyops.blueprints.task_bp import task_bp

    app.register_blueprint(activation_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(events_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(onboarding_bp)
    app.register_blueprint(request_bp)
    app.register_blueprint(task_bp)

    _register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("send-overdue-digest")
    def send_overdue_digest_cmd():
        """Email every assignee the list of their overdue tasks."""
        from datetime import UTC, datetime

        from agencyops.services.dashboard_service import send_overdue_digest

        sent = send_overdue_digest(datetime.now(UTC))
        logger.info("Overdue digest sent to %d assignee(s).", len(sent))

    return app
