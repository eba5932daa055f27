"""
BlueCrew work progress & approval engine
Flask Application Factory.

Usage:
    from bluecrew import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from bluecrew.config import config
from bluecrew.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PaymentRequiredError,
    PersistenceFailure,
    ValidationError,
)
from bluecrew.middleware.logging_config import configure_logging
from bluecrew.models import db
from bluecrew.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _register_error_handlers(app):
    """Map core exceptions to the standard JSON error body."""

    @app.errorhandler(ValidationError)
    def _validation(e):
        missing_only = bool(e.details) and all(v == "required" for v in e.details.values())
        code = E.VALIDATION_REQUIRED if missing_only else E.VALIDATION_INVALID
        return api_error(code, str(e), details=e.details or None)

    @app.errorhandler(InvalidTransitionError)
    def _transition(e):
        return api_error(E.CONFLICT_STATE, str(e), details={
            "entity": e.entity,
            "action": e.action,
            "current_state": e.current_state,
        })

    @app.errorhandler(NotFoundError)
    def _not_found(e):
        return api_error(E.NOT_FOUND, str(e), details={"retryable": e.retryable})

    @app.errorhandler(ConflictError)
    def _conflict(e):
        return api_error(E.CONFLICT_DUPLICATE, str(e), details={"field": e.field})

    @app.errorhandler(PaymentRequiredError)
    def _payment_required(e):
        return api_error(E.PAYMENT_REQUIRED, str(e), details={"invoice_status": e.invoice_status})

    @app.errorhandler(PersistenceFailure)
    def _persistence(e):
        logger.error("Persistence failure: %s", e, extra={"event_type": e.command.kind})
        return api_error(E.PERSISTENCE, str(e), details={
            "command": e.command.to_dict() if hasattr(e.command, "to_dict") else None,
            "completed": len(e.completed),
        })

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(500)
    def server_error(e):
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
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request guard (Content-Type on mutating API calls) ───────────────
    @app.before_request
    def _guard_request():
        from flask import abort
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so their tables register ───────────────────────
    from bluecrew.models import audit as _audit_models        # noqa: F401
    from bluecrew.models import project as _project_models    # noqa: F401
    from bluecrew.models import proposal as _proposal_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
        if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
            os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]) or ".", exist_ok=True)
        db.create_all()
        app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from bluecrew.blueprints.project_bp import project_bp
    from bluecrew.blueprints.proposal_bp import proposal_bp

    app.register_blueprint(project_bp)
    app.register_blueprint(proposal_bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "BlueCrew"}

    _register_error_handlers(app)

    return app
