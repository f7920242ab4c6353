"""
docguard — document management access-control service.
Flask Application Factory.

Usage:
    from docguard import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from docguard.config import config
from docguard.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StaleTransitionError,
    UnauthenticatedError,
    ValidationError,
)
from docguard.middleware.jwt_auth import init_jwt_middleware
from docguard.middleware.logging_config import configure_logging
from docguard.middleware.rate_limiter import init_rate_limits, principal_or_ip
from docguard.middleware.resource_guard import apply_resource_guard
from docguard.middleware.timing import init_request_timing
from docguard.models import db
from docguard.utils.errors import E, api_error, forbidden

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(key_func=principal_or_ip)


def _register_error_handlers(app):
    @app.errorhandler(NotFoundError)
    def _not_found_error(e):
        return api_error(E.NOT_FOUND, str(e))

    @app.errorhandler(ValidationError)
    def _validation_error(e):
        return api_error(E.VALIDATION_CONSTRAINT, str(e), details=e.details)

    @app.errorhandler(ConflictError)
    def _conflict_error(e):
        return api_error(E.CONFLICT_DUPLICATE, str(e), details={"field": e.field})

    @app.errorhandler(UnauthenticatedError)
    def _unauthenticated(e):
        return api_error(E.UNAUTHENTICATED, str(e))

    @app.errorhandler(ForbiddenError)
    def _forbidden(e):
        logger.warning(
            "Forbidden on %s: %s (%s)", request.path, e.reason, e.required,
            extra={"path": request.path, "decision": "deny", "reason": e.reason},
        )
        return forbidden(e.reason, level=e.reason == "role_level")

    @app.errorhandler(StaleTransitionError)
    def _stale_transition(e):
        return api_error(
            E.CONFLICT_STATE,
            "Document status changed, reload and retry",
            details={"expected": e.expected, "actual": e.actual},
        )

    @app.errorhandler(SQLAlchemyError)
    def _database_error(e):
        db.session.rollback()
        logger.error("Database error on %s: %s", request.path, e, exc_info=True)
        return api_error(E.DATABASE, "Database error")

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests",
                         details={"retry_after": e.description})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def _run_startup_checks(app):
    """Create tables and log authorization vocabulary drift."""
    from docguard.services.authz_vocabulary import (
        check_vocabulary_consistency,
        log_vocabulary_report,
    )

    with app.app_context():
        db.create_all()
        if app.testing:
            return
        try:
            log_vocabulary_report(check_vocabulary_consistency())
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.warning("Authorization consistency check skipped: %s", exc)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Models (register tables on db.metadata) ──────────────────────────
    from docguard.models import audit, auth, document, resource  # noqa: F401

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()],
             expose_headers=["X-Session-Token", "X-Request-ID"])
    else:
        CORS(app, expose_headers=["X-Session-Token", "X-Request-ID"])

    # ── Request middleware (order matters: timing, session, resources) ──
    init_request_timing(app)
    init_jwt_middleware(app)
    apply_resource_guard(app)
    # Limiter keys read g.principal, so its hook runs after the session hook.
    limiter.init_app(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from docguard.blueprints.access_bp import access_bp
    from docguard.blueprints.auth_bp import auth_bp
    from docguard.blueprints.documents_bp import documents_bp
    from docguard.blueprints.health_bp import health_bp
    from docguard.blueprints.rbac_admin_bp import rbac_admin_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(access_bp)
    app.register_blueprint(documents_bp)
    app.register_blueprint(rbac_admin_bp)

    _register_error_handlers(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-rbac")
    def seed_rbac_cmd():
        """Seed default permissions, capabilities, roles, resources and workflow."""
        from docguard.services.seed_service import seed_defaults
        logger.info("Seed summary: %s", seed_defaults())

    @app.cli.command("migrate-pending-review")
    def migrate_pending_review_cmd():
        """Rename the legacy PENDING_REVIEW status to IN_REVIEW."""
        from docguard.services.workflow_service import migrate_pending_review_to_in_review
        logger.info("Migration summary: %s", migrate_pending_review_to_in_review())

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    _run_startup_checks(app)

    return app
