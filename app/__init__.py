"""
Trendboard Annotation Service
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from werkzeug.exceptions import HTTPException

from app.auth import init_auth
from app.config import config
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing
from app.models import db
from app.utils.errors import E, api_error

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
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
)


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
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing, caller identity & Content-Type guard ─────────────
    init_request_timing(app)
    init_auth(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import workspace as _workspace_models     # noqa: F401
    from app.models import definition as _definition_models   # noqa: F401
    from app.models import annotation as _annotation_models   # noqa: F401
    from app.models import follow_up as _follow_up_models     # noqa: F401

    # ── Auto-create tables for local SQLite databases ────────────────────
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()
            app.logger.debug("db.create_all() completed")

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.annotation_bp import annotation_bp
    from app.blueprints.definition_bp import definition_bp
    from app.blueprints.follow_up_bp import follow_up_bp
    from app.blueprints.health_bp import health_bp
    from app.blueprints.ingest_bp import ingest_bp

    app.register_blueprint(ingest_bp)
    app.register_blueprint(definition_bp)
    app.register_blueprint(annotation_bp)
    app.register_blueprint(follow_up_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("backfill-submetric-keys")
    @click.option("--apply", is_flag=True, help="Persist changes (default: dry run)")
    def backfill_submetric_keys_cmd(apply):
        """Re-key legacy submetric definitions to their canonical keys."""
        from app.services.key_backfill import backfill_submetric_keys
        summary = backfill_submetric_keys(apply=apply)
        click.echo(
            f"mode={summary['mode']} rekeyed={summary['rekeyed']} "
            f"merged={summary['merged']} orphans={len(summary['orphans'])}"
        )

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(413)
    def too_large(e):
        return api_error(E.VALIDATION_INVALID, "Request body too large", status=413)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(
            E.VALIDATION_INVALID, "Too many requests", status=429,
            details={"retry_after": e.description},
        )

    @app.errorhandler(Exception)
    def server_error(e):
        if isinstance(e, HTTPException):
            return api_error(E.INTERNAL, e.description or e.name, status=e.code)
        db.session.rollback()
        logger.exception("Unhandled error endpoint=%s", request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
