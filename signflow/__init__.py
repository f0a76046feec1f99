"""
SignFlow — Document Signature Workflow
Flask Application Factory.

Usage:
    from signflow import create_app
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

from signflow.config import config
from signflow.integrations.signing_gateway import signing_gateway
from signflow.middleware.logging_config import configure_logging
from signflow.middleware.rate_limiter import init_rate_limits
from signflow.middleware.timing import init_request_timing
from signflow.models import db
from signflow.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine  # noqa: E402


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
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def _import_models():
    # Registers every table on db.metadata (create_all / Alembic autogenerate).
    from signflow.models import document, provider_event, scheduling, signature, user  # noqa: F401


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
    # Instantiated so ProductionConfig can refuse to start without its secrets.
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    _import_models()
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Signing provider gateway (one configured client per process) ─────
    signing_gateway.configure(app)

    # ── Service exception → JSON envelope ────────────────────────────────
    register_error_handlers(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from signflow.blueprints.admin_bp import admin_bp
    from signflow.blueprints.documents_bp import documents_bp
    from signflow.blueprints.provider_bp import provider_bp
    from signflow.blueprints.signatures_bp import signatures_bp

    app.register_blueprint(documents_bp)
    app.register_blueprint(signatures_bp)
    app.register_blueprint(provider_bp)
    app.register_blueprint(admin_bp)

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "SignFlow"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        if request.path.startswith("/api/"):
            return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})
        return {"error": "Not found"}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        db.session.rollback()
        return api_error(E.INTERNAL, "Internal server error")

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run one scheduled job (for cron). Disabled jobs are skipped."""
        from signflow.services.scheduler_service import SchedulerService
        result = SchedulerService.run_job(job_name)
        click.echo(f"{job_name}: {result['status']}")
        if result["status"] in ("error", "failed"):
            raise SystemExit(1)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Schema (dev/test) and scheduler ──────────────────────────────────
    from signflow.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)
    if app.config.get("AUTO_CREATE_SCHEMA", False):
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()
            SchedulerService.ensure_jobs_registered()

    return app
