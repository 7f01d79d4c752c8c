"""
Job Progression Platform
Flask Application Factory.

Usage:
    from jobflow import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from jobflow.config import config
from jobflow.middleware.logging_config import configure_logging
from jobflow.middleware.rate_limiter import init_rate_limits
from jobflow.middleware.request_context import init_request_context
from jobflow.middleware.timing import init_request_timing
from jobflow.models import db

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
    default_limits=[],                     # no global limit - apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
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
    # Instantiated so ProductionConfig can refuse to start without its env vars
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

    # ── Request timing & caller context ──────────────────────────────────
    init_request_timing(app)
    init_request_context(app)

    # ── Request guards (body size + Content-Type) ────────────────────────
    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so create_all / Alembic see them ───────────────
    from jobflow.models import auth as _auth_models               # noqa: F401
    from jobflow.models import job as _job_models                 # noqa: F401
    from jobflow.models import workflow as _workflow_models       # noqa: F401
    from jobflow.models import progression as _progression_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from jobflow.blueprints.health_bp import health_bp
    from jobflow.blueprints.job_task_bp import job_task_bp
    from jobflow.blueprints.progression_bp import progression_bp
    from jobflow.blueprints.reporting_bp import reporting_bp
    from jobflow.blueprints.stage_config_bp import stage_config_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(progression_bp)
    app.register_blueprint(stage_config_bp)
    app.register_blueprint(job_task_bp)
    app.register_blueprint(reporting_bp)

    init_rate_limits(app, limiter)

    _register_cli(app)
    _register_http_errors(app)

    return app


# ── CLI commands ─────────────────────────────────────────────────────────
def _register_cli(app):
    @app.cli.command("seed-default-stages")
    def seed_default_stages_cmd():
        """Seed the default 12-stage global workflow (skipped if already present)."""
        from jobflow.services.default_workflow import seed_default_stages
        count = seed_default_stages()
        logger.info("Seeded %s global stages.", count)

    @app.cli.command("sla-report")
    @click.option("--tenant-id", type=int, default=None, help="Limit the scan to one tenant.")
    def sla_report_cmd(tenant_id):
        """Log every open task past its SLA, most overdue first."""
        from jobflow.services.stage_reporting import check_sla_violations
        violations = check_sla_violations(tenant_id)
        for v in violations:
            logger.warning(
                "SLA %s: task %s (%s) on job %s is %.1fh past its %sh SLA",
                v["severity"], v["task_id"], v["title"], v["job_id"], v["hours_overdue"], v["sla_hours"],
                extra={"tenant_id": v["tenant_id"], "job_id": v["job_id"]},
            )
        logger.info("SLA scan finished: %d violation(s)", len(violations))


# ── App-level HTTP errors (outside any blueprint) ────────────────────────
def _register_http_errors(app):
    messages = {
        404: "Not found",
        405: "Method not allowed",
        413: "Request body too large",
        415: "Content-Type must be application/json",
    }

    def _simple(e):
        body = {"error": messages[e.code]}
        if e.code == 404:
            body["path"] = request.path
        return body, e.code

    for code in messages:
        app.register_error_handler(code, _simple)

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Rate limit exceeded", "detail": str(e.description)}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500
