"""
Admissions Workflow Platform
Flask Application Factory.

Usage:
    from admissions import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from admissions.config import config
from admissions.models import db
from admissions.middleware.logging_config import configure_logging
from admissions.middleware.rate_limiter import init_rate_limits
from admissions.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


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
    default_limits=[],                     # no global limit — apply per-blueprint
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
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)

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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from admissions.models import auth as _auth_models                # noqa: F401
    from admissions.models import workflow as _workflow_models        # noqa: F401
    from admissions.models import application as _application_models  # noqa: F401
    from admissions.models import side_effect as _side_effect_models  # noqa: F401
    from admissions.models import audit as _audit_models              # noqa: F401
    from admissions.models import notification as _notification_models  # noqa: F401
    from admissions.models import scheduling as _scheduling_models    # noqa: F401

    # ── Auto-create tables (safe for production — CREATE IF NOT EXISTS) ──
    if config_name != "testing":
        if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
            os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from admissions.blueprints.workflow_bp import workflow_bp
    from admissions.blueprints.workflow_admin_bp import workflow_admin_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(workflow_admin_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflow-templates")
    def seed_workflow_templates_cmd():
        """Seed default admissions workflows, roles and permissions."""
        from admissions.services.workflow_service import seed_default_templates
        count = seed_default_templates()
        db.session.commit()
        logger.info("Seeded %s new workflow templates.", count)

    @app.cli.command("run-scheduled-job")
    def run_scheduled_job_cmd():
        """Run every due scheduled job once (for cron-driven deployments)."""
        from admissions.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        for run in SchedulerService.tick():
            logger.info("Job %s: %s (%sms)", run["job_name"], run["status"], run["duration_ms"])

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Admissions Workflow Platform"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    importlib.import_module("admissions.services.scheduled_jobs")  # registers @register_job handlers
    from admissions.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)
    if app.config.get("SCHEDULER_ENABLED"):
        _SchedulerSvc.start(poll_seconds=app.config.get("SCHEDULER_POLL_SECONDS", 30))

    return app
