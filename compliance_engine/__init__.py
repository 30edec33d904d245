"""
Compliance Obligation & Review Engine
Flask Application Factory.

Usage:
    from compliance_engine import create_app
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

from compliance_engine.auth import init_auth
from compliance_engine.config import config
from compliance_engine.integrations import init_integrations
from compliance_engine.middleware.logging_config import configure_logging
from compliance_engine.middleware.rate_limiter import init_rate_limits
from compliance_engine.middleware.timing import init_request_timing
from compliance_engine.models import db
from compliance_engine.utils.errors import register_error_handlers

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
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),
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
    app.config.from_object(config[config_name])

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

    # ── Authentication & actor resolution ────────────────────────────────
    init_auth(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length) ────────────────────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        from flask import abort, request as _req
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and _req.content_length and _req.content_length > max_len:
            abort(413, description="Request body too large")

    # ── Document store & notification dispatcher ─────────────────────────
    init_integrations(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from compliance_engine.models import catalog as _catalog_models        # noqa: F401
    from compliance_engine.models import rules as _rules_models            # noqa: F401
    from compliance_engine.models import workflow as _workflow_models      # noqa: F401
    from compliance_engine.models import obligation as _obligation_models  # noqa: F401
    from compliance_engine.models import review as _review_models          # noqa: F401
    from compliance_engine.models import scheduling as _scheduling_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from compliance_engine.blueprints.admin_bp import admin_bp
    from compliance_engine.blueprints.dashboard_bp import dashboard_bp
    from compliance_engine.blueprints.health_bp import health_bp
    from compliance_engine.blueprints.obligation_bp import obligation_bp
    from compliance_engine.blueprints.review_bp import review_bp
    from compliance_engine.blueprints.rules_bp import rules_bp
    from compliance_engine.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(rules_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(obligation_bp)
    app.register_blueprint(review_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(admin_bp)

    # ── Error handlers (domain exceptions → JSON envelope) ───────────────
    register_error_handlers(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-catalog")
    def seed_catalog_cmd():
        """Seed the representative compliance service catalog."""
        from compliance_engine.services.catalog_seed import seed_catalog
        totals = seed_catalog()
        logger.info("Seeded catalog: %s", totals)

    @app.cli.command("run-tick")
    def run_tick_cmd():
        """Run every registered engine job once (materialize, remind, SLA watch)."""
        from compliance_engine.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        for name in ("obligation_materializer", "reminder_dispatch", "sla_watch"):
            result = SchedulerService.run_job(name)
            logger.info("Job %s: %s", name, result.get("status"),
                        extra={"job_name": name, "duration_ms": result.get("duration_ms")})

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    importlib.import_module("compliance_engine.services.scheduled_jobs")  # registers @register_job handlers
    from compliance_engine.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    return app
