"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — detailed health (database, scheduler, notification dispatcher)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from compliance_engine.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Scheduler ────────────────────────────────────────────────────
    scheduler = current_app.extensions.get("scheduler")
    thread = getattr(scheduler, "_thread", None)
    if not current_app.config.get("SCHEDULER_ENABLED"):
        checks["scheduler"] = {"status": "disabled"}
    elif thread is not None and thread.is_alive():
        checks["scheduler"] = {"status": "ok"}
    else:
        # The tick is not critical for serving requests
        checks["scheduler"] = {"status": "stopped"}

    # ── Notification dispatcher ──────────────────────────────────────
    dispatcher = current_app.extensions.get("notification_dispatcher")
    if dispatcher is None:
        checks["notifications"] = {"status": "missing"}
    else:
        checks["notifications"] = {"status": "ok", "dispatcher": type(dispatcher).__name__}

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "Compliance Obligation & Review Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
