"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  - 200 whenever the process is serving
    GET /api/v1/health/live   - database round-trip and global workflow presence

Health routes bypass the request context middleware and rate limits.
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, select

from jobflow.models import db
from jobflow.models.workflow import Stage

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


def _check_database() -> dict:
    t0 = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except Exception as exc:
        db.session.rollback()
        logger.error("Health check: database unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}


def _check_global_workflow() -> dict:
    """An empty global set reports status "empty" without failing the probe."""
    count = db.session.execute(
        select(func.count(Stage.id)).where(Stage.tenant_id.is_(None), Stage.is_active.is_(True))
    ).scalar()
    return {"status": "ok" if count else "empty", "stages": count}


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {"database": _check_database()}
    healthy = checks["database"]["status"] == "ok"
    if healthy:
        checks["global_workflow"] = _check_global_workflow()
    checks["app"] = {
        "name": "Job Progression Platform",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }
    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
