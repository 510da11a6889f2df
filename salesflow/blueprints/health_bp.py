"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready    simple 200 for load balancers
    GET /api/v1/health/live     database round-trip plus engine wiring
    GET /api/v1/health/db-diag  row counts of the workflow tables
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from salesflow.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")

WORKFLOW_TABLES = (
    "workflows",
    "workflow_steps",
    "missing_item_approvals",
    "workflow_step_documents",
    "notifications",
)


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness probe: 200 whenever the app is serving."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with database status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Workflow engine wiring ───────────────────────────────────────
    engine = current_app.extensions.get("workflow_engine")
    if engine is None:
        checks["workflow_engine"] = {"status": "error", "detail": "engine not registered"}
        overall = False
    else:
        checks["workflow_engine"] = {
            "status": "ok",
            "dispatcher": type(engine.dispatcher).__name__,
            "exporter": type(engine.exporter).__name__ if engine.exporter is not None else None,
            "max_retries": engine.max_retries,
        }

    checks["app"] = {
        "name": "Sales Project Workflow",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code


@health_bp.route("/db-diag", methods=["GET"])
def db_diagnostic():
    """Check that the workflow tables exist and are queryable."""
    results = {}
    for tbl in WORKFLOW_TABLES:
        try:
            row = db.session.execute(db.text(f"SELECT COUNT(*) FROM {tbl}")).scalar()
            results[tbl] = {"status": "ok", "count": row}
        except Exception as exc:
            db.session.rollback()
            results[tbl] = {"status": "error", "detail": str(exc)}
            logger.warning("db-diag: table %s not queryable: %s", tbl, exc)

    ok = all(r["status"] == "ok" for r in results.values())
    return jsonify({"status": "ok" if ok else "error", "tables": results}), 200 if ok else 503
