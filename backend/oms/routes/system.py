# backend/oms/routes/system.py
"""
Health endpoint.

Reports database reachability plus a few counters that show whether the
deployment has been bootstrapped (flask system init).
"""

import time

from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..models import User, SalesChannel, Product, ApiLog
from oms.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        details = {
            "users": db.session.query(User).count(),
            "channels": db.session.query(SalesChannel).count(),
            "products": db.session.query(Product).count(),
        }
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2), "details": details}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {"status": "unhealthy", "latency_ms": round(elapsed_ms, 2), "error": "Database error"}


def check_webhook_health() -> dict:
    """Failed webhook calls are a warning sign, not an outage."""
    try:
        failed = db.session.query(ApiLog).filter(ApiLog.success.is_(False)).count()
        total = db.session.query(ApiLog).count()
    except Exception:
        current_app.logger.exception("Webhook health check failed")
        db.session.rollback()
        return {"status": "unhealthy", "error": "Webhook log error"}

    status = "degraded" if failed and failed * 2 > total else "healthy"
    return {
        "status": status,
        "details": {
            "calls": total,
            "failed": failed,
            "signature_check": bool(current_app.config.get("WEBHOOK_SECRET")),
        },
    }


@system_bp.get("/health")
def health():
    """
    200 when healthy or degraded, 503 when any check is unhealthy.
    """
    start_time = time.time()

    checks = {
        "database": check_database_health(),
        "webhooks": check_webhook_health(),
    }
    statuses = [check["status"] for check in checks.values()]

    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }, http_status
