# backend/chowline/routes/system.py
"""
System health endpoint for load balancers and uptime checks.

The database check decides the status code. The audit export check is
informational: a missing export is raised by the security monitor, not here.
"""

import time
from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import AuditEntry
from chowline.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    started = time.perf_counter()
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "error": "Database error",
        }
    return {"status": "healthy", "latency_ms": round((time.perf_counter() - started) * 1000, 2)}


def check_audit_export() -> dict:
    if not current_app.config.get("AUDIT_EXPORT_ENABLED"):
        return {"status": "disabled"}
    try:
        last = (
            db.session.query(func.max(AuditEntry.target_id))
            .filter(AuditEntry.action == "audit_export_complete")
            .scalar()
        )
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Audit export health check failed")
        return {"status": "unknown"}
    return {"status": "ok" if last else "never_run", "last_export_date": last}


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    checks = {"database": database}
    if healthy:
        checks["audit_export"] = check_audit_export()

    body = {
        "status": "ok" if healthy else "degraded",
        "environment": current_app.config.get("APP_ENV"),
        "timestamp": to_utc_z(utcnow()),
        "checks": checks,
    }
    return jsonify(body), 200 if healthy else 503
