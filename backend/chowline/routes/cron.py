# Overview: Flask API routes for scheduled jobs; authenticated by the scheduler secret.

# backend/chowline/routes/cron.py
"""
Scheduler endpoints.

SECURITY: Authorization: Bearer <CRON_SECRET>. User session tokens are not
accepted here, and no user role grants access. A wrong or missing secret
gets a bare 401.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import ChowlineError
from ..services import audit_export_service, scheduler_service
from ..validation import parse_date_field
from ..decorators import error_response, require_scheduler

cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")


@cron_bp.post("/cancel-stale")
@require_scheduler
def cancel_stale_route():
    """Cancel orders left in awaiting_payment past STALE_ORDER_MINUTES."""
    try:
        result = scheduler_service.cancel_stale_orders(g.scheduler_capability)
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Stale order sweep failed")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"success": True, **result}), 200


@cron_bp.post("/export-audit")
@require_scheduler
def export_audit_route():
    """
    Archive one day of audit entries to write-once storage.

    Body (optional): {"date": "YYYY-MM-DD"}; defaults to yesterday (UTC).
    """
    payload = request.get_json(silent=True) or {}

    try:
        export_date = None
        if payload.get("date") is not None:
            export_date = parse_date_field(payload.get("date"), "date")
        result = audit_export_service.export_daily_audit(
            g.scheduler_capability,
            export_date=export_date,
        )
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Audit export failed")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"success": True, **result}), 200


@cron_bp.post("/security-monitor")
@require_scheduler
def security_monitor_route():
    try:
        result = scheduler_service.run_security_monitor(g.scheduler_capability)
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Security monitor failed")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"success": True, **result}), 200
