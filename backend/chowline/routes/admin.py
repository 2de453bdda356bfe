# Overview: Flask API routes for platform administrators; parses input and returns JSON responses.

# backend/chowline/routes/admin.py
"""
Administrative routes.

SECURITY: Every route requires the admin role, re-read from the identity
store on each request. Mutations that move money or history are audited
by the service layer in the same transaction.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import ChowlineError, ValidationError
from ..models import Restaurant
from ..models.identity import ROLE_ADMIN, ROLE_CUSTOMER
from ..services import (
    application_service,
    audit_service,
    auth_service,
    catalog_service,
    order_service,
    order_state_service,
    session_service,
    settlement_service,
)
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    coerce_int,
    enforce_rules_restaurant,
    optional_text,
    parse_commission_rate,
    parse_date_field,
)
from ..decorators import client_ip, error_response, require_auth, require_role
from .restaurant import apply_status_change
from chowline.time_utils import parse_iso_datetime

ADMIN_RESTAURANT_POLICY = ModelValidationPolicy(
    writable_fields={"name", "phone", "address", "is_active", "is_open", "delivery_fee"},
    required_on_create={"name"},
)

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _optional_int_arg(name: str) -> int | None:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return coerce_int(raw, name)


# -------------------------
# Orders
# -------------------------

@admin_bp.get("/orders")
@require_auth
@require_role(ROLE_ADMIN)
def list_orders_route():
    page = request.args.get("page", default=1, type=int)
    limit = request.args.get("limit", default=20, type=int)

    try:
        orders, total = order_service.list_orders(
            status=request.args.get("status"),
            restaurant_id=_optional_int_arg("restaurant_id"),
            page=page,
            limit=limit,
        )
    except ChowlineError as e:
        return error_response(e)

    return jsonify({
        "orders": [o.to_dict() for o in orders],
        "total": total,
        "page": page,
        "limit": limit,
    }), 200


@admin_bp.get("/orders/<int:order_id>")
@require_auth
@require_role(ROLE_ADMIN)
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
    except ChowlineError as e:
        return error_response(e)
    return jsonify({"order": order.to_dict(include_items=True)}), 200


@admin_bp.patch("/orders/<int:order_id>/status")
@require_auth
@require_role(ROLE_ADMIN)
def update_order_status_route(order_id: int):
    return apply_status_change(order_id)


@admin_bp.post("/orders/<int:order_id>/confirm-payment")
@require_auth
@require_role(ROLE_ADMIN)
def confirm_payment_route(order_id: int):
    """
    Record that payment for an order was received out of band.

    Body: {"payment_reference": "..."} (optional)
    """
    payload = request.get_json(silent=True) or {}

    try:
        reference = optional_text(payload.get("payment_reference"), "payment_reference", max_length=128)
        order = order_state_service.confirm_payment(
            order_id,
            g.current_user,
            payment_reference=reference,
            ip_address=client_ip(),
        )
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to confirm payment")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"order": order.to_dict()}), 200


# -------------------------
# Settlements
# -------------------------

@admin_bp.post("/settlements")
@require_auth
@require_role(ROLE_ADMIN)
def generate_settlement_route():
    """
    Body: {"restaurant_id": 1, "period_start": "YYYY-MM-DD", "period_end": "YYYY-MM-DD"}

    Both dates are inclusive.
    """
    payload = request.get_json(silent=True) or {}

    try:
        restaurant_id = coerce_int(payload.get("restaurant_id"), "restaurant_id")
        period_start = parse_date_field(payload.get("period_start"), "period_start")
        period_end = parse_date_field(payload.get("period_end"), "period_end")
        settlement = settlement_service.generate_settlement(
            restaurant_id,
            period_start,
            period_end,
            g.current_user,
            ip_address=client_ip(),
        )
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to generate settlement")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"settlement": settlement.to_dict()}), 201


@admin_bp.get("/settlements")
@require_auth
@require_role(ROLE_ADMIN)
def list_settlements_route():
    page = request.args.get("page", default=1, type=int)
    limit = request.args.get("limit", default=20, type=int)

    try:
        settlements, total = settlement_service.list_settlements(
            status=request.args.get("status"),
            restaurant_id=_optional_int_arg("restaurant_id"),
            page=page,
            limit=limit,
        )
    except ChowlineError as e:
        return error_response(e)

    return jsonify({
        "settlements": [s.to_dict() for s in settlements],
        "total": total,
        "page": page,
        "limit": limit,
    }), 200


@admin_bp.get("/settlements/<int:settlement_id>")
@require_auth
@require_role(ROLE_ADMIN)
def get_settlement_route(settlement_id: int):
    try:
        settlement = settlement_service.get_settlement(settlement_id)
    except ChowlineError as e:
        return error_response(e)
    return jsonify({"settlement": settlement.to_dict()}), 200


@admin_bp.post("/settlements/<int:settlement_id>/mark-paid")
@require_auth
@require_role(ROLE_ADMIN)
def mark_settlement_paid_route(settlement_id: int):
    """Body: {"payment_reference": "..."} (required)"""
    payload = request.get_json(silent=True) or {}

    try:
        settlement = settlement_service.mark_paid(
            settlement_id,
            payload.get("payment_reference"),
            g.current_user,
            ip_address=client_ip(),
        )
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to mark settlement paid")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"settlement": settlement.to_dict()}), 200


# -------------------------
# Audit
# -------------------------

@admin_bp.get("/audit")
@require_auth
@require_role(ROLE_ADMIN)
def list_audit_route():
    """
    Query audit entries, newest first.

    Query params:
    - action, target_type, target_id, actor_id: exact filters
    - since / until: ISO-8601 datetimes (until is exclusive)
    - limit (max 500) / offset
    """
    try:
        try:
            since = parse_iso_datetime(request.args.get("since"))
            until = parse_iso_datetime(request.args.get("until"))
        except ValueError:
            raise ValidationError("since/until must be ISO-8601 datetimes", field="since")

        entries, total = audit_service.list_entries(
            action=request.args.get("action") or None,
            target_type=request.args.get("target_type") or None,
            target_id=request.args.get("target_id") or None,
            actor_id=_optional_int_arg("actor_id"),
            since=since,
            until=until,
            limit=request.args.get("limit", default=100, type=int),
            offset=request.args.get("offset", default=0, type=int),
        )
    except ChowlineError as e:
        return error_response(e)

    return jsonify({"entries": [e.to_dict() for e in entries], "total": total}), 200


# -------------------------
# Restaurants
# -------------------------

@admin_bp.get("/restaurants")
@require_auth
@require_role(ROLE_ADMIN)
def list_restaurants_route():
    restaurants = catalog_service.list_restaurants(include_inactive=True)
    return jsonify({"restaurants": [r.to_dict() for r in restaurants]}), 200


@admin_bp.post("/restaurants")
@require_auth
@require_role(ROLE_ADMIN)
def create_restaurant_route():
    """
    Body: restaurant fields, plus optional owner_id and commission_rate (percent).
    """
    payload = dict(request.get_json(silent=True) or {})
    owner_id = payload.pop("owner_id", None)
    commission_rate = payload.pop("commission_rate", None)

    try:
        if owner_id is not None:
            owner_id = coerce_int(owner_id, "owner_id")
        rate_bps = parse_commission_rate(commission_rate) if commission_rate is not None else None
        patch = validate_payload(model=Restaurant, payload=payload, policy=ADMIN_RESTAURANT_POLICY, partial=False)
        enforce_rules_restaurant(patch)
        if rate_bps is not None:
            patch["commission_rate_bps"] = rate_bps
        restaurant = catalog_service.create_restaurant(patch, owner_id=owner_id)
    except ChowlineError as e:
        return error_response(e)

    current_app.logger.info("Restaurant %s created by admin %s", restaurant.id, g.current_user.id)
    return jsonify({"restaurant": restaurant.to_dict()}), 201


@admin_bp.patch("/restaurants/<int:restaurant_id>")
@require_auth
@require_role(ROLE_ADMIN)
def update_restaurant_route(restaurant_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Restaurant, payload=payload, policy=ADMIN_RESTAURANT_POLICY, partial=True)
        enforce_rules_restaurant(patch)
        restaurant = catalog_service.update_restaurant(restaurant_id, patch)
    except ChowlineError as e:
        return error_response(e)

    return jsonify({"restaurant": restaurant.to_dict()}), 200


@admin_bp.put("/restaurants/<int:restaurant_id>/commission")
@require_auth
@require_role(ROLE_ADMIN)
def set_commission_route(restaurant_id: int):
    """
    Body: {"commission_rate": "7.5"} (percent, up to two decimals)

    Existing orders keep the rate they were created with.
    """
    payload = request.get_json(silent=True) or {}

    try:
        rate_bps = parse_commission_rate(payload.get("commission_rate"))
        restaurant = catalog_service.set_commission_rate(
            restaurant_id,
            rate_bps,
            g.current_user,
            ip_address=client_ip(),
        )
    except ChowlineError as e:
        return error_response(e)

    return jsonify({"restaurant": restaurant.to_dict()}), 200


# -------------------------
# Users
# -------------------------

@admin_bp.post("/users")
@require_auth
@require_role(ROLE_ADMIN)
def create_user_route():
    """Body: email, password, role, full_name?, phone?"""
    data = request.get_json(silent=True) or {}

    try:
        user = auth_service.create_user(
            data.get("email"),
            data.get("password"),
            role=data.get("role") or ROLE_CUSTOMER,
            full_name=data.get("full_name"),
            phone=data.get("phone"),
        )
    except ChowlineError as e:
        return error_response(e)

    current_app.logger.info("User %s (%s) created by admin %s", user.id, user.role, g.current_user.id)
    return jsonify({"user": user.to_dict()}), 201


@admin_bp.patch("/users/<int:user_id>/role")
@require_auth
@require_role(ROLE_ADMIN)
def set_user_role_route(user_id: int):
    """
    Body: {"role": "..."}

    Existing sessions for the user are revoked.
    """
    data = request.get_json(silent=True) or {}

    try:
        user = auth_service.set_role(user_id, data.get("role"), g.current_user, ip_address=client_ip())
    except ChowlineError as e:
        return error_response(e)

    revoked = session_service.revoke_all_user_sessions(user.id, reason="Role changed")
    current_app.logger.info(
        "User %s role set to %s by admin %s (%d sessions revoked)", user.id, user.role, g.current_user.id, revoked
    )
    return jsonify({"user": user.to_dict(), "sessions_revoked": revoked}), 200


# -------------------------
# Restaurant applications
# -------------------------

@admin_bp.get("/applications")
@require_auth
@require_role(ROLE_ADMIN)
def list_applications_route():
    """Oldest first. Query params: status, page, limit (max 100)."""
    page = request.args.get("page", default=1, type=int)
    limit = request.args.get("limit", default=20, type=int)

    try:
        applications, total = application_service.list_applications(
            status=request.args.get("status") or None,
            page=page,
            limit=limit,
        )
    except ChowlineError as e:
        return error_response(e)

    return jsonify({
        "applications": [a.to_dict() for a in applications],
        "total": total,
        "page": page,
        "limit": limit,
    }), 200


@admin_bp.get("/applications/<int:application_id>")
@require_auth
@require_role(ROLE_ADMIN)
def get_application_route(application_id: int):
    try:
        application = application_service.get_application(application_id)
    except ChowlineError as e:
        return error_response(e)
    return jsonify({"application": application.to_dict()}), 200


@admin_bp.post("/applications/<int:application_id>/approve")
@require_auth
@require_role(ROLE_ADMIN)
def approve_application_route(application_id: int):
    """
    Body: {"commission_rate": "10"} (percent, optional; defaults to 10.00)

    Creates the restaurant (closed until its owner opens it) and promotes
    the applicant to restaurant_owner.
    """
    payload = request.get_json(silent=True) or {}

    try:
        commission_rate = payload.get("commission_rate")
        rate_bps = (
            parse_commission_rate(commission_rate)
            if commission_rate is not None
            else application_service.DEFAULT_COMMISSION_BPS
        )
        application, restaurant = application_service.approve_application(
            application_id,
            g.current_user,
            commission_rate_bps=rate_bps,
            ip_address=client_ip(),
        )
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to approve restaurant application")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"application": application.to_dict(), "restaurant": restaurant.to_dict()}), 200


@admin_bp.post("/applications/<int:application_id>/reject")
@require_auth
@require_role(ROLE_ADMIN)
def reject_application_route(application_id: int):
    """Body: {"rejection_reason": "..."} (at least 5 characters)"""
    payload = request.get_json(silent=True) or {}

    try:
        application = application_service.reject_application(
            application_id,
            g.current_user,
            payload.get("rejection_reason"),
            ip_address=client_ip(),
        )
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reject restaurant application")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"application": application.to_dict()}), 200
