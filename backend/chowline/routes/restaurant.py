# Overview: Flask API routes for restaurant owners; parses input and returns JSON responses.

# backend/chowline/routes/restaurant.py
"""
Restaurant-facing routes.

SECURITY: Management routes require the restaurant_owner or admin role, and
then object-level ownership of the restaurant (admins pass). An owner
reaching for another restaurant gets the same 403 as a wrong role.

Applying to list a restaurant needs only a session; any user may apply.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import ChowlineError
from ..models import MenuItem, Restaurant, RestaurantApplication
from ..models.identity import ROLE_ADMIN, ROLE_RESTAURANT_OWNER
from ..services import (
    application_service,
    catalog_service,
    order_service,
    order_state_service,
    settlement_service,
)
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_menu_item,
    enforce_rules_restaurant,
)
from ..decorators import client_ip, error_response, require_auth, require_role

OWNER_RESTAURANT_POLICY = ModelValidationPolicy(
    writable_fields={"name", "phone", "address", "is_open", "delivery_fee"},
)

MENU_ITEM_POLICY = ModelValidationPolicy(
    writable_fields={"name", "description", "category", "price", "is_available"},
    required_on_create={"name", "price"},
)

# Commission is set by the reviewing admin, never by the applicant
APPLICATION_POLICY = ModelValidationPolicy(
    writable_fields={"name", "phone", "address", "delivery_fee"},
    required_on_create={"name"},
)

restaurant_bp = Blueprint("restaurant", __name__, url_prefix="/api/restaurant")


@restaurant_bp.get("/mine")
@require_auth
@require_role(ROLE_RESTAURANT_OWNER, ROLE_ADMIN)
def my_restaurants():
    restaurants = catalog_service.restaurants_owned_by(g.current_user.id)
    return jsonify({"restaurants": [r.to_dict() for r in restaurants]}), 200


@restaurant_bp.patch("/<int:restaurant_id>")
@require_auth
@require_role(ROLE_RESTAURANT_OWNER, ROLE_ADMIN)
def update_restaurant_route(restaurant_id: int):
    """
    Update listing details or toggle is_open.

    Commission rate and is_active are administrative (see /api/admin).
    """
    payload = request.get_json(silent=True) or {}

    try:
        catalog_service.require_owned_restaurant(g.current_user, restaurant_id)
        patch = validate_payload(model=Restaurant, payload=payload, policy=OWNER_RESTAURANT_POLICY, partial=True)
        enforce_rules_restaurant(patch)
        restaurant = catalog_service.update_restaurant(restaurant_id, patch)
    except ChowlineError as e:
        return error_response(e)

    return jsonify({"restaurant": restaurant.to_dict()}), 200


@restaurant_bp.get("/<int:restaurant_id>/orders")
@require_auth
@require_role(ROLE_RESTAURANT_OWNER, ROLE_ADMIN)
def restaurant_orders(restaurant_id: int):
    """
    Orders for one restaurant.

    Query params:
    - status: optional status filter
    - page / limit: pagination (limit max 100)
    """
    page = request.args.get("page", default=1, type=int)
    limit = request.args.get("limit", default=20, type=int)

    try:
        catalog_service.require_owned_restaurant(g.current_user, restaurant_id)
        orders, total = order_service.list_restaurant_orders(
            restaurant_id,
            status=request.args.get("status"),
            page=page,
            limit=limit,
        )
    except ChowlineError as e:
        return error_response(e)

    return jsonify({
        "orders": [o.to_dict(include_items=True) for o in orders],
        "total": total,
        "page": page,
        "limit": limit,
    }), 200


def apply_status_change(order_id: int):
    """Shared by the restaurant and admin surfaces."""
    payload = request.get_json(silent=True) or {}
    new_status = payload.get("status")
    if not isinstance(new_status, str) or not new_status:
        return jsonify({"error": "status is required", "code": "VALIDATION_ERROR", "field": "status"}), 400

    try:
        order_state_service.validate_status(new_status)
        order = order_service.get_order(order_id)
        order_state_service.ensure_can_manage_order(g.current_user, order, new_status)
        order = order_state_service.transition(
            order_id,
            new_status,
            g.current_user,
            reason=payload.get("cancellation_reason") or payload.get("reason"),
            ip_address=client_ip(),
        )
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"order": order.to_dict()}), 200


@restaurant_bp.patch("/orders/<int:order_id>/status")
@require_auth
@require_role(ROLE_RESTAURANT_OWNER, ROLE_ADMIN)
def update_order_status(order_id: int):
    """
    Move an order along its lifecycle.

    Body: {"status": "...", "cancellation_reason": "..."}
    Repeating the current status is a no-op success.
    """
    return apply_status_change(order_id)


@restaurant_bp.get("/<int:restaurant_id>/menu")
@require_auth
@require_role(ROLE_RESTAURANT_OWNER, ROLE_ADMIN)
def owner_menu(restaurant_id: int):
    """Full menu including unavailable items."""
    try:
        catalog_service.require_owned_restaurant(g.current_user, restaurant_id)
    except ChowlineError as e:
        return error_response(e)

    items = catalog_service.menu_for_restaurant(restaurant_id, available_only=False)
    return jsonify({"items": [i.to_dict() for i in items]}), 200


@restaurant_bp.post("/<int:restaurant_id>/menu")
@require_auth
@require_role(ROLE_RESTAURANT_OWNER, ROLE_ADMIN)
def create_menu_item_route(restaurant_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        catalog_service.require_owned_restaurant(g.current_user, restaurant_id)
        patch = validate_payload(model=MenuItem, payload=payload, policy=MENU_ITEM_POLICY, partial=False)
        enforce_rules_menu_item(patch)
        item = catalog_service.create_menu_item(restaurant_id, patch)
    except ChowlineError as e:
        return error_response(e)

    return jsonify({"item": item.to_dict()}), 201


@restaurant_bp.patch("/menu/<int:item_id>")
@require_auth
@require_role(ROLE_RESTAURANT_OWNER, ROLE_ADMIN)
def update_menu_item_route(item_id: int):
    """Price and availability changes apply to future orders only."""
    payload = request.get_json(silent=True) or {}

    try:
        item = catalog_service.get_menu_item(item_id)
        catalog_service.require_owned_restaurant(g.current_user, item.restaurant_id)
        patch = validate_payload(model=MenuItem, payload=payload, policy=MENU_ITEM_POLICY, partial=True)
        enforce_rules_menu_item(patch)
        item = catalog_service.update_menu_item(item_id, patch)
    except ChowlineError as e:
        return error_response(e)

    return jsonify({"item": item.to_dict()}), 200


@restaurant_bp.get("/<int:restaurant_id>/settlements")
@require_auth
@require_role(ROLE_RESTAURANT_OWNER, ROLE_ADMIN)
def restaurant_settlements(restaurant_id: int):
    page = request.args.get("page", default=1, type=int)
    limit = request.args.get("limit", default=20, type=int)

    try:
        catalog_service.require_owned_restaurant(g.current_user, restaurant_id)
        settlements, total = settlement_service.list_settlements(
            restaurant_id=restaurant_id, page=page, limit=limit,
        )
    except ChowlineError as e:
        return error_response(e)

    return jsonify({
        "settlements": [s.to_dict(include_internal=False) for s in settlements],
        "summary": settlement_service.restaurant_summary(restaurant_id),
        "total": total,
        "page": page,
        "limit": limit,
    }), 200


# -------------------------
# Applications
# -------------------------

@restaurant_bp.post("/applications")
@require_auth
def submit_application_route():
    """
    Apply to list a restaurant.

    Body: name, phone?, address?, delivery_fee?
    409 if the caller already has a pending application.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(
            model=RestaurantApplication, payload=payload, policy=APPLICATION_POLICY, partial=False
        )
        enforce_rules_restaurant(patch)
        application = application_service.submit_application(
            g.current_user, patch, ip_address=client_ip()
        )
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to submit restaurant application")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"application": application.to_dict()}), 201


@restaurant_bp.get("/applications/mine")
@require_auth
def my_applications():
    applications = application_service.applications_for(g.current_user.id)
    return jsonify({"applications": [a.to_dict() for a in applications]}), 200
