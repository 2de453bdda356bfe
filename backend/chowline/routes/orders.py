# Overview: Flask API routes for customer ordering; parses input and returns JSON responses.

# backend/chowline/routes/orders.py
"""
Customer-facing order routes.

SECURITY: Order placement and order reads require authentication. Prices in
the request body are never read; totals come from the catalog.
Customers see only their own orders; another customer's order is reported
as not found.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import ChowlineError, NotFound
from ..models.identity import ROLE_ADMIN
from ..services import catalog_service, order_service
from ..decorators import client_ip, error_response, rate_limited, require_auth

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_auth
@rate_limited("order_create")
def create_order_route():
    """
    Place an order.

    Body: restaurant_id, items[{item_id, quantity, note?}], delivery_address,
    contact_name, contact_phone, delivery_landmark?, notes?
    """
    payload = request.get_json(silent=True)

    try:
        order = order_service.create_order(
            customer=g.current_user,
            payload=payload,
            ip_address=client_ip(),
        )
    except ChowlineError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "order_id": order.id,
        "order_number": order.order_number,
        "total": order.total,
        "order": order.to_dict(include_items=True),
    }), 201


@orders_bp.get("")
@require_auth
def list_my_orders():
    """
    The caller's own orders, newest first.

    Query params:
    - page: int (default 1)
    - limit: int (default 20, max 100)
    """
    page = request.args.get("page", default=1, type=int)
    limit = request.args.get("limit", default=20, type=int)

    orders, total = order_service.list_customer_orders(g.current_user.id, page=page, limit=limit)
    return jsonify({
        "orders": [o.to_dict() for o in orders],
        "total": total,
        "page": page,
        "limit": limit,
    }), 200


@orders_bp.get("/<int:order_id>")
@require_auth
def get_my_order(order_id: int):
    try:
        order = order_service.get_order(order_id)
    except NotFound as e:
        return error_response(e)

    user = g.current_user
    visible = (
        order.customer_id == user.id
        or user.role == ROLE_ADMIN
        or (order.restaurant is not None and order.restaurant.owner_id == user.id)
    )
    if not visible:
        return error_response(NotFound("Order not found"))

    return jsonify({"order": order.to_dict(include_items=True)}), 200


@orders_bp.get("/restaurants")
def list_open_restaurants():
    """Active restaurants for browsing."""
    restaurants = catalog_service.list_restaurants()
    return jsonify({"restaurants": [r.to_dict(include_internal=False) for r in restaurants]}), 200


@orders_bp.get("/restaurants/<int:restaurant_id>/menu")
def restaurant_menu(restaurant_id: int):
    try:
        restaurant = catalog_service.get_restaurant(restaurant_id)
    except NotFound as e:
        return error_response(e)
    if not restaurant.is_active:
        return error_response(NotFound("Restaurant not found"))

    items = catalog_service.menu_for_restaurant(restaurant_id)
    return jsonify({
        "restaurant": restaurant.to_dict(include_internal=False),
        "items": [i.to_dict() for i in items],
    }), 200
