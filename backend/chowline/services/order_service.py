# Overview: Service-layer operations for order placement and order reads.

"""
Order Assembler

WHY: A customer's cart is turned into an order using catalog prices only.
Any amount the client sends is discarded before it can be read.

PERSISTENCE MODEL:
The order row is committed first, then its line items. If the line items
cannot be written, the just-created order is deleted again (explicit
compensating delete) and PersistenceFailure is raised. An order never
survives with zero line items.

AUDIT:
order_created is written in the same transaction as the line items, so a
failed attempt leaves zero audit entries.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    CrossRestaurantItems,
    ItemNotFound,
    ItemUnavailable,
    NotFound,
    PersistenceFailure,
    RestaurantUnavailable,
    Unauthenticated,
    ValidationError,
)
from ..extensions import db
from ..models import Order, OrderLineItem, Restaurant, User
from ..models.orders import ORDER_STATUSES, STATUS_AWAITING_PAYMENT
from ..validation import OrderRequest, validate_order_request
from . import audit_service, pricing_service, sequence_service
from .concurrency import run_with_retry
from chowline.time_utils import utcnow


def create_order(
    *,
    customer: User | None,
    payload: dict,
    ip_address: str | None = None,
) -> Order:
    """
    Place an order for an authenticated customer.

    Steps: shape validation -> oracle prices -> item checks -> restaurant
    checks -> totals -> persist order -> persist line items + audit.

    Raises Unauthenticated, ValidationError, ItemNotFound, ItemUnavailable,
    CrossRestaurantItems, RestaurantUnavailable or PersistenceFailure.
    """
    if customer is None:
        raise Unauthenticated()

    try:
        request_data = validate_order_request(
            payload,
            phone_pattern=current_app.config["DELIVERY_PHONE_PATTERN"],
        )
    except ValidationError as exc:
        current_app.logger.warning(
            "Order rejected: invalid %s (customer %s)", exc.field or "payload", customer.id
        )
        raise

    item_ids = [line.item_id for line in request_data.lines]
    priced = pricing_service.lookup_prices(item_ids)

    missing = pricing_service.missing_ids(item_ids, priced)
    if missing:
        current_app.logger.warning(
            "Order rejected: unknown menu item %s (customer %s)", missing[0], customer.id
        )
        raise ItemNotFound(details={"item_id": missing[0]})

    for line in request_data.lines:
        item = priced[line.item_id]
        if not item.is_available:
            current_app.logger.warning(
                "Order rejected: item %s unavailable (customer %s)", item.item_id, customer.id
            )
            raise ItemUnavailable(f"{item.name} is currently unavailable", details={"item_id": item.item_id})
        if item.restaurant_id != request_data.restaurant_id:
            current_app.logger.warning(
                "Order rejected: cross-restaurant cart, item %s belongs to restaurant %s not %s (customer %s)",
                item.item_id, item.restaurant_id, request_data.restaurant_id, customer.id,
            )
            raise CrossRestaurantItems(
                "All items must be from the same restaurant",
                details={"item_id": item.item_id},
            )

    restaurant = db.session.query(Restaurant).filter_by(id=request_data.restaurant_id).first()
    if restaurant is None:
        current_app.logger.warning(
            "Order rejected: restaurant %s not found (customer %s)", request_data.restaurant_id, customer.id
        )
        raise NotFound("Restaurant not found")
    if not restaurant.is_active or not restaurant.is_open:
        current_app.logger.warning(
            "Order rejected: restaurant %s closed (active=%s open=%s)",
            restaurant.id, restaurant.is_active, restaurant.is_open,
        )
        raise RestaurantUnavailable()

    subtotal = sum(priced[line.item_id].unit_price * line.quantity for line in request_data.lines)
    delivery_fee = restaurant.delivery_fee
    rate_bps = restaurant.commission_rate_bps
    commission_amount = pricing_service.compute_commission(subtotal, rate_bps)
    total = subtotal + delivery_fee

    try:
        order = run_with_retry(lambda: _insert_order(
            customer_id=customer.id,
            request_data=request_data,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            rate_bps=rate_bps,
            commission_amount=commission_amount,
            total=total,
        ))
    except SQLAlchemyError as exc:
        current_app.logger.error("Order insert failed for customer %s: %s", customer.id, exc)
        raise PersistenceFailure() from exc
    order_id = order.id

    try:
        _insert_line_items(order, request_data, priced)
        audit_service.record(
            "order_created",
            actor_id=customer.id,
            target_type="order",
            target_id=order.id,
            metadata={
                "order_number": order.order_number,
                "restaurant_id": order.restaurant_id,
                "subtotal": order.subtotal,
                "delivery_fee": order.delivery_fee,
                "commission_amount": order.commission_amount,
                "total": order.total,
                "item_count": len(request_data.lines),
            },
            ip_address=ip_address,
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(
            "Line item persistence failed for order %s, deleting order: %s", order_id, exc
        )
        _discard_order(order_id)
        raise PersistenceFailure("Failed to save order items. Please try again.") from exc

    current_app.logger.info(
        "Order %s created for customer %s (restaurant %s, total %s)",
        order.order_number, customer.id, order.restaurant_id, order.total,
    )
    return order


def _insert_order(
    *,
    customer_id: int,
    request_data: OrderRequest,
    subtotal: int,
    delivery_fee: int,
    rate_bps: int,
    commission_amount: int,
    total: int,
) -> Order:
    order_number = sequence_service.next_order_number(
        prefix=current_app.config["ORDER_NUMBER_PREFIX"],
        tz_name=current_app.config["ORDER_NUMBER_TIMEZONE"],
    )
    now = utcnow()
    order = Order(
        order_number=order_number,
        customer_id=customer_id,
        restaurant_id=request_data.restaurant_id,
        status=STATUS_AWAITING_PAYMENT,
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        commission_rate_bps=rate_bps,
        commission_amount=commission_amount,
        total=total,
        delivery_address=request_data.delivery_address,
        delivery_landmark=request_data.delivery_landmark,
        contact_name=request_data.contact_name,
        contact_phone=request_data.contact_phone,
        notes=request_data.notes,
        created_at=now,
        updated_at=now,
    )
    db.session.add(order)
    db.session.commit()
    return order


def _insert_line_items(order: Order, request_data: OrderRequest, priced: dict) -> None:
    for line in request_data.lines:
        item = priced[line.item_id]
        db.session.add(OrderLineItem(
            order_id=order.id,
            menu_item_id=item.item_id,
            name=item.name,
            unit_price=item.unit_price,
            quantity=line.quantity,
            subtotal=item.unit_price * line.quantity,
            notes=line.note,
            created_at=order.created_at,
        ))
    db.session.flush()


def _delete_order_rows(order_id: int) -> None:
    db.session.query(OrderLineItem).filter_by(order_id=order_id).delete(synchronize_session=False)
    db.session.query(Order).filter_by(id=order_id).delete(synchronize_session=False)
    db.session.commit()


def _discard_order(order_id: int) -> None:
    """
    Compensating delete for an order whose line items failed to persist.

    If the delete fails too, the order stays behind without line items. It is
    logged at ERROR for manual cleanup and the caller still gets a retryable
    PersistenceFailure.
    """
    try:
        _delete_order_rows(order_id)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Compensating delete failed; order %s left without line items", order_id
        )
        raise PersistenceFailure("Failed to save order items. Please try again.") from exc
    current_app.logger.warning("Order %s rolled back after line item failure", order_id)


def get_order(order_id: int) -> Order:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None:
        raise NotFound("Order not found")
    return order


def _paginate(query, *, page: int, limit: int) -> tuple[list, int]:
    if page < 1:
        page = 1
    if limit < 1:
        limit = 1
    if limit > 100:
        limit = 100
    total = query.count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    return rows, total


def list_customer_orders(customer_id: int, *, page: int = 1, limit: int = 20) -> tuple[list[Order], int]:
    query = (
        db.session.query(Order)
        .filter(Order.customer_id == customer_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
    )
    return _paginate(query, page=page, limit=limit)


def list_restaurant_orders(
    restaurant_id: int,
    *,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Order], int]:
    query = db.session.query(Order).filter(Order.restaurant_id == restaurant_id)
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown status: {status}", field="status")
        query = query.filter(Order.status == status)
    query = query.order_by(Order.created_at.desc(), Order.id.desc())
    return _paginate(query, page=page, limit=limit)


def list_orders(
    *,
    status: str | None = None,
    restaurant_id: int | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Order], int]:
    query = db.session.query(Order)
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown status: {status}", field="status")
        query = query.filter(Order.status == status)
    if restaurant_id is not None:
        query = query.filter(Order.restaurant_id == restaurant_id)
    query = query.order_by(Order.created_at.desc(), Order.id.desc())
    return _paginate(query, page=page, limit=limit)

