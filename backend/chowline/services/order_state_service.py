# Overview: Service-layer operations for the order lifecycle; enforces the status state machine.

"""
Order State Machine

================================================================================
STATE MACHINE:
    awaiting_payment -> confirmed -> preparing -> out_for_delivery -> delivered
    any non-terminal state -> cancelled

    delivered and cancelled are TERMINAL: nothing leaves them.
================================================================================

RULES (NON-NEGOTIABLE):
1. Only edges in ORDER_TRANSITIONS are legal; anything else is IllegalTransition.
2. Requesting the status the order already has is a successful no-op.
3. Entering a status stamps its lifecycle timestamp.
4. Entering `delivered` bumps the restaurant's total_orders / total_revenue
   exactly once.

CONCURRENCY:
Restaurant staff, administrators and the scheduler may all move the same
order at once. The write is a conditional UPDATE ... WHERE status = :from,
so only one racer wins; the aggregate bump happens only for the winner. The
storage layer carries its own transition trigger beneath this check.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import Forbidden, IllegalTransition, NotFound, ValidationError
from ..extensions import db
from ..models import Order, Restaurant, User
from ..models.identity import ROLE_ADMIN, ROLE_RESTAURANT_OWNER
from ..models.orders import (
    ORDER_STATUSES,
    ORDER_TRANSITIONS,
    STATUS_AWAITING_PAYMENT,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    STATUS_DELIVERED,
    STATUS_TIMESTAMP_FIELDS,
    TERMINAL_STATUSES,
)
from . import audit_service
from .concurrency import lock_for_update, run_with_retry
from chowline.time_utils import utcnow


# Statuses a restaurant owner may set directly; payment confirmation is admin-only
OWNER_SETTABLE_STATUSES = frozenset(ORDER_STATUSES) - {STATUS_AWAITING_PAYMENT, STATUS_CONFIRMED}


def validate_status(status: str) -> None:
    if status not in ORDER_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(ORDER_STATUSES)}",
            field="status",
        )


def can_transition(from_status: str, to_status: str) -> bool:
    """
    True if the move is allowed. Same-state is allowed (handled as a no-op).
    """
    validate_status(from_status)
    validate_status(to_status)

    if from_status == to_status:
        return True

    return to_status in ORDER_TRANSITIONS[from_status]


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def ensure_can_manage_order(user: User, order: Order, new_status: str) -> None:
    """
    Object-level authorization on top of the route's role check.

    Admins may drive any order. Restaurant owners may only drive orders of
    restaurants they own, and may not confirm payment.
    """
    if user.role == ROLE_ADMIN:
        return
    if user.role == ROLE_RESTAURANT_OWNER:
        owner_id = (
            db.session.query(Restaurant.owner_id)
            .filter(Restaurant.id == order.restaurant_id)
            .scalar()
        )
        if owner_id == user.id and new_status in OWNER_SETTABLE_STATUSES:
            return
    raise Forbidden()


def transition(
    order_id: int,
    new_status: str,
    actor: User | None,
    *,
    reason: str | None = None,
    expected_from: str | None = None,
    audit_action: str = "order_status_updated",
    extra_values: dict | None = None,
    extra_metadata: dict | None = None,
    ip_address: str | None = None,
) -> Order:
    """
    Move an order to `new_status`.

    Args:
        order_id: Order to move
        new_status: Target status
        actor: Acting user, or None for the scheduler
        reason: Stored as cancellation_reason when cancelling
        expected_from: If given, the order must currently be in this status
        audit_action: Audit entry written for the effective transition
        extra_values: Additional columns set by the same conditional update
        extra_metadata: Merged into the audit metadata

    Returns:
        The order as stored after the call.

    Raises:
        ValidationError: unknown status
        NotFound: no such order
        IllegalTransition: edge not in the table, terminal source, or the
            storage guard rejected the write
    """
    validate_status(new_status)

    def _op() -> Order:
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFound("Order not found")

        from_status = order.status

        if expected_from is not None and from_status != expected_from:
            raise IllegalTransition(
                f"Order is {from_status}, expected {expected_from}",
                details={"from": from_status, "to": new_status},
            )

        if from_status == new_status:
            return order

        if not can_transition(from_status, new_status):
            current_app.logger.warning(
                "Illegal transition rejected for order %s: %s -> %s (actor %s)",
                order.id, from_status, new_status, actor.id if actor else "scheduler",
            )
            raise IllegalTransition(
                f"Cannot transition order from {from_status} to {new_status}",
                details={"from": from_status, "to": new_status},
            )

        now = utcnow()
        values = {
            "status": new_status,
            STATUS_TIMESTAMP_FIELDS[new_status]: now,
            "updated_at": now,
        }
        if new_status == STATUS_CANCELLED and reason:
            values["cancellation_reason"] = reason[:255]
        if extra_values:
            values.update(extra_values)

        result = db.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == from_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Lost the race: someone else moved the order between read and write
            db.session.rollback()
            current = db.session.query(Order.status).filter(Order.id == order_id).scalar()
            if current == new_status:
                return db.session.query(Order).filter_by(id=order_id).first()
            current_app.logger.warning(
                "Concurrent transition lost for order %s: %s -> %s (now %s)",
                order_id, from_status, new_status, current,
            )
            raise IllegalTransition(
                f"Cannot transition order from {current} to {new_status}",
                details={"from": current, "to": new_status},
            )

        if new_status == STATUS_DELIVERED:
            db.session.execute(
                update(Restaurant)
                .where(Restaurant.id == order.restaurant_id)
                .values(
                    total_orders=Restaurant.total_orders + 1,
                    total_revenue=Restaurant.total_revenue + order.subtotal,
                )
                .execution_options(synchronize_session=False)
            )

        metadata = {"from": from_status, "to": new_status, "order_number": order.order_number}
        if values.get("cancellation_reason"):
            metadata["cancellation_reason"] = values["cancellation_reason"]
        if extra_metadata:
            metadata.update(extra_metadata)

        audit_service.record(
            audit_action,
            actor_id=actor.id if actor else None,
            target_type="order",
            target_id=order.id,
            metadata=metadata,
            ip_address=ip_address,
        )

        db.session.commit()
        db.session.refresh(order)
        current_app.logger.info(
            "Order %s moved %s -> %s (actor %s)",
            order.order_number, from_status, new_status, actor.id if actor else "scheduler",
        )
        return order

    try:
        return run_with_retry(_op)
    except IntegrityError as exc:
        current_app.logger.warning(
            "Storage guard rejected transition for order %s to %s: %s",
            order_id, new_status, exc.orig,
        )
        raise IllegalTransition(
            f"Cannot transition order to {new_status}",
            details={"to": new_status},
        ) from exc


def confirm_payment(
    order_id: int,
    actor: User,
    *,
    payment_reference: str | None = None,
    ip_address: str | None = None,
) -> Order:
    """
    Administrative payment confirmation: awaiting_payment -> confirmed.

    Stamps payment_reference / payment_confirmed_by / payment_confirmed_at.
    Any other current status is IllegalTransition.
    """
    reference = (payment_reference or "").strip() or None
    if reference and len(reference) > 128:
        raise ValidationError("payment_reference exceeds max length 128", field="payment_reference")

    now = utcnow()
    return transition(
        order_id,
        STATUS_CONFIRMED,
        actor,
        expected_from=STATUS_AWAITING_PAYMENT,
        audit_action="payment_confirmed",
        extra_values={
            "payment_reference": reference,
            "payment_confirmed_by": actor.id,
            "payment_confirmed_at": now,
        },
        extra_metadata={"payment_reference": reference},
        ip_address=ip_address,
    )


def find_stale_order_ids(*, threshold_minutes: int, now=None) -> list[int]:
    cutoff = (now or utcnow()) - timedelta(minutes=threshold_minutes)
    rows = (
        db.session.query(Order.id)
        .filter(Order.status == STATUS_AWAITING_PAYMENT, Order.created_at < cutoff)
        .order_by(Order.id.asc())
        .all()
    )
    return [row.id for row in rows]
