# Overview: Service-layer operations for restaurant settlements; aggregation and payout marking.

"""
Settlement Engine

WHY: Restaurants are paid out per period from the financial snapshot frozen
on each delivered order. Live commission rates and live prices are never
consulted.

IDEMPOTENCY:
- (restaurant_id, period_start, period_end) identifies a settlement. A second
  generate call for the same tuple is reported as AlreadyExists carrying the
  original id/status. The unique constraint catches the race where both
  calls pass the pre-check.
- mark_paid on a paid settlement is reported as AlreadyPaid carrying the
  existing payment_reference, so a double-submitted payout cannot happen.

ACCOUNTING INVARIANT:
    net_payout + total_commission == total_gmv
Delivery fees are platform revenue and are excluded from net_payout.
"""

from __future__ import annotations

from datetime import date

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    AlreadyExists,
    AlreadyPaid,
    NotFound,
    NothingToSettle,
    PersistenceFailure,
    ValidationError,
)
from ..extensions import db
from ..models import Order, Restaurant, Settlement, User
from ..models.orders import STATUS_DELIVERED
from ..models.settlements import SETTLEMENT_PAID, SETTLEMENT_PENDING
from . import audit_service
from .concurrency import lock_for_update, run_with_retry
from chowline.time_utils import day_bounds, utcnow


def find_settlement(restaurant_id: int, period_start: date, period_end: date) -> Settlement | None:
    return (
        db.session.query(Settlement)
        .filter_by(restaurant_id=restaurant_id, period_start=period_start, period_end=period_end)
        .first()
    )


def _already_exists(existing: Settlement) -> AlreadyExists:
    return AlreadyExists(
        "Settlement already exists for this period",
        details={"settlement_id": existing.id, "status": existing.status},
    )


def aggregate_delivered_orders(restaurant_id: int, period_start: date, period_end: date) -> dict:
    """
    Sum the snapshot fields of orders delivered within
    [period_start 00:00, period_end 23:59:59.999...].
    """
    window_start, window_end = day_bounds(period_start, period_end)
    row = (
        db.session.query(
            func.count(Order.id),
            func.coalesce(func.sum(Order.subtotal), 0),
            func.coalesce(func.sum(Order.commission_amount), 0),
            func.coalesce(func.sum(Order.delivery_fee), 0),
        )
        .filter(
            Order.restaurant_id == restaurant_id,
            Order.status == STATUS_DELIVERED,
            Order.delivered_at >= window_start,
            Order.delivered_at < window_end,
        )
        .one()
    )
    order_count, total_gmv, total_commission, total_delivery_fees = (int(v) for v in row)
    return {
        "order_count": order_count,
        "total_gmv": total_gmv,
        "total_commission": total_commission,
        "total_delivery_fees": total_delivery_fees,
        "net_payout": total_gmv - total_commission,
    }


def generate_settlement(
    restaurant_id: int,
    period_start: date,
    period_end: date,
    actor: User | None,
    *,
    ip_address: str | None = None,
) -> Settlement:
    """
    Create a pending settlement for one restaurant and period.

    Raises:
        ValidationError: period_start after period_end
        NotFound: unknown restaurant
        AlreadyExists: a settlement for this exact period exists (details
            carry settlement_id and status)
        NothingToSettle: no delivered orders in the period
    """
    if period_start > period_end:
        raise ValidationError("period_start must be on or before period_end", field="period_start")

    restaurant = db.session.query(Restaurant).filter_by(id=restaurant_id).first()
    if restaurant is None:
        raise NotFound("Restaurant not found")

    existing = find_settlement(restaurant_id, period_start, period_end)
    if existing is not None:
        current_app.logger.warning(
            "Duplicate settlement request for restaurant %s %s..%s (existing %s, %s)",
            restaurant_id, period_start, period_end, existing.id, existing.status,
        )
        raise _already_exists(existing)

    totals = aggregate_delivered_orders(restaurant_id, period_start, period_end)
    if totals["order_count"] == 0:
        current_app.logger.warning(
            "Nothing to settle for restaurant %s %s..%s", restaurant_id, period_start, period_end
        )
        raise NothingToSettle()

    def _op() -> Settlement:
        settlement = Settlement(
            restaurant_id=restaurant_id,
            period_start=period_start,
            period_end=period_end,
            status=SETTLEMENT_PENDING,
            created_by=actor.id if actor else None,
            created_at=utcnow(),
            **totals,
        )
        db.session.add(settlement)
        db.session.flush()

        audit_service.record(
            "settlement_created",
            actor_id=actor.id if actor else None,
            target_type="settlement",
            target_id=settlement.id,
            metadata={
                "restaurant_id": restaurant_id,
                "restaurant_name": restaurant.name,
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                **totals,
            },
            ip_address=ip_address,
        )
        db.session.commit()
        return settlement

    try:
        settlement = run_with_retry(_op)
    except IntegrityError as exc:
        # Lost the race against a concurrent generate for the same period
        existing = find_settlement(restaurant_id, period_start, period_end)
        if existing is None:
            current_app.logger.error(
                "Settlement insert failed for restaurant %s %s..%s: %s",
                restaurant_id, period_start, period_end, exc.orig,
            )
            raise PersistenceFailure() from exc
        current_app.logger.warning(
            "Concurrent settlement for restaurant %s %s..%s resolved to existing %s",
            restaurant_id, period_start, period_end, existing.id,
        )
        raise _already_exists(existing) from exc

    current_app.logger.info(
        "Settlement %s created for restaurant %s %s..%s: %d orders, payout %s",
        settlement.id, restaurant_id, period_start, period_end,
        settlement.order_count, settlement.net_payout,
    )
    return settlement


def mark_paid(
    settlement_id: int,
    payment_reference: str,
    actor: User | None,
    *,
    ip_address: str | None = None,
) -> Settlement:
    """
    pending -> paid, exactly once.

    Raises:
        ValidationError: blank payment_reference
        NotFound: unknown settlement
        AlreadyPaid: already paid (details carry the existing payment_reference)
    """
    reference = (payment_reference or "").strip() if isinstance(payment_reference, str) else ""
    if not reference:
        raise ValidationError("payment_reference is required", field="payment_reference")
    if len(reference) > 128:
        raise ValidationError("payment_reference exceeds max length 128", field="payment_reference")

    def _already_paid(settlement: Settlement) -> AlreadyPaid:
        current_app.logger.warning(
            "Duplicate payout attempt for settlement %s (paid ref %s)",
            settlement.id, settlement.payment_reference,
        )
        return AlreadyPaid(details={
            "settlement_id": settlement.id,
            "payment_reference": settlement.payment_reference,
        })

    def _op() -> Settlement:
        settlement = lock_for_update(db.session.query(Settlement).filter_by(id=settlement_id)).first()
        if settlement is None:
            raise NotFound("Settlement not found")
        if settlement.status == SETTLEMENT_PAID:
            raise _already_paid(settlement)

        now = utcnow()
        result = db.session.execute(
            update(Settlement)
            .where(Settlement.id == settlement_id, Settlement.status == SETTLEMENT_PENDING)
            .values(
                status=SETTLEMENT_PAID,
                payment_reference=reference,
                paid_by=actor.id if actor else None,
                paid_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise _already_paid(db.session.query(Settlement).filter_by(id=settlement_id).one())

        audit_service.record(
            "settlement_paid",
            actor_id=actor.id if actor else None,
            target_type="settlement",
            target_id=settlement_id,
            metadata={
                "restaurant_id": settlement.restaurant_id,
                "net_payout": settlement.net_payout,
                "payment_reference": reference,
            },
            ip_address=ip_address,
        )
        db.session.commit()
        db.session.refresh(settlement)
        return settlement

    settlement = run_with_retry(_op)
    current_app.logger.info(
        "Settlement %s marked paid (ref %s)", settlement.id, settlement.payment_reference
    )
    return settlement


def get_settlement(settlement_id: int) -> Settlement:
    settlement = db.session.query(Settlement).filter_by(id=settlement_id).first()
    if settlement is None:
        raise NotFound("Settlement not found")
    return settlement


def list_settlements(
    *,
    status: str | None = None,
    restaurant_id: int | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Settlement], int]:
    query = db.session.query(Settlement)
    if status:
        if status not in (SETTLEMENT_PENDING, SETTLEMENT_PAID):
            raise ValidationError(f"Unknown status: {status}", field="status")
        query = query.filter(Settlement.status == status)
    if restaurant_id is not None:
        query = query.filter(Settlement.restaurant_id == restaurant_id)

    if page < 1:
        page = 1
    if limit < 1:
        limit = 1
    if limit > 100:
        limit = 100

    total = query.count()
    rows = (
        query.order_by(Settlement.created_at.desc(), Settlement.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return rows, total


def restaurant_summary(restaurant_id: int) -> dict:
    """Pending and paid payout totals for a restaurant's own dashboard."""
    rows = (
        db.session.query(Settlement.status, func.coalesce(func.sum(Settlement.net_payout), 0))
        .filter(Settlement.restaurant_id == restaurant_id)
        .group_by(Settlement.status)
        .all()
    )
    by_status = {status: int(amount) for status, amount in rows}
    return {
        "pending_payout": by_status.get(SETTLEMENT_PENDING, 0),
        "total_paid": by_status.get(SETTLEMENT_PAID, 0),
    }
