# Overview: Service-layer operations for restaurants and menu items.

"""
Catalog management.

MULTI-OWNER: restaurant owners act only on restaurants they own
(require_owned_restaurant). Administrators manage listing state and the
commission rate. None of these changes ever touch existing orders: orders
carry their own price and commission snapshot.
"""

from __future__ import annotations

from flask import current_app

from ..errors import Forbidden, NotFound
from ..extensions import db
from ..models import MenuItem, Restaurant, User
from ..models.catalog import bps_to_percent
from ..models.identity import ROLE_ADMIN
from . import audit_service
from .concurrency import run_with_retry
from chowline.time_utils import utcnow


def get_restaurant(restaurant_id: int) -> Restaurant:
    restaurant = db.session.query(Restaurant).filter_by(id=restaurant_id).first()
    if restaurant is None:
        raise NotFound("Restaurant not found")
    return restaurant


def list_restaurants(*, include_inactive: bool = False) -> list[Restaurant]:
    query = db.session.query(Restaurant)
    if not include_inactive:
        query = query.filter(Restaurant.is_active.is_(True))
    return query.order_by(Restaurant.name.asc(), Restaurant.id.asc()).all()


def restaurants_owned_by(user_id: int) -> list[Restaurant]:
    return (
        db.session.query(Restaurant)
        .filter(Restaurant.owner_id == user_id)
        .order_by(Restaurant.id.asc())
        .all()
    )


def require_owned_restaurant(user: User, restaurant_id: int) -> Restaurant:
    """
    The restaurant, if `user` may manage it.

    Admins may manage any restaurant; owners only their own.
    """
    restaurant = get_restaurant(restaurant_id)
    if user.role == ROLE_ADMIN or restaurant.owner_id == user.id:
        return restaurant
    current_app.logger.warning(
        "User %s denied access to restaurant %s", user.id, restaurant_id
    )
    raise Forbidden()


def create_restaurant(patch: dict, *, owner_id: int | None = None) -> Restaurant:
    if owner_id is not None and db.session.query(User.id).filter_by(id=owner_id).first() is None:
        raise NotFound("Owner not found")

    def _op() -> Restaurant:
        now = utcnow()
        restaurant = Restaurant(owner_id=owner_id, created_at=now, updated_at=now, **patch)
        db.session.add(restaurant)
        db.session.commit()
        return restaurant

    return run_with_retry(_op)


def update_restaurant(restaurant_id: int, patch: dict) -> Restaurant:
    def _op() -> Restaurant:
        restaurant = get_restaurant(restaurant_id)
        for key, value in patch.items():
            setattr(restaurant, key, value)
        restaurant.updated_at = utcnow()
        db.session.commit()
        return restaurant

    return run_with_retry(_op)


def set_commission_rate(
    restaurant_id: int,
    rate_bps: int,
    actor: User,
    *,
    ip_address: str | None = None,
) -> Restaurant:
    """Applies to orders created from now on only."""
    def _op() -> tuple[Restaurant, int]:
        restaurant = get_restaurant(restaurant_id)
        previous = restaurant.commission_rate_bps
        if previous == rate_bps:
            return restaurant, previous

        restaurant.commission_rate_bps = rate_bps
        restaurant.updated_at = utcnow()
        audit_service.record(
            "commission_rate_changed",
            actor_id=actor.id,
            target_type="restaurant",
            target_id=restaurant.id,
            metadata={
                "from": bps_to_percent(previous),
                "to": bps_to_percent(rate_bps),
            },
            ip_address=ip_address,
        )
        db.session.commit()
        return restaurant, previous

    restaurant, previous = run_with_retry(_op)
    if previous != rate_bps:
        current_app.logger.info(
            "Commission rate for restaurant %s changed %s -> %s bps", restaurant_id, previous, rate_bps
        )
    return restaurant


def menu_for_restaurant(restaurant_id: int, *, available_only: bool = True) -> list[MenuItem]:
    query = db.session.query(MenuItem).filter(MenuItem.restaurant_id == restaurant_id)
    if available_only:
        query = query.filter(MenuItem.is_available.is_(True))
    return query.order_by(MenuItem.category.asc(), MenuItem.name.asc(), MenuItem.id.asc()).all()


def get_menu_item(item_id: int) -> MenuItem:
    item = db.session.query(MenuItem).filter_by(id=item_id).first()
    if item is None:
        raise NotFound("Menu item not found")
    return item


def create_menu_item(restaurant_id: int, patch: dict) -> MenuItem:
    def _op() -> MenuItem:
        now = utcnow()
        item = MenuItem(restaurant_id=restaurant_id, created_at=now, updated_at=now, **patch)
        db.session.add(item)
        db.session.commit()
        return item

    return run_with_retry(_op)


def update_menu_item(item_id: int, patch: dict) -> MenuItem:
    def _op() -> MenuItem:
        item = get_menu_item(item_id)
        for key, value in patch.items():
            setattr(item, key, value)
        item.updated_at = utcnow()
        db.session.commit()
        return item

    return run_with_retry(_op)
