from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from chowline.time_utils import to_utc_z


def bps_to_percent(bps: int | None) -> str | None:
    """1000 bps -> "10.00" (percent, two decimals)."""
    if bps is None:
        return None
    return str((Decimal(bps) / Decimal(100)).quantize(Decimal("0.01")))


class Restaurant(db.Model):
    """
    Restaurant listing.

    Orders may only be created while is_active AND is_open.
    commission_rate_bps may change at any time; orders keep their own snapshot.
    """
    __tablename__ = "restaurants"
    __table_args__ = (
        db.CheckConstraint("delivery_fee >= 0", name="ck_restaurants_delivery_fee"),
        db.CheckConstraint(
            "commission_rate_bps >= 0 AND commission_rate_bps <= 10000",
            name="ck_restaurants_commission_rate",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    name = db.Column(db.String(128), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    address = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)  # listed / delisted
    is_open = db.Column(db.Boolean, nullable=False, default=True)  # accepting orders right now

    # Money in minor units; rate in basis points (600 = 6.00%)
    delivery_fee = db.Column(db.Integer, nullable=False, default=0)
    commission_rate_bps = db.Column(db.Integer, nullable=False, default=600)

    # Aggregates maintained when an order enters `delivered`
    total_orders = db.Column(db.Integer, nullable=False, default=0)
    total_revenue = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    owner = db.relationship("User", backref=db.backref("restaurants", lazy=True))

    @property
    def commission_rate(self) -> str | None:
        return bps_to_percent(self.commission_rate_bps)

    def to_dict(self, include_internal: bool = True) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "address": self.address,
            "is_active": self.is_active,
            "is_open": self.is_open,
            "delivery_fee": self.delivery_fee,
        }
        if include_internal:
            data.update({
                "owner_id": self.owner_id,
                "commission_rate": self.commission_rate,
                "total_orders": self.total_orders,
                "total_revenue": self.total_revenue,
                "created_at": to_utc_z(self.created_at),
                "updated_at": to_utc_z(self.updated_at) if self.updated_at else None,
            })
        return data


class MenuItem(db.Model):
    """Catalog entry. Its price is read, never written, by order placement."""
    __tablename__ = "menu_items"
    __table_args__ = (
        db.CheckConstraint("price >= 0", name="ck_menu_items_price"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    restaurant_id = db.Column(db.Integer, db.ForeignKey("restaurants.id"), nullable=False, index=True)

    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(64), nullable=True)

    price = db.Column(db.Integer, nullable=False)
    is_available = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    restaurant = db.relationship("Restaurant", backref=db.backref("menu_items", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "restaurant_id": self.restaurant_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "price": self.price,
            "is_available": self.is_available,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at) if self.updated_at else None,
        }
