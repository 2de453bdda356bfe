from __future__ import annotations

from ..extensions import db
from chowline.time_utils import to_utc_z
from .catalog import bps_to_percent


STATUS_AWAITING_PAYMENT = "awaiting_payment"
STATUS_CONFIRMED = "confirmed"
STATUS_PREPARING = "preparing"
STATUS_OUT_FOR_DELIVERY = "out_for_delivery"
STATUS_DELIVERED = "delivered"
STATUS_CANCELLED = "cancelled"

ORDER_STATUSES = (
    STATUS_AWAITING_PAYMENT,
    STATUS_CONFIRMED,
    STATUS_PREPARING,
    STATUS_OUT_FOR_DELIVERY,
    STATUS_DELIVERED,
    STATUS_CANCELLED,
)

# The only legal edges. Terminal states have none.
ORDER_TRANSITIONS: dict[str, tuple[str, ...]] = {
    STATUS_AWAITING_PAYMENT: (STATUS_CONFIRMED, STATUS_CANCELLED),
    STATUS_CONFIRMED: (STATUS_PREPARING, STATUS_CANCELLED),
    STATUS_PREPARING: (STATUS_OUT_FOR_DELIVERY, STATUS_CANCELLED),
    STATUS_OUT_FOR_DELIVERY: (STATUS_DELIVERED, STATUS_CANCELLED),
    STATUS_DELIVERED: (),
    STATUS_CANCELLED: (),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ORDER_TRANSITIONS.items() if not targets)

# Lifecycle timestamp stamped on entering each status
STATUS_TIMESTAMP_FIELDS = {
    STATUS_CONFIRMED: "confirmed_at",
    STATUS_PREPARING: "preparing_at",
    STATUS_OUT_FOR_DELIVERY: "out_for_delivery_at",
    STATUS_DELIVERED: "delivered_at",
    STATUS_CANCELLED: "cancelled_at",
}

# Frozen at creation time
SNAPSHOT_COLUMNS = (
    "order_number",
    "customer_id",
    "restaurant_id",
    "subtotal",
    "delivery_fee",
    "commission_rate_bps",
    "commission_amount",
    "total",
)


class Order(db.Model):
    """
    Authoritative order record.

    Financial fields are immutable snapshots taken at creation: later changes
    to the restaurant's commission rate or a menu item's price never alter an
    existing order. Status only moves through ORDER_TRANSITIONS.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint("subtotal >= 0", name="ck_orders_subtotal"),
        db.CheckConstraint("delivery_fee >= 0", name="ck_orders_delivery_fee"),
        db.CheckConstraint("total = subtotal + delivery_fee", name="ck_orders_total"),
        db.CheckConstraint(
            "status IN ('awaiting_payment', 'confirmed', 'preparing', "
            "'out_for_delivery', 'delivered', 'cancelled')",
            name="ck_orders_status",
        ),
        db.Index("ix_orders_restaurant_status_delivered", "restaurant_id", "status", "delivered_at"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable, e.g. "CHW-20261017-004"
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    restaurant_id = db.Column(db.Integer, db.ForeignKey("restaurants.id"), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default=STATUS_AWAITING_PAYMENT, index=True)

    # Snapshot (minor currency units)
    subtotal = db.Column(db.Integer, nullable=False)
    delivery_fee = db.Column(db.Integer, nullable=False)
    commission_rate_bps = db.Column(db.Integer, nullable=False)
    commission_amount = db.Column(db.Integer, nullable=False)
    total = db.Column(db.Integer, nullable=False)

    # Delivery details
    delivery_address = db.Column(db.String(255), nullable=False)
    delivery_landmark = db.Column(db.String(255), nullable=True)
    contact_name = db.Column(db.String(128), nullable=False)
    contact_phone = db.Column(db.String(32), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    # Manual payment confirmation
    payment_reference = db.Column(db.String(128), nullable=True)
    payment_confirmed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    payment_confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    cancellation_reason = db.Column(db.String(255), nullable=True)

    # Lifecycle timestamps
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    preparing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    out_for_delivery_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    restaurant = db.relationship("Restaurant", backref=db.backref("orders", lazy=True))
    customer = db.relationship("User", foreign_keys=[customer_id])

    @property
    def commission_rate(self) -> str | None:
        return bps_to_percent(self.commission_rate_bps)

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "restaurant_id": self.restaurant_id,
            "status": self.status,
            "subtotal": self.subtotal,
            "delivery_fee": self.delivery_fee,
            "commission_rate": self.commission_rate,
            "commission_amount": self.commission_amount,
            "total": self.total,
            "delivery_address": self.delivery_address,
            "delivery_landmark": self.delivery_landmark,
            "contact_name": self.contact_name,
            "contact_phone": self.contact_phone,
            "notes": self.notes,
            "payment_reference": self.payment_reference,
            "payment_confirmed_by": self.payment_confirmed_by,
            "payment_confirmed_at": to_utc_z(self.payment_confirmed_at),
            "cancellation_reason": self.cancellation_reason,
            "created_at": to_utc_z(self.created_at),
            "confirmed_at": to_utc_z(self.confirmed_at),
            "preparing_at": to_utc_z(self.preparing_at),
            "out_for_delivery_at": to_utc_z(self.out_for_delivery_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
        }
        if include_items:
            data["items"] = [line.to_dict() for line in self.line_items]
        return data


class OrderLineItem(db.Model):
    """Copy of the catalog name/price at order time (never a live reference)."""
    __tablename__ = "order_line_items"
    __table_args__ = (
        db.CheckConstraint("unit_price >= 0", name="ck_order_line_items_price"),
        db.CheckConstraint("quantity >= 1", name="ck_order_line_items_quantity"),
        db.CheckConstraint("subtotal = unit_price * quantity", name="ck_order_line_items_subtotal"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id"), nullable=False, index=True)

    name = db.Column(db.String(128), nullable=False)
    unit_price = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    subtotal = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship(
        "Order",
        backref=db.backref("line_items", lazy=True, order_by="OrderLineItem.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
            "subtotal": self.subtotal,
            "notes": self.notes,
        }


class OrderNumberSequence(db.Model):
    """Per-day counter backing PREFIX-YYYYMMDD-NNN order numbers."""
    __tablename__ = "order_number_sequences"
    __table_args__ = (
        db.UniqueConstraint("prefix", "day_key", name="uq_order_number_sequences_prefix_day"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(16), nullable=False)
    day_key = db.Column(db.String(8), nullable=False)  # YYYYMMDD, operator-local
    next_number = db.Column(db.Integer, nullable=False, default=1)
