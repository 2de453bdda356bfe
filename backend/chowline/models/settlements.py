from __future__ import annotations

from ..extensions import db
from chowline.time_utils import to_utc_z


SETTLEMENT_PENDING = "pending"
SETTLEMENT_PAID = "paid"

FINANCIAL_COLUMNS = (
    "restaurant_id",
    "period_start",
    "period_end",
    "order_count",
    "total_gmv",
    "total_commission",
    "total_delivery_fees",
    "net_payout",
)


class Settlement(db.Model):
    """
    Restaurant payout for one contiguous date period.

    (restaurant_id, period_start, period_end) is the idempotency key.
    Created pending, mutated exactly once to paid, never regenerated.
    """
    __tablename__ = "settlements"
    __table_args__ = (
        db.UniqueConstraint(
            "restaurant_id", "period_start", "period_end",
            name="uq_settlements_restaurant_period",
        ),
        db.CheckConstraint("period_start <= period_end", name="ck_settlements_period"),
        db.CheckConstraint("order_count > 0", name="ck_settlements_order_count"),
        db.CheckConstraint("net_payout + total_commission = total_gmv", name="ck_settlements_balance"),
        db.CheckConstraint("status IN ('pending', 'paid')", name="ck_settlements_status"),
        db.Index("ix_settlements_restaurant_status", "restaurant_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    restaurant_id = db.Column(db.Integer, db.ForeignKey("restaurants.id"), nullable=False, index=True)

    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)

    order_count = db.Column(db.Integer, nullable=False)
    total_gmv = db.Column(db.Integer, nullable=False)
    total_commission = db.Column(db.Integer, nullable=False)
    total_delivery_fees = db.Column(db.Integer, nullable=False)
    net_payout = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=SETTLEMENT_PENDING, index=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    payment_reference = db.Column(db.String(128), nullable=True)
    paid_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    restaurant = db.relationship("Restaurant", backref=db.backref("settlements", lazy=True))

    def to_dict(self, include_internal: bool = True) -> dict:
        data = {
            "id": self.id,
            "restaurant_id": self.restaurant_id,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "order_count": self.order_count,
            "total_gmv": self.total_gmv,
            "total_commission": self.total_commission,
            "total_delivery_fees": self.total_delivery_fees,
            "net_payout": self.net_payout,
            "status": self.status,
            "payment_reference": self.payment_reference,
            "paid_at": to_utc_z(self.paid_at),
            "created_at": to_utc_z(self.created_at),
        }
        if include_internal:
            data["created_by"] = self.created_by
            data["paid_by"] = self.paid_by
        return data
