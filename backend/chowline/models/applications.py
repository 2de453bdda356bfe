from __future__ import annotations

from ..extensions import db
from chowline.time_utils import to_utc_z


APPLICATION_PENDING = "pending"
APPLICATION_APPROVED = "approved"
APPLICATION_REJECTED = "rejected"

VALID_APPLICATION_STATUSES = (APPLICATION_PENDING, APPLICATION_APPROVED, APPLICATION_REJECTED)


class RestaurantApplication(db.Model):
    """
    A user's request to list a restaurant.

    Reviewed once by an administrator. Approval creates the restaurant and
    makes the applicant its owner; the commission rate is set at approval,
    never by the applicant. At most one pending application per applicant.
    """
    __tablename__ = "restaurant_applications"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_restaurant_applications_status",
        ),
        db.CheckConstraint("delivery_fee >= 0", name="ck_restaurant_applications_delivery_fee"),
        db.Index(
            "uq_restaurant_applications_one_pending",
            "applicant_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    applicant_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    name = db.Column(db.String(128), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    delivery_fee = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=APPLICATION_PENDING, index=True)

    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.String(255), nullable=True)
    restaurant_id = db.Column(db.Integer, db.ForeignKey("restaurants.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    applicant = db.relationship("User", foreign_keys=[applicant_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "applicant_id": self.applicant_id,
            "name": self.name,
            "phone": self.phone,
            "address": self.address,
            "delivery_fee": self.delivery_fee,
            "status": self.status,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": to_utc_z(self.reviewed_at) if self.reviewed_at else None,
            "rejection_reason": self.rejection_reason,
            "restaurant_id": self.restaurant_id,
            "created_at": to_utc_z(self.created_at),
        }
