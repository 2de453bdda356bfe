from __future__ import annotations

from ..extensions import db
from chowline.time_utils import to_utc_z


class AuditEntry(db.Model):
    """
    Completed, consequential actions only.

    IMMUTABLE: Never update or delete. Append-only; the storage layer rejects
    UPDATE and DELETE on this table.
    """
    __tablename__ = "audit_entries"
    __table_args__ = (
        db.Index("ix_audit_entries_target", "target_type", "target_id"),
        db.Index("ix_audit_entries_action_created", "action", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(64), nullable=False, index=True)

    # Nullable for scheduler actions
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    target_type = db.Column(db.String(64), nullable=True)
    target_id = db.Column(db.String(64), nullable=True)

    # "metadata" is reserved on declarative models
    entry_metadata = db.Column("metadata", db.JSON, nullable=False, default=dict)

    ip_address = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "actor_id": self.actor_id,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "metadata": self.entry_metadata or {},
            "ip_address": self.ip_address,
            "created_at": to_utc_z(self.created_at),
        }
