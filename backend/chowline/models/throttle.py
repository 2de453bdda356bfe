from __future__ import annotations

from ..extensions import db


class ThrottleHit(db.Model):
    """One accepted request in a sliding-window bucket."""
    __tablename__ = "throttle_hits"
    __table_args__ = (
        db.Index("ix_throttle_hits_bucket_key_hit", "bucket", "client_key", "hit_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    bucket = db.Column(db.String(32), nullable=False)
    client_key = db.Column(db.String(64), nullable=False)
    hit_at = db.Column(db.DateTime(timezone=True), nullable=False)
