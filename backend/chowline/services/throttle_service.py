"""
Abuse Throttle Service

WHY: Limit brute-force and spam by capping how many requests one client
address may make to a class of endpoint within a sliding window.

SECURITY FEATURES:
- Keyed by client network address: the leftmost X-Forwarded-For entry, else
  the socket address. X-Real-IP and other alternates are ignored.
- Sliding window over throttle_hits rows (no fixed buckets to game at the
  window edge)
- Rejections carry a machine-readable retry delay
- If the counter store fails: fail open outside production, fail closed
  (PersistenceFailure) in production
"""

from dataclasses import dataclass
from datetime import timedelta
import math

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..errors import PersistenceFailure, RateLimited
from ..extensions import db
from ..models import ThrottleHit
from chowline.time_utils import as_utc_naive, utcnow


@dataclass(frozen=True)
class ThrottleRule:
    limit: int
    window: timedelta


# Configuration constants
BUCKETS = {
    "login": ThrottleRule(limit=5, window=timedelta(minutes=15)),
    "signup": ThrottleRule(limit=3, window=timedelta(hours=1)),
    "order_create": ThrottleRule(limit=10, window=timedelta(minutes=10)),
}

# Hits are kept at least this long
RETENTION = max(rule.window for rule in BUCKETS.values())


def client_key(forwarded_for: str | None, remote_addr: str | None) -> str:
    """
    Leftmost address of the forwarded-for chain, else the socket address.
    """
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first[:64]
    return (remote_addr or "unknown")[:64]


def _check(bucket: str, key: str, now) -> None:
    rule = BUCKETS[bucket]
    window_start = now - rule.window

    count, oldest = (
        db.session.query(func.count(ThrottleHit.id), func.min(ThrottleHit.hit_at))
        .filter(
            ThrottleHit.bucket == bucket,
            ThrottleHit.client_key == key,
            ThrottleHit.hit_at > window_start,
        )
        .one()
    )

    if count >= rule.limit:
        retry_after = max(1, math.ceil((as_utc_naive(oldest) + rule.window - now).total_seconds()))
        current_app.logger.warning(
            "Throttled %s for %s (%d in window, retry in %ds)", bucket, key, count, retry_after
        )
        raise RateLimited(retry_after)

    db.session.add(ThrottleHit(bucket=bucket, client_key=key, hit_at=now))
    db.session.commit()


def check_and_record(bucket: str, key: str, now=None) -> None:
    """
    Count this request against `bucket` for `key`.

    Raises RateLimited (with retry_after_seconds) when the window is full.
    Rejected requests are not counted.
    """
    if bucket not in BUCKETS:
        raise ValueError(f"Unknown throttle bucket: {bucket}")

    try:
        _check(bucket, key, now or utcnow())
    except SQLAlchemyError as exc:
        db.session.rollback()
        if current_app.config.get("APP_ENV") == "production":
            current_app.logger.error("Throttle store unavailable, rejecting request: %s", exc)
            raise PersistenceFailure() from exc
        current_app.logger.warning("Throttle store unavailable, allowing request: %s", exc)


def cleanup_expired_hits(now=None) -> int:
    """Delete hits older than the longest window. Returns count deleted."""
    cutoff = (now or utcnow()) - RETENTION
    deleted = (
        db.session.query(ThrottleHit)
        .filter(ThrottleHit.hit_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return deleted

