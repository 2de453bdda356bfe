# Overview: Scheduler jobs and the capability that gates them.

"""
Scheduler (elevated privilege) path

WHY: Stale-order sweeps, audit exports and the security monitor act without
a user session. They run only with a SchedulerCapability, and the single way
to obtain one is grant_scheduler_capability() with the shared scheduler
secret. There is no ambient elevated access.

SECURITY:
- Fails closed when CRON_SECRET is unset (never matches an empty secret)
- Constant-time comparison of the presented secret
"""

from __future__ import annotations

import hmac
from datetime import datetime, timedelta

from flask import current_app

from ..errors import ChowlineError, Forbidden, Unauthenticated
from ..models.orders import STATUS_AWAITING_PAYMENT, STATUS_CANCELLED
from ..extensions import db
from . import audit_service, order_state_service
from chowline.time_utils import utcnow, to_utc_z


STALE_CANCEL_REASON = "payment_timeout"

_GRANT = object()


class SchedulerCapability:
    """Proof that the caller presented the scheduler secret."""

    __slots__ = ("granted_at",)

    def __init__(self, granted_at: datetime, _grant=None):
        if _grant is not _GRANT:
            raise TypeError("SchedulerCapability is obtained via grant_scheduler_capability()")
        self.granted_at = granted_at


def grant_scheduler_capability(presented_secret: str | None) -> SchedulerCapability:
    """
    Exchange the scheduler secret for a capability.

    Raises Unauthenticated if no secret is configured or the presented one
    does not match.
    """
    configured = current_app.config.get("CRON_SECRET")
    if not configured:
        current_app.logger.error("Scheduler call rejected: CRON_SECRET is not configured")
        raise Unauthenticated("Unauthorized")
    if not presented_secret or not hmac.compare_digest(
        presented_secret.encode("utf-8"), configured.encode("utf-8")
    ):
        current_app.logger.warning("Scheduler call rejected: bad secret")
        raise Unauthenticated("Unauthorized")
    return SchedulerCapability(utcnow(), _grant=_GRANT)


def capability_from_config() -> SchedulerCapability:
    """For operator CLI jobs running on the host: present the configured secret."""
    return grant_scheduler_capability(current_app.config.get("CRON_SECRET"))


def require_capability(capability) -> None:
    if not isinstance(capability, SchedulerCapability):
        raise Forbidden()


def cancel_stale_orders(
    capability: SchedulerCapability,
    *,
    now: datetime | None = None,
    threshold_minutes: int | None = None,
) -> dict:
    """
    Cancel every order still awaiting payment past the threshold.

    Each cancellation is its own conditional transition from
    awaiting_payment, so an order confirmed meanwhile is left alone and a
    second sweep finds nothing to do.
    """
    require_capability(capability)

    if threshold_minutes is None:
        threshold_minutes = current_app.config["STALE_ORDER_MINUTES"]
    now = now or utcnow()

    cancelled: list[int] = []
    skipped: list[int] = []
    for order_id in order_state_service.find_stale_order_ids(threshold_minutes=threshold_minutes, now=now):
        try:
            order_state_service.transition(
                order_id,
                STATUS_CANCELLED,
                None,
                reason=STALE_CANCEL_REASON,
                expected_from=STATUS_AWAITING_PAYMENT,
                audit_action="order_auto_cancelled",
                extra_metadata={"reason": STALE_CANCEL_REASON},
            )
            cancelled.append(order_id)
        except ChowlineError as exc:
            # Moved on by someone else between selection and update
            current_app.logger.warning("Stale sweep skipped order %s: %s", order_id, exc)
            skipped.append(order_id)

    if cancelled:
        current_app.logger.info("Stale sweep cancelled %d order(s)", len(cancelled))
    return {
        "cancelled_orders": len(cancelled),
        "cancelled_ids": cancelled,
        "skipped_ids": skipped,
        "threshold_minutes": threshold_minutes,
    }


def run_security_monitor(
    capability: SchedulerCapability,
    *,
    now: datetime | None = None,
    window_minutes: int = 24 * 60,
) -> dict:
    """
    Summarize recent audit activity and check yesterday's export landed.

    Records security_monitor_check with the summary.
    """
    require_capability(capability)

    now = now or utcnow()
    since = now - timedelta(minutes=window_minutes)
    counts = audit_service.count_actions(since, now + timedelta(microseconds=1))

    # Dead man's switch: yesterday's export must have completed
    yesterday = (now - timedelta(days=1)).date().isoformat()
    export_ok = audit_service.has_entry(
        "audit_export_complete", target_type="audit_export", target_id=yesterday
    )
    export_skipped = not current_app.config.get("AUDIT_EXPORT_ENABLED")
    export_missing = not export_ok and not export_skipped

    if export_missing:
        current_app.logger.error("Audit export for %s is missing", yesterday)

    summary = {
        "period_minutes": window_minutes,
        "action_summary": counts,
        "payment_confirmations": counts.get("payment_confirmed", 0),
        "auto_cancellations": counts.get("order_auto_cancelled", 0),
        "export_date_checked": yesterday,
        "export_missing": export_missing,
    }

    audit_service.record(
        "security_monitor_check",
        target_type="audit_log",
        metadata=summary,
    )
    db.session.commit()

    return {**summary, "checked_at": to_utc_z(now)}
