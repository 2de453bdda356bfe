# Overview: Service-layer operations for the audit ledger; append and read only.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func

from ..extensions import db
from ..models import AuditEntry
from chowline.time_utils import utcnow
"""
Audit Ledger Invariants (authoritative)

- Append-only record of completed, consequential actions.
- Rejected or failed attempts are never recorded here; they go to the
  operator log stream instead.
- Entries are written inside the same DB transaction as the action they
  record, so a rolled-back action leaves no entry behind.
- The storage layer rejects UPDATE and DELETE on audit_entries.
"""


def record(
    action: str,
    *,
    actor_id: int | None = None,
    target_type: str | None = None,
    target_id=None,
    metadata: Optional[dict] = None,
    ip_address: str | None = None,
    occurred_at: Optional[datetime] = None,
) -> AuditEntry:
    """
    Append one audit entry to the current transaction.

    Flushes so the caller gets the entry id; the caller owns the commit.
    """
    if not action:
        raise ValueError("action is required")

    entry = AuditEntry(
        action=action,
        actor_id=actor_id,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        entry_metadata=dict(metadata or {}),
        ip_address=ip_address,
        created_at=occurred_at or utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def list_entries(
    *,
    action: str | None = None,
    target_type: str | None = None,
    target_id=None,
    actor_id: int | None = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[AuditEntry], int]:
    """Newest first. `until` is exclusive."""
    query = db.session.query(AuditEntry)
    if action:
        query = query.filter(AuditEntry.action == action)
    if target_type:
        query = query.filter(AuditEntry.target_type == target_type)
    if target_id is not None:
        query = query.filter(AuditEntry.target_id == str(target_id))
    if actor_id is not None:
        query = query.filter(AuditEntry.actor_id == actor_id)
    if since:
        query = query.filter(AuditEntry.created_at >= since)
    if until:
        query = query.filter(AuditEntry.created_at < until)

    total = query.count()

    if offset < 0:
        offset = 0
    if limit < 1:
        limit = 1
    if limit > 500:
        limit = 500

    rows = (
        query.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


def entries_between(start: datetime, end: datetime) -> list[AuditEntry]:
    """Oldest first, half-open [start, end)."""
    return (
        db.session.query(AuditEntry)
        .filter(AuditEntry.created_at >= start, AuditEntry.created_at < end)
        .order_by(AuditEntry.created_at.asc(), AuditEntry.id.asc())
        .all()
    )


def count_actions(start: datetime, end: datetime) -> dict[str, int]:
    rows = (
        db.session.query(AuditEntry.action, func.count(AuditEntry.id))
        .filter(AuditEntry.created_at >= start, AuditEntry.created_at < end)
        .group_by(AuditEntry.action)
        .all()
    )
    return {action: count for action, count in rows}


def has_entry(action: str, *, target_type: str | None = None, target_id=None) -> bool:
    query = db.session.query(AuditEntry.id).filter(AuditEntry.action == action)
    if target_type:
        query = query.filter(AuditEntry.target_type == target_type)
    if target_id is not None:
        query = query.filter(AuditEntry.target_id == str(target_id))
    return query.first() is not None
