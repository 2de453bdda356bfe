# Overview: Daily export of audit entries to the write-once archive.

"""
Audit Export

WHY: The audit table lives in the same database as the data it describes.
A daily compressed copy in a write-once archive means tampering with the
live table can be detected later.

RULES:
- Exports one UTC day (default: yesterday) to
  <AUDIT_EXPORT_PREFIX>/YYYY/MM/DD/audit.json.gz
- Idempotent per date: an existing key is reported as skipped, never
  overwritten
- Records its own outcome as audit_export_complete / audit_export_failed,
  which the security monitor checks for (dead man's switch)
"""

from __future__ import annotations

import gzip
import json
from datetime import date, datetime, time, timedelta

from flask import current_app

from ..errors import ExportFailure
from ..extensions import db
from . import audit_service
from .archive_store import ArchiveKeyExists, FilesystemArchiveStore
from .scheduler_service import SchedulerCapability, require_capability
from chowline.time_utils import to_utc_z, utcnow


def export_key(prefix: str, export_date: date) -> str:
    return f"{prefix}/{export_date:%Y/%m/%d}/audit.json.gz"


def default_store() -> FilesystemArchiveStore:
    return FilesystemArchiveStore(current_app.config["AUDIT_EXPORT_DIR"])


def build_export_payload(export_date: date, now: datetime) -> tuple[bytes, int]:
    """Gzipped JSON document for one UTC day. Returns (bytes, row_count)."""
    start = datetime.combine(export_date, time.min)
    end = start + timedelta(days=1)
    entries = [entry.to_dict() for entry in audit_service.entries_between(start, end)]

    document = {
        "export_date": export_date.isoformat(),
        "exported_at": to_utc_z(now),
        "row_count": len(entries),
        "entries": entries,
    }
    raw = json.dumps(document, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return gzip.compress(raw), len(entries)


def _record_outcome(action: str, export_date: date, metadata: dict) -> None:
    audit_service.record(
        action,
        target_type="audit_export",
        target_id=export_date.isoformat(),
        metadata=metadata,
    )
    db.session.commit()


def export_daily_audit(
    capability: SchedulerCapability,
    *,
    export_date: date | None = None,
    store: FilesystemArchiveStore | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Export one day of audit entries.

    Returns a result dict with `status` in {"exported", "skipped"}.
    Raises ExportFailure after recording audit_export_failed.
    """
    require_capability(capability)

    if not current_app.config.get("AUDIT_EXPORT_ENABLED"):
        current_app.logger.info("Audit export disabled, skipping")
        return {"status": "skipped", "reason": "disabled"}

    now = now or utcnow()
    export_date = export_date or (now - timedelta(days=1)).date()
    store = store or default_store()
    key = export_key(current_app.config["AUDIT_EXPORT_PREFIX"], export_date)

    if store.exists(key):
        current_app.logger.info("Audit export for %s already archived at %s", export_date, key)
        return {"status": "skipped", "reason": "already_exported", "key": key}

    data, row_count = build_export_payload(export_date, now)

    try:
        written = store.put_once(key, data)
    except ArchiveKeyExists:
        # Another run won the race for this date
        current_app.logger.info("Audit export for %s archived concurrently at %s", export_date, key)
        return {"status": "skipped", "reason": "already_exported", "key": key}
    except (OSError, ValueError) as exc:
        current_app.logger.error("Audit export for %s failed: %s", export_date, exc)
        _record_outcome("audit_export_failed", export_date, {
            "export_date": export_date.isoformat(),
            "key": key,
            "error": str(exc)[:500],
        })
        raise ExportFailure(details={"export_date": export_date.isoformat()}) from exc

    _record_outcome("audit_export_complete", export_date, {
        "export_date": export_date.isoformat(),
        "key": key,
        "row_count": row_count,
        "compressed_bytes": written,
    })
    current_app.logger.info(
        "Audit export for %s complete: %d rows, %d bytes -> %s", export_date, row_count, written, key
    )
    return {
        "status": "exported",
        "key": key,
        "export_date": export_date.isoformat(),
        "row_count": row_count,
        "compressed_bytes": written,
    }
