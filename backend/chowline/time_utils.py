from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_today(tz_name: str, now: Optional[datetime] = None) -> date:
    """
    Calendar date in the operator's timezone.

    `now` is a UTC-naive datetime (defaults to utcnow()).
    """
    now = now or utcnow()
    return now.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name)).date()


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    """Parse YYYY-MM-DD. None / "" -> None."""
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None
    return date.fromisoformat(s)


def day_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """
    UTC-naive half-open window covering [start 00:00, end 23:59:59.999...].
    """
    return datetime.combine(start, time.min), datetime.combine(end + timedelta(days=1), time.min)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    ISO-8601 text -> UTC-naive datetime; blank -> None.

    Offsets (including a trailing Z) are converted to UTC. Text without an
    offset is taken to be UTC already. Raises ValueError on malformed input.
    """
    text = (value or "").strip()
    if not text:
        return None
    if text[-1] in "zZ":
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Wire format for timestamps: seconds precision, UTC, trailing Z. Naive means UTC."""
    if dt is None:
        return None
    aware = dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)
    return aware.replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def as_utc_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Canonical form for a stored timestamp.

    PostgreSQL returns timestamptz columns tz-aware while SQLite returns them
    naive; both compare against utcnow() once converted here.
    """
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)
