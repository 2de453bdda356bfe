# Overview: Service-layer operations for order numbering; atomic per-day counters.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import OrderNumberSequence
from chowline.time_utils import local_today


def format_order_number(prefix: str, day_key: str, number: int, pad: int = 3) -> str:
    return f"{prefix}-{day_key}-{number:0{pad}d}"


def _current_value(prefix: str, day_key: str) -> int:
    db.session.flush()
    current = (
        db.session.query(OrderNumberSequence.next_number)
        .filter_by(prefix=prefix, day_key=day_key)
        .scalar()
    )
    return current - 1


def next_order_number(
    *,
    prefix: str,
    tz_name: str,
    now: Optional[datetime] = None,
) -> str:
    """
    Atomically allocate the next order number, e.g. CHW-20261017-004.

    The day component is the operator's local calendar date, and numbering
    restarts at 001 each day. The counter row is bumped with a single
    UPDATE ... SET next_number = next_number + 1, so two concurrent callers
    can never be handed the same number.

    Must be called before anything else is pending in the session: a lost
    race on the day's first insert rolls the transaction back.
    """
    if not prefix:
        raise ValueError("prefix is required")

    day_key = local_today(tz_name, now).strftime("%Y%m%d")

    stmt = (
        update(OrderNumberSequence)
        .where(
            OrderNumberSequence.prefix == prefix,
            OrderNumberSequence.day_key == day_key,
        )
        .values(next_number=OrderNumberSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _current_value(prefix, day_key)
    else:
        seq = OrderNumberSequence(prefix=prefix, day_key=day_key, next_number=2)
        db.session.add(seq)
        try:
            db.session.flush()
            next_num = 1
        except IntegrityError:
            # Another request created today's row first
            db.session.rollback()
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            next_num = _current_value(prefix, day_key)

    return format_order_number(prefix, day_key, next_num)
