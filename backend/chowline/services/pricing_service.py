# Overview: Pricing oracle; authoritative catalog prices read at call time.

"""
Pricing Oracle

WHY: Every amount that ends up on an order comes from here, never from the
client. Prices are read from the catalog store on each call (no caching), so
a financial calculation never sees a stale price.

Callers must treat a missing id as fatal for the whole request (fail closed,
never partial-fill); see missing_ids().
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from ..extensions import db
from ..models import MenuItem


@dataclass(frozen=True)
class PricedItem:
    item_id: int
    name: str
    unit_price: int
    is_available: bool
    restaurant_id: int


def lookup_prices(item_ids: Iterable[int]) -> dict[int, PricedItem]:
    """
    Current price, availability and owning restaurant for each known id.

    Column-level select, so values come straight from the store rather than
    from any entity already loaded in the session.
    """
    ids = sorted(set(item_ids))
    if not ids:
        return {}

    rows = (
        db.session.query(
            MenuItem.id,
            MenuItem.name,
            MenuItem.price,
            MenuItem.is_available,
            MenuItem.restaurant_id,
        )
        .filter(MenuItem.id.in_(ids))
        .all()
    )
    return {
        row.id: PricedItem(
            item_id=row.id,
            name=row.name,
            unit_price=row.price,
            is_available=bool(row.is_available),
            restaurant_id=row.restaurant_id,
        )
        for row in rows
    }


def missing_ids(item_ids: Iterable[int], priced: dict[int, PricedItem]) -> list[int]:
    """Requested ids absent from the oracle result, in request order."""
    seen = set()
    missing = []
    for item_id in item_ids:
        if item_id not in priced and item_id not in seen:
            missing.append(item_id)
        seen.add(item_id)
    return missing


def compute_commission(subtotal: int, rate_bps: int) -> int:
    """
    round(subtotal * rate / 100), rate given in basis points.

    Halves round away from zero, matching SQL ROUND on numeric values
    (Python's round() would send 0.5 to the even neighbour).
    """
    amount = Decimal(subtotal) * Decimal(rate_bps) / Decimal(10000)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
