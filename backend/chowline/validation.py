from __future__ import annotations
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from chowline.time_utils import parse_iso_datetime, parse_iso_date

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError


# Amounts are stored in minor units (kobo); ceiling is 99,999,999.99 naira
MAX_PRICE = 9_999_999_999

# Cart shape limits
MIN_CART_ITEMS = 1
MAX_CART_ITEMS = 20
MIN_QUANTITY = 1
MAX_QUANTITY = 20

MIN_ADDRESS_LENGTH = 5
MIN_CONTACT_NAME_LENGTH = 2
MAX_NOTE_LENGTH = 255


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


@dataclass(frozen=True)
class CartLine:
    item_id: int
    quantity: int
    note: str | None = None


@dataclass(frozen=True)
class OrderRequest:
    restaurant_id: int
    lines: tuple[CartLine, ...]
    delivery_address: str
    contact_name: str
    contact_phone: str
    delivery_landmark: str | None = None
    notes: str | None = None


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(value: Any, field: str) -> int:
    """Strict integer parsing: rejects bools, floats, decimals and scientific notation."""
    # bool is an int subclass; True is not a quantity
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer", field=field)
        if 'e' in stripped.lower():
            raise ValidationError(
                f"{field} must be a plain integer (scientific notation not allowed)", field=field
            )
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)", field=field)
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", field=field)
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal", field=field)
    raise ValidationError(f"{field} must be an integer", field=field)


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(value, col.key)

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be true or false", field=col.key)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime", field=col.key)
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime", field=col.key)
            return dt
        raise ValidationError(f"{col.key} must be a datetime", field=col.key)

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", field=missing[0])

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}", field=k)
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}", field=k)

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null", field=k)
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank", field=k)

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}", field=k)

        patch[k] = val

    return patch


def _check_money(patch: dict, field: str) -> None:
    if field in patch and patch[field] is not None:
        amount = patch[field]
        if amount < 0:
            raise ValidationError(f"{field} must be >= 0", field=field)
        if amount > MAX_PRICE:
            raise ValidationError(f"{field} cannot exceed {MAX_PRICE}", field=field)


def enforce_rules_menu_item(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    _check_money(patch, "price")


def enforce_rules_restaurant(patch: dict) -> None:
    _check_money(patch, "delivery_fee")


def parse_commission_rate(value: Any, field: str = "commission_rate") -> int:
    """
    Percent with up to two decimals ("10", "7.5", 12.25) -> basis points.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a percentage", field=field)
    try:
        pct = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{field} must be a percentage", field=field)
    if not pct.is_finite():
        raise ValidationError(f"{field} must be a percentage", field=field)
    if pct != pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP):
        raise ValidationError(f"{field} allows at most two decimal places", field=field)
    if pct < 0 or pct > 100:
        raise ValidationError(f"{field} must be between 0 and 100", field=field)
    return int(pct * 100)


def require_text(
    value: Any,
    field: str,
    *,
    min_length: int = 1,
    max_length: int | None = None,
) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field} is required", field=field)
    text = value.strip()
    if len(text) < min_length:
        if min_length <= 1:
            raise ValidationError(f"{field} is required", field=field)
        raise ValidationError(f"{field} must be at least {min_length} characters", field=field)
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}", field=field)
    return text


def optional_text(value: Any, field: str, *, max_length: int = MAX_NOTE_LENGTH) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field)
    text = value.strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}", field=field)
    return text


def validate_phone(value: Any, pattern: str, field: str = "contact_phone") -> str:
    phone = require_text(value, field)
    # Tolerate formatting spaces and dashes
    normalized = re.sub(r"[\s-]", "", phone)
    if not re.match(pattern, normalized):
        raise ValidationError("Invalid phone number format", field=field)
    return normalized


def validate_cart_items(items: Any) -> tuple[CartLine, ...]:
    """
    1-20 lines, each quantity in [1, 20].

    Only item_id, quantity and note are read from a line; price or any other
    caller-supplied amount is ignored.
    """
    if not isinstance(items, list):
        raise ValidationError("items must be a list", field="items")
    if len(items) < MIN_CART_ITEMS:
        raise ValidationError("Order must contain at least one item", field="items")
    if len(items) > MAX_CART_ITEMS:
        raise ValidationError(f"Order cannot contain more than {MAX_CART_ITEMS} items", field="items")

    lines = []
    for idx, raw in enumerate(items):
        prefix = f"items[{idx}]"
        if not isinstance(raw, dict):
            raise ValidationError(f"{prefix} must be an object", field=prefix)
        if raw.get("item_id") is None:
            raise ValidationError(f"{prefix}.item_id is required", field=f"{prefix}.item_id")
        item_id = coerce_int(raw.get("item_id"), f"{prefix}.item_id")
        if item_id < 1:
            raise ValidationError(f"{prefix}.item_id is invalid", field=f"{prefix}.item_id")
        if raw.get("quantity") is None:
            raise ValidationError(f"{prefix}.quantity is required", field=f"{prefix}.quantity")
        quantity = coerce_int(raw.get("quantity"), f"{prefix}.quantity")
        if quantity < MIN_QUANTITY or quantity > MAX_QUANTITY:
            raise ValidationError(
                f"{prefix}.quantity must be between {MIN_QUANTITY} and {MAX_QUANTITY}",
                field=f"{prefix}.quantity",
            )
        note = optional_text(raw.get("note", raw.get("notes")), f"{prefix}.note")
        lines.append(CartLine(item_id=item_id, quantity=quantity, note=note))
    return tuple(lines)


def validate_order_request(payload: Any, *, phone_pattern: str) -> OrderRequest:
    """
    Shape-check an order placement payload, reporting the first offending field.
    """
    if payload is None or not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if payload.get("restaurant_id") is None:
        raise ValidationError("restaurant_id is required", field="restaurant_id")
    restaurant_id = coerce_int(payload.get("restaurant_id"), "restaurant_id")

    lines = validate_cart_items(payload.get("items"))

    delivery_address = require_text(
        payload.get("delivery_address"), "delivery_address",
        min_length=MIN_ADDRESS_LENGTH, max_length=255,
    )
    contact_name = require_text(
        payload.get("contact_name"), "contact_name",
        min_length=MIN_CONTACT_NAME_LENGTH, max_length=128,
    )
    contact_phone = validate_phone(payload.get("contact_phone"), phone_pattern)

    return OrderRequest(
        restaurant_id=restaurant_id,
        lines=lines,
        delivery_address=delivery_address,
        contact_name=contact_name,
        contact_phone=contact_phone,
        delivery_landmark=optional_text(payload.get("delivery_landmark"), "delivery_landmark"),
        notes=optional_text(payload.get("notes"), "notes", max_length=1000),
    )


def parse_date_field(value: Any, field: str) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field} is required (YYYY-MM-DD)", field=field)
    try:
        parsed = parse_iso_date(value)
    except ValueError:
        raise ValidationError(f"{field} must be a date (YYYY-MM-DD)", field=field)
    if parsed is None:
        raise ValidationError(f"{field} is required (YYYY-MM-DD)", field=field)
    return parsed
