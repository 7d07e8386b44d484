from __future__ import annotations
from datetime import datetime
from boxoffice.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError


# Maximum price: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999

# Upper bound on tickets in one order line
MAX_LINE_QUANTITY = 1000


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


TICKET_TYPE_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "description", "price_cents", "currency", "quantity",
        "min_per_order", "max_per_order", "sales_start_at", "sales_end_at",
    },
    required_on_create={"name", "price_cents", "quantity"},
)

PROMOTION_POLICY = ModelValidationPolicy(
    writable_fields={
        "code", "description", "discount_type", "discount_value",
        "max_uses", "starts_at", "ends_at", "is_active",
    },
    required_on_create={"code", "discount_type", "discount_value"},
)


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(key: str, value: Any) -> int:
    """Strict integer coercion: rejects floats, bools, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be true or false")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

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
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_ticket_type(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    `sold` is never client-writable; the policy allowlist keeps it out.
    """
    if "price_cents" in patch and patch["price_cents"] is not None:
        price = patch["price_cents"]
        if price < 0:
            raise ValidationError("price_cents must be >= 0")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"price_cents cannot exceed {MAX_PRICE_CENTS}")

    if "currency" in patch and patch["currency"] is not None:
        patch["currency"] = patch["currency"].upper()
        if len(patch["currency"]) != 3:
            raise ValidationError("currency must be a 3-letter code")


def enforce_rules_promotion(patch: dict) -> None:
    if "max_uses" in patch and patch["max_uses"] is not None and patch["max_uses"] < 1:
        raise ValidationError("max_uses must be >= 1 or null")


# =============================================================================
# ORDER REQUESTS
# =============================================================================

def _pick(raw: dict, *keys: str) -> Any:
    """First present key wins; API clients send camelCase, internal callers snake_case."""
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def parse_order_request(payload: dict | None) -> tuple[list[dict], str | None, dict]:
    """
    Validate the body of POST /events/<id>/orders:

        {tickets: [{ticketTypeId, quantity, attendeeName?, attendeeEmail?}],
         promotionCode?, billingName, billingEmail, billingAddress?}

    snake_case spellings of every key are accepted too.
    Returns (items, promotion_code, billing) in the shape order_service expects.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    raw_items = payload.get("tickets")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("tickets must be a non-empty list")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"tickets[{index}] must be an object")
        ticket_type_id = _pick(raw, "ticketTypeId", "ticket_type_id")
        raw_quantity = raw.get("quantity")
        if ticket_type_id is None or raw_quantity is None:
            raise ValidationError(f"tickets[{index}] requires ticketTypeId and quantity")

        quantity = coerce_int(f"tickets[{index}].quantity", raw_quantity)
        if quantity > MAX_LINE_QUANTITY:
            raise ValidationError(f"tickets[{index}].quantity cannot exceed {MAX_LINE_QUANTITY}")

        item = {
            "ticket_type_id": coerce_int(f"tickets[{index}].ticketTypeId", ticket_type_id),
            "quantity": quantity,
        }
        for key, camel in (("attendee_name", "attendeeName"), ("attendee_email", "attendeeEmail")):
            value = _pick(raw, camel, key)
            if value:
                item[key] = str(value).strip()
        items.append(item)

    address = _pick(payload, "billingAddress", "billing_address")
    billing = {
        "name": str(_pick(payload, "billingName", "billing_name") or "").strip(),
        "email": str(_pick(payload, "billingEmail", "billing_email") or "").strip(),
        "address": str(address).strip() if address else None,
    }
    if not billing["name"]:
        raise ValidationError("billingName is required")
    if "@" not in billing["email"]:
        raise ValidationError("billingEmail must be a valid email")

    promotion_code = _pick(payload, "promotionCode", "promotion_code")
    if promotion_code is not None and not isinstance(promotion_code, str):
        raise ValidationError("promotionCode must be a string")

    return items, (promotion_code.strip() or None) if promotion_code else None, billing
