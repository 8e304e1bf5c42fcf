from __future__ import annotations
from datetime import date, datetime
from .time_utils import parse_iso_date, today

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Date, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError, ConflictError  # noqa: F401  (re-exported for routes)


# Maximum unit cost: 999,999,999 cents
MAX_UNIT_COST_CENTS = 999_999_999

# Maximum units in a single lot or a single request line
MAX_QUANTITY = 1_000_000

LOT_NUMBER_MAX_LENGTH = 50

# Movement reasons are stored in a String(255) column
MAX_REASON_LENGTH = 255


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(value: Any, field: str) -> int:
    """Strict integer coercion: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def coerce_positive_quantity(value: Any, field: str = "quantity") -> int:
    qty = coerce_int(value, field)
    if qty <= 0:
        raise ValidationError(f"{field} must be > 0")
    if qty > MAX_QUANTITY:
        raise ValidationError(f"{field} cannot exceed {MAX_QUANTITY}")
    return qty


def coerce_reason(value: Any, field: str = "reason") -> str | None:
    """Optional free-text reason: None or a stripped string."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if len(value) > MAX_REASON_LENGTH:
        raise ValidationError(f"{field} cannot exceed {MAX_REASON_LENGTH} characters")
    return value or None


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(value, col.key)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        return bool(value)

    # Dates before DateTime: accept "YYYY-MM-DD"
    if isinstance(coltype, Date) and not isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                d = parse_iso_date(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 date (YYYY-MM-DD)")
            if d is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 date (YYYY-MM-DD)")
            return d
        raise ValidationError(f"{col.key} must be a date")

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


def enforce_rules_lot(patch: dict, *, existing=None) -> None:
    """
    Lot business rules not captured by column metadata.

    `existing` is the current Lot on update so date checks see the merged
    result of old and new values.
    """
    if "initial_quantity" in patch:
        qty = patch["initial_quantity"]
        if qty is None or qty <= 0:
            raise ValidationError("initial_quantity must be > 0")
        if qty > MAX_QUANTITY:
            raise ValidationError(f"initial_quantity cannot exceed {MAX_QUANTITY}")

    if "unit_cost_cents" in patch and patch["unit_cost_cents"] is not None:
        cost = patch["unit_cost_cents"]
        if cost < 0:
            raise ValidationError("unit_cost_cents must be >= 0")
        if cost > MAX_UNIT_COST_CENTS:
            raise ValidationError(f"unit_cost_cents cannot exceed {MAX_UNIT_COST_CENTS}")

    if "lot_number" in patch:
        number = patch["lot_number"] or ""
        if not (1 <= len(number) <= LOT_NUMBER_MAX_LENGTH):
            raise ValidationError(f"lot_number must be 1-{LOT_NUMBER_MAX_LENGTH} characters")

    if "lot_barcode" in patch and patch["lot_barcode"] == "":
        patch["lot_barcode"] = None

    manufacture = patch.get("manufacture_date", getattr(existing, "manufacture_date", None))
    expiration = patch.get("expiration_date", getattr(existing, "expiration_date", None))

    if "manufacture_date" in patch and manufacture is not None and manufacture > today():
        raise ValidationError("manufacture_date cannot be in the future")
    if manufacture is not None and expiration is not None and expiration <= manufacture:
        raise ValidationError("expiration_date must be after manufacture_date")
