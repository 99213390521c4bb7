from __future__ import annotations
from datetime import datetime
from storekeeper.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .models.inventory import MOVEMENT_ADJUSTMENT, MOVEMENT_TYPES
from .models.sales import PAYMENT_TYPES, SALE_TYPES


# Maximum price: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    - extra_fields: accepted keys that are not model columns (e.g. signed_delta)
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore
    extra_fields: dict[str, type] | None = None


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(key: str, value: Any) -> int:
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    # Floats are accepted only when they carry no fraction (JSON clients send 5.0)
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
        return value.strip().lower() in ("true", "1")
    if isinstance(value, int):
        return bool(value)
    raise ValidationError(f"{key} must be a boolean")


def coerce_datetime(key: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            dt = parse_iso_datetime(value)
        except ValueError:
            raise ValidationError(f"{key} must be an ISO-8601 datetime")
        if dt is None:
            raise ValidationError(f"{key} must be an ISO-8601 datetime")
        return dt
    raise ValidationError(f"{key} must be a datetime")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, Boolean):
        return coerce_bool(col.key, value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        return coerce_datetime(col.key, value)

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        if isinstance(value, (dict, list)):
            raise ValidationError(f"{col.key} must be a string")
        return str(value).strip()

    # Default: leave as-is
    return value


def _coerce_extra(key: str, kind: type, value: Any):
    if value is None:
        return None
    if kind is int:
        return coerce_int(key, value)
    if kind is bool:
        return coerce_bool(key, value)
    if kind is datetime:
        return coerce_datetime(key, value)
    return str(value).strip()


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
        missing = sorted(f for f in required if payload.get(f) is None)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)
    extras = policy.extra_fields or {}

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols and k not in extras:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        if k in extras:
            patch[k] = _coerce_extra(k, extras[k], raw)
            continue

        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_price(patch: dict, key: str) -> None:
    if key in patch and patch[key] is not None:
        price = patch[key]
        if price < 0:
            raise ValidationError(f"{key} must be >= 0")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"{key} cannot exceed {MAX_PRICE_CENTS}")


def enforce_rules_product(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    for key in ("package_purchase_price_cents", "unit_sale_price_cents", "package_sale_price_cents"):
        _check_price(patch, key)

    if "units_per_package" in patch and patch["units_per_package"] is not None:
        if patch["units_per_package"] < 1:
            raise ValidationError("units_per_package must be >= 1")

    if "current_stock" in patch and patch["current_stock"] is not None:
        if patch["current_stock"] < 0:
            raise ValidationError("current_stock must be >= 0")

    if "min_stock_alert" in patch and patch["min_stock_alert"] is not None:
        if patch["min_stock_alert"] < 0:
            raise ValidationError("min_stock_alert must be >= 0")


def enforce_rules_stock_movement(patch: dict) -> None:
    """
    IN/OUT/TRANSFER carry a positive quantity magnitude.
    ADJUSTMENT carries a non-zero signed_delta instead.
    """
    movement_type = patch.get("type")
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"type must be one of {', '.join(MOVEMENT_TYPES)}")

    if movement_type == MOVEMENT_ADJUSTMENT:
        if patch.get("quantity") is not None:
            raise ValidationError("ADJUSTMENT uses signed_delta, not quantity")
        if patch.get("signed_delta") in (None, 0):
            raise ValidationError("signed_delta must be a non-zero integer for ADJUSTMENT")
    else:
        if patch.get("signed_delta") is not None:
            raise ValidationError(f"signed_delta is only valid for ADJUSTMENT, not {movement_type}")
        if patch.get("quantity") is None or patch["quantity"] <= 0:
            raise ValidationError(f"quantity must be > 0 for {movement_type}")

    _check_price(patch, "unit_price_cents")


def enforce_rules_sale(patch: dict) -> None:
    if patch.get("quantity") is None or patch["quantity"] <= 0:
        raise ValidationError("quantity must be > 0")
    if patch.get("sale_type") not in SALE_TYPES:
        raise ValidationError(f"sale_type must be one of {', '.join(SALE_TYPES)}")
    enforce_payment_type(patch)


def enforce_payment_type(patch: dict) -> None:
    if "payment_type" in patch and patch["payment_type"] not in PAYMENT_TYPES:
        raise ValidationError(f"payment_type must be one of {', '.join(PAYMENT_TYPES)}")


def enforce_rules_debt_payment(patch: dict) -> None:
    if patch.get("amount_cents") is None or patch["amount_cents"] <= 0:
        raise ValidationError("amount_cents must be > 0")
    enforce_payment_type(patch)


def query_datetime(args, key: str) -> datetime | None:
    """Optional ISO-8601 query parameter."""
    raw = args.get(key)
    if raw is None or raw == "":
        return None
    return coerce_datetime(key, raw)


def query_bool(args, key: str) -> bool | None:
    raw = args.get(key)
    if raw is None or raw == "":
        return None
    return coerce_bool(key, raw)


def query_int(args, key: str, default: int | None = None) -> int | None:
    raw = args.get(key)
    if raw is None or raw == "":
        return default
    return coerce_int(key, raw)
