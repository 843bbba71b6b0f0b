from __future__ import annotations
from datetime import date, datetime
from dairy.time_utils import parse_iso_datetime, parse_iso_date

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, JSON, String, Text
from sqlalchemy.orm import DeclarativeMeta


# Maximum price: 9,999,999.99 (999,999,999 minor units)
MAX_PRICE_CENTS = 999_999_999
MAX_QUANTITY = 1000


class ValidationError(ValueError):
    """400-level input problem."""

    def __init__(self, message: str, errors: dict | None = None):
        super().__init__(message)
        self.errors = errors


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., insufficient stock)."""


class NotFoundError(LookupError):
    """404-level missing (or foreign-tenant) row."""


class ReferentialIntegrityViolation(LookupError):
    """
    A reference points at a row that is missing, belongs to another tenant,
    or is soft-deleted/inactive.

    Missing rows surface as 404; inactive rows as 409.
    """

    def __init__(self, message: str, status_code: int = 404):
        super().__init__(message)
        self.status_code = status_code


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


def coerce_int(key: str, value: Any) -> int:
    # Already an int (but not bool which is a subclass of int)
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


def coerce_date(key: str, value: Any) -> date:
    try:
        parsed = parse_iso_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an ISO-8601 date (YYYY-MM-DD)")
    if parsed is None:
        raise ValidationError(f"{key} must be an ISO-8601 date (YYYY-MM-DD)")
    return parsed


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, Float):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a number")
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{col.key} must be a number")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        return bool(value)

    # DateTime before Date: both are checked by isinstance
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

    if isinstance(coltype, Date):
        return coerce_date(col.key, value)

    if isinstance(coltype, JSON):
        return value

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
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                errors={f: "required" for f in missing},
            )

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}", errors={k: "not allowed"})
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}", errors={k: "unknown"})

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null", errors={k: "cannot be null"})
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank", errors={k: "cannot be blank"})

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_product(patch: dict) -> None:
    if "price_cents" in patch and patch["price_cents"] is not None:
        price = patch["price_cents"]
        if price < 0:
            raise ValidationError("price_cents must be >= 0")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"price_cents cannot exceed {MAX_PRICE_CENTS}")
    if "stock_quantity" in patch and patch["stock_quantity"] is not None:
        if patch["stock_quantity"] < 0:
            raise ValidationError("stock_quantity must be >= 0")
    if "status" in patch and patch["status"] not in (None, "active", "inactive"):
        raise ValidationError("status must be 'active' or 'inactive'")


def enforce_quantity(key: str, value: int) -> int:
    if value < 1:
        raise ValidationError(f"{key} must be >= 1")
    if value > MAX_QUANTITY:
        raise ValidationError(f"{key} cannot exceed {MAX_QUANTITY}")
    return value


def require_choice(key: str, value: str, choices) -> str:
    if value not in choices:
        raise ValidationError(f"{key} must be one of: {', '.join(sorted(choices))}")
    return value


def require_json_object(payload) -> dict:
    """Request bodies must be JSON objects; a missing body counts as {}."""
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def optional_date(key: str, value) -> date | None:
    if value in (None, ""):
        return None
    return coerce_date(key, value)
