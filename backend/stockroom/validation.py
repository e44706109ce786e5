from __future__ import annotations
from datetime import datetime
import math
from stockroom.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, Float, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta


# Upper bound on a single movement; guards against unit mistakes (grams as kg, etc.)
MAX_MOVEMENT_QUANTITY = 1_000_000


class ValidationError(ValueError):
    """400-level input problem. Rejected synchronously, never queued."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate tag)."""


class NotFoundError(LookupError):
    """404-level: the referenced record does not exist locally."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_column_value(col, value: Any):
    """Coerce a JSON value to the Python type of a SQLAlchemy column."""
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped or "." in stripped or "e" in stripped.lower():
                raise ValidationError(f"{col.key} must be an integer")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, float) and value.is_integer():
            return int(value)
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Float):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a number")
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            try:
                number = float(value.strip().replace(",", "."))
            except ValueError:
                raise ValidationError(f"{col.key} must be a number")
        else:
            raise ValidationError(f"{col.key} must be a number")
        if math.isnan(number) or math.isinf(number):
            raise ValidationError(f"{col.key} must be a finite number")
        return number

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on", "ativo"}
        return bool(value)

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
    extra_fields: set[str] | None = None,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    extra_fields are accepted and passed through untouched (non-column
    inputs such as initial_quantity).
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    extra_fields = extra_fields or set()
    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k in extra_fields:
            continue
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        if k in extra_fields:
            patch[k] = raw
            continue

        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = coerce_column_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def parse_quantity(value: Any, field: str = "quantity") -> float:
    """Movement quantities are strictly positive finite numbers."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    if isinstance(value, str):
        try:
            value = float(value.strip().replace(",", "."))
        except ValueError:
            raise ValidationError(f"{field} must be a number")
    if not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number")
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"{field} must be a finite number")
    if number <= 0:
        raise ValidationError(f"{field} must be > 0")
    if number > MAX_MOVEMENT_QUANTITY:
        raise ValidationError(f"{field} cannot exceed {MAX_MOVEMENT_QUANTITY}")
    return number


def normalize_tag(value: Any) -> str | None:
    """Tags are stored upper-cased without surrounding spaces; blank means none."""
    if value is None:
        return None
    tag = str(value).strip().upper()
    return tag or None


def normalize_barcode(value: Any) -> str | None:
    if value is None:
        return None
    code = str(value).strip()
    return code or None


def enforce_rules_product(patch: dict) -> None:
    """Product rules not captured by column metadata."""
    from stockroom.models import UNITS

    if "min_stock" in patch and patch["min_stock"] is not None:
        if patch["min_stock"] < 0:
            raise ValidationError("min_stock must be >= 0")

    if "unit" in patch and patch["unit"] is not None:
        if patch["unit"] not in UNITS:
            raise ValidationError(f"unit must be one of: {', '.join(UNITS)}")

    if "quantity" in patch:
        raise ValidationError("quantity can only change through a movement")
