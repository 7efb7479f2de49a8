from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from mandi.money import to_decimal
from mandi.time_utils import parse_iso_datetime


# Maximum rupee amount accepted on any single field (₹99,99,99,999.99)
MAX_AMOUNT = Decimal("9999999999.99")

# Order line quantities are stored as Numeric(12, 3)
QUANTITY_PLACES = 3


class ValidationError(ValueError):
    """
    400-level input problem.

    `fields` maps each offending field to one human-readable message so the
    client can highlight every problem in a single round trip.
    """

    def __init__(self, fields: dict[str, str] | str, message: str = "Validation failed"):
        if isinstance(fields, str):
            fields = {"_": fields}
        super().__init__(message)
        self.message = message
        self.fields = dict(fields)

    def to_dict(self) -> dict:
        return {"error": self.message, "fields": self.fields}


class NotFoundError(LookupError):
    """404-level: a referenced customer, order or product does not exist."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def require_object(payload: Any) -> dict:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError({"_": "Request body must be a JSON object"}, "Invalid JSON payload")
    return payload


def raise_if_errors(errors: dict[str, str]) -> None:
    if errors:
        raise ValidationError(errors)


def parse_id(value: Any, field: str, errors: dict[str, str], *, required: bool = True) -> int | None:
    """Positive integer identifier; rejects bools, floats and junk strings."""
    if value is None or value == "":
        if required:
            errors[field] = f"{field} is required"
        return None
    if isinstance(value, bool):
        errors[field] = f"{field} must be a valid id"
        return None
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        errors[field] = f"{field} must be a valid id"
        return None
    if parsed <= 0:
        errors[field] = f"{field} must be a valid id"
        return None
    return parsed


def parse_decimal(
    value: Any,
    field: str,
    errors: dict[str, str],
    *,
    required: bool = True,
    min_value: Decimal | None = None,
    greater_than: Decimal | None = None,
    max_value: Decimal | None = MAX_AMOUNT,
    allow_zero: bool = True,
    max_places: int | None = None,
) -> Decimal | None:
    if value is None or value == "":
        if required:
            errors[field] = f"{field} is required"
        return None
    try:
        parsed = to_decimal(value)
    except ValueError:
        errors[field] = f"{field} must be a number"
        return None
    if greater_than is not None and parsed <= greater_than:
        errors[field] = f"{field} must be greater than {greater_than}"
        return None
    if min_value is not None and parsed < min_value:
        errors[field] = f"{field} must be at least {min_value}"
        return None
    if max_value is not None and abs(parsed) > max_value:
        errors[field] = f"{field} must not exceed {max_value}"
        return None
    if not allow_zero and parsed == 0:
        errors[field] = f"{field} must not be zero"
        return None
    if max_places is not None and -parsed.normalize().as_tuple().exponent > max_places:
        errors[field] = f"{field} must have at most {max_places} decimal places"
        return None
    return parsed


def parse_text(
    value: Any,
    field: str,
    errors: dict[str, str],
    *,
    required: bool = False,
    max_length: int = 1000,
) -> str | None:
    if value is None:
        if required:
            errors[field] = f"{field} is required"
        return None
    if not isinstance(value, str):
        errors[field] = f"{field} must be a string"
        return None
    stripped = value.strip()
    if required and not stripped:
        errors[field] = f"{field} is required"
        return None
    if len(stripped) > max_length:
        errors[field] = f"{field} must be {max_length} characters or less"
        return None
    return stripped or None


def parse_datetime(value: Any, field: str, errors: dict[str, str]) -> datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        errors[field] = f"{field} must be an ISO-8601 datetime"
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError:
        errors[field] = f"{field} must be an ISO-8601 datetime"
        return None


def parse_choice(value: Any, field: str, errors: dict[str, str], choices) -> str | None:
    if value is None or value == "":
        errors[field] = f"{field} is required"
        return None
    if value not in choices:
        errors[field] = f"{field} must be one of: {', '.join(choices)}"
        return None
    return value
