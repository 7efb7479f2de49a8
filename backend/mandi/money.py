# Overview: Decimal helpers for rupee amounts, rates and quantities.

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")
ZERO = Decimal("0")

# Balances closer than this are treated as equal when reconciling statements
TOLERANCE = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """
    Convert JSON-ish input to Decimal.

    Floats go through str() so 0.1 stays 0.1 instead of its binary expansion.
    Raises ValueError for anything that is not a finite number.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError("not a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError("not a number")
    else:
        raise ValueError("not a number")
    if not result.is_finite():
        raise ValueError("not a finite number")
    return result


def round2(value) -> Decimal:
    """Round half-up to 2 decimal places."""
    if not isinstance(value, Decimal):
        value = to_decimal(value)
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def as_float(value) -> float | None:
    """JSON rendering for Numeric columns."""
    if value is None:
        return None
    return float(value)


def is_whole(value: Decimal) -> bool:
    return value == value.to_integral_value()
