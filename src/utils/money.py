# coding: utf-8
"""
Decimal helpers for ledger amounts

Ledger columns are NUMERIC(20,8); every amount that is persisted or
returned goes through quantize_money first.
"""
from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING
from typing import Any

MONEY_QUANT = Decimal("0.00000001")
PERCENT_QUANT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """
    Convert int/float/str/Decimal to Decimal without binary float noise

    Raises:
        ValueError: If value is None or not numeric
    """
    if value is None:
        raise ValueError("Amount is required")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except ArithmeticError as e:
            raise ValueError(f"Invalid amount: {value!r}") from e

    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got: {value!r}")
    return result


def quantize_money(value: Any) -> Decimal:
    """Round to ledger precision (8 decimal places, half-up)."""
    return to_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def percentage(part: Any, whole: Any) -> Decimal:
    """part / whole * 100 rounded to 2 places; 0 when whole is not positive."""
    whole = to_decimal(whole)
    if whole <= ZERO:
        return Decimal("0.00")
    return (to_decimal(part) / whole * 100).quantize(PERCENT_QUANT, rounding=ROUND_HALF_UP)


def ceil_whole(value: Any) -> Decimal:
    """Round up to a whole unit (top-up quotes are whole USDT)."""
    return to_decimal(value).to_integral_value(rounding=ROUND_CEILING)


def to_money(value: Any) -> float:
    """Convert to float with exactly 2 decimal places (display only)."""
    return round(float(to_decimal(value)), 2)
