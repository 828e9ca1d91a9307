"""
Decimal helpers for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

Numeric = Union[Decimal, int, str]


def to_decimal(value: Optional[Numeric]) -> Decimal:
    """Coerce a stored numeric (or None) into a Decimal without going through float."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("Monetary values must not be floats")
    return Decimal(str(value))


def to_money(value: Numeric) -> Decimal:
    """Quantize to two places, half up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(percentage: Numeric, base: Numeric) -> Decimal:
    """Exact ``percentage / 100 * base``."""
    return to_decimal(percentage) * to_decimal(base) / HUNDRED
