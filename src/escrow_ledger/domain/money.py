"""Fixed-point money helpers.

Every monetary field is a Decimal with exactly two places. Paystack reports
amounts in minor units (kobo for NGN); conversion is exact in both directions.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation

CENT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100


def to_money(value: Decimal | int | str) -> Decimal:
    """Coerce a value to a two-place Decimal.

    Floats are rejected: they cannot represent most cent amounts exactly.
    """
    if isinstance(value, float):
        raise TypeError("Monetary values must not be floats")
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)
    except InvalidOperation as err:
        raise ValueError(f"Invalid monetary value: {value!r}") from err


def from_minor_units(amount: int) -> Decimal:
    """Convert a gateway amount in minor units to a two-place Decimal."""
    return to_money(Decimal(amount) / MINOR_UNITS_PER_MAJOR)


def to_minor_units(amount: Decimal) -> int:
    """Convert a two-place Decimal to gateway minor units."""
    return int(to_money(amount) * MINOR_UNITS_PER_MAJOR)
