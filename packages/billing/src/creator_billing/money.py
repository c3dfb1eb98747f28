"""Decimal helpers for monetary amounts."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
HUNDRED = Decimal("100")
RUPEE = Decimal("1")
PAISE = Decimal("0.01")


def to_decimal(value: Decimal | int | float | str | None) -> Decimal:
    """Coerce a number into a Decimal, going through ``str`` for floats."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def percent_of(amount: Decimal, rate: Decimal | int | float) -> Decimal:
    """Return ``rate`` percent of ``amount`` without rounding."""
    return amount * to_decimal(rate) / HUNDRED


def round_rupees(amount: Decimal) -> Decimal:
    """Round half-up to whole rupees."""
    return amount.quantize(RUPEE, rounding=ROUND_HALF_UP)


def to_paise(amount: Decimal) -> Decimal:
    """Round half-up to two decimal places for display and documents."""
    return amount.quantize(PAISE, rounding=ROUND_HALF_UP)


def floor_at_zero(amount: Decimal) -> Decimal:
    return amount if amount > ZERO else ZERO
