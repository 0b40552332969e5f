"""Fixed-point helpers for monetary arithmetic.

All amounts travel through the engine as :class:`~decimal.Decimal` values.
Only percentage computations are rounded; sums of line items and fixed
discounts keep whatever scale their inputs carry.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Union


ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Optional[Numeric], *, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Coerce ``value`` into a :class:`Decimal`, returning ``default`` for ``None``.

    Floats are routed through ``str`` so that spreadsheet values such as
    ``19.99`` do not pick up binary representation noise.
    """

    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(amount: Decimal) -> Decimal:
    """Round ``amount`` to two fractional digits, half-up."""

    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def percentage_of(amount: Decimal, percent: Decimal) -> Decimal:
    """Return ``percent`` percent of ``amount`` rounded to cents, half-up."""

    return quantize_money(amount * percent / HUNDRED)


def line_total(unit_price: Decimal, quantity: int) -> Decimal:
    """Return ``unit_price * quantity`` for a single line item."""

    return unit_price * Decimal(quantity)


def sum_money(amounts: Iterable[Decimal]) -> Decimal:
    """Sum ``amounts`` starting from an exact zero."""

    total = ZERO
    for amount in amounts:
        total += amount
    return total


__all__ = [
    "ZERO",
    "CENT",
    "HUNDRED",
    "to_decimal",
    "quantize_money",
    "percentage_of",
    "line_total",
    "sum_money",
]
