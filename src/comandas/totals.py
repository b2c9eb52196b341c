"""Totals calculation for a tab.

The calculator is a pure function over line snapshots. Rounding happens at
four independent points (subtotal, discount, service fee, total) using
round-half-away-from-zero, so ``total`` may differ from
``subtotal - discount + service_fee`` by one cent in edge cases.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Union

from .constants import CENT

MoneyLike = Union[Decimal, int, str]

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class TotalsLine:
    """Minimal view of a tab item needed to price it."""

    quantity: Decimal
    unit_price: Decimal
    canceled: bool = False


@dataclass(frozen=True)
class TabTotals:
    """Amounts owed on a tab."""

    subtotal: Decimal
    discount: Decimal
    service_fee: Decimal
    total: Decimal


def to_decimal(value: MoneyLike) -> Decimal:
    """Coerce ints, strings and decimals into :class:`~decimal.Decimal`."""

    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("Binary floats are not accepted for money; pass a Decimal or str")
    return Decimal(str(value))


def round_currency(value: MoneyLike) -> Decimal:
    """Round to the minor currency unit, halves away from zero."""

    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_subtotal(lines: Iterable[TotalsLine]) -> Decimal:
    """Sum ``unit_price * quantity`` over non-canceled lines, rounded."""

    gross = sum(
        (to_decimal(line.unit_price) * to_decimal(line.quantity) for line in lines if not line.canceled),
        ZERO,
    )
    return round_currency(gross)


def calculate_tab_totals(
    lines: Iterable[TotalsLine],
    discount: MoneyLike,
    service_fee_percent: MoneyLike,
) -> TabTotals:
    """Compute subtotal, bounded discount, service fee and total for a tab.

    Args:
        lines: Item snapshots in tab order. Canceled lines are ignored.
        discount: Requested discount. Values above the subtotal are clamped to
            the subtotal and negative values to zero; neither is an error.
        service_fee_percent: Fee applied to the discounted base, 0-100.

    Returns:
        TabTotals: Amounts rounded at each of the four rounding points.
    """

    subtotal = calculate_subtotal(lines)
    bounded_discount = max(ZERO, min(to_decimal(discount), subtotal))
    base = subtotal - bounded_discount
    service_fee = round_currency(base * to_decimal(service_fee_percent) / HUNDRED)
    total = round_currency(base + service_fee)
    return TabTotals(
        subtotal=subtotal,
        discount=round_currency(bounded_discount),
        service_fee=service_fee,
        total=total,
    )


__all__ = [
    "TotalsLine",
    "TabTotals",
    "to_decimal",
    "round_currency",
    "calculate_subtotal",
    "calculate_tab_totals",
]
