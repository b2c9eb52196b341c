"""Daily cash close reconciliation.

Expected amounts per payment method come from ledger entries dated inside the
business day: revenue adds, expenses subtract. The operator's counted amounts
are compared against them and the signed difference is recorded. A nonzero
difference is informational only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional, Tuple

from . import log
from .constants import AccountType, PaymentMethod
from .totals import ZERO, round_currency, to_decimal


@dataclass(frozen=True)
class ReconciliationEntry:
    """Ledger entry as consumed by the reconciler."""

    date: datetime
    amount: Decimal
    category_type: AccountType
    payment_method: Optional[PaymentMethod]


@dataclass(frozen=True)
class CashCloseResult:
    day_start: datetime
    shift: Optional[str]
    expected_by_method: Dict[PaymentMethod, Decimal]
    counted_by_method: Dict[PaymentMethod, Decimal]
    expected_total: Decimal
    counted_total: Decimal
    difference: Decimal
    closed_by: str
    observation: Optional[str] = None


def day_range(day: date, tz: tzinfo) -> Tuple[datetime, datetime]:
    """Return ``[midnight, next midnight)`` for ``day`` in ``tz``."""

    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def month_range(day: date, tz: tzinfo) -> Tuple[datetime, datetime]:
    """Return the calendar month containing ``day``."""

    first = day.replace(day=1)
    following = (first + timedelta(days=32)).replace(day=1)
    return datetime.combine(first, time.min, tzinfo=tz), datetime.combine(following, time.min, tzinfo=tz)


def compute_expected_by_method(
    entries: Iterable[ReconciliationEntry],
    start: datetime,
    end: datetime,
) -> Dict[PaymentMethod, Decimal]:
    """Accumulate signed ledger amounts per method for ``[start, end)``.

    Entries without a payment method or outside the window are ignored. Every
    method is present in the result, defaulting to zero.
    """

    expected: Dict[PaymentMethod, Decimal] = {method: ZERO for method in PaymentMethod}
    for entry in entries:
        if entry.payment_method is None or not (start <= entry.date < end):
            continue
        signal = 1 if AccountType(entry.category_type) is AccountType.REVENUE else -1
        expected[PaymentMethod(entry.payment_method)] += to_decimal(entry.amount) * signal
    return expected


def normalize_counted(counted: Mapping[PaymentMethod, Decimal]) -> Dict[PaymentMethod, Decimal]:
    """Fill missing methods with zero."""

    normalized: Dict[PaymentMethod, Decimal] = {method: ZERO for method in PaymentMethod}
    for method, amount in counted.items():
        normalized[PaymentMethod(method)] = to_decimal(amount)
    return normalized


def reconcile_cash_close(
    day: date,
    entries: Iterable[ReconciliationEntry],
    counted: Mapping[PaymentMethod, Decimal],
    *,
    closed_by: str,
    tz: tzinfo,
    shift: Optional[str] = None,
    observation: Optional[str] = None,
) -> CashCloseResult:
    """Compare ledger-derived expectations for ``day`` with counted amounts.

    Args:
        day: Calendar day being closed, interpreted in ``tz``.
        entries: Ledger entries; only those dated inside the day and carrying a
            payment method contribute.
        counted: Operator-entered amounts keyed by method. Missing methods
            count as zero.
        closed_by: Identifier of the closing actor.
        tz: Business timezone defining midnight.
        shift: Optional shift label.
        observation: Optional free text.

    Returns:
        CashCloseResult: Both per-method maps, their totals, and
            ``difference = round2(counted_total - expected_total)``.
    """

    start, end = day_range(day, tz)
    expected = compute_expected_by_method(entries, start, end)
    counted_map = normalize_counted(counted)
    expected_total = sum(expected.values(), ZERO)
    counted_total = sum(counted_map.values(), ZERO)
    difference = round_currency(counted_total - expected_total)
    if difference != ZERO:
        log.info(
            "Cash close for %s shows a difference of %s (expected=%s, counted=%s)",
            day.isoformat(),
            difference,
            expected_total,
            counted_total,
        )
    return CashCloseResult(
        day_start=start,
        shift=shift,
        expected_by_method=expected,
        counted_by_method=counted_map,
        expected_total=expected_total,
        counted_total=counted_total,
        difference=difference,
        closed_by=closed_by,
        observation=observation,
    )


__all__ = [
    "ReconciliationEntry",
    "CashCloseResult",
    "day_range",
    "month_range",
    "compute_expected_by_method",
    "normalize_counted",
    "reconcile_cash_close",
]
