"""Settlement gate comparing collected payments against the tab total."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from . import log
from .constants import CENT, PaymentMethod
from .errors import InsufficientPaymentError
from .totals import ZERO, round_currency, to_decimal


@dataclass(frozen=True)
class PaymentLine:
    """A collected payment reduced to what the engine needs."""

    method: PaymentMethod
    amount: Decimal


def sum_payments(payments: Iterable[PaymentLine]) -> Decimal:
    """Return the raw sum of every payment amount."""

    return sum((to_decimal(payment.amount) for payment in payments), ZERO)


def remaining_balance(total: Decimal, payments: Iterable[PaymentLine]) -> Decimal:
    """Amount still due for display purposes, never negative."""

    return max(ZERO, round_currency(to_decimal(total) - sum_payments(payments)))


def check_payment_sufficiency(total: Decimal, payments: Iterable[PaymentLine]) -> Decimal:
    """Ensure payments cover ``total`` within one cent.

    Args:
        total: Tab total computed by :func:`comandas.totals.calculate_tab_totals`.
        payments: Every payment registered on the tab.

    Returns:
        Decimal: The total collected, for audit and reporting.

    Raises:
        InsufficientPaymentError: When more than one cent is still due.
    """

    total_paid = sum_payments(payments)
    remaining = round_currency(to_decimal(total) - total_paid)
    if remaining > CENT:
        log.warning("Settlement blocked: %s still due (total=%s, paid=%s)", remaining, total, total_paid)
        raise InsufficientPaymentError(remaining)
    return total_paid


__all__ = ["PaymentLine", "sum_payments", "remaining_balance", "check_payment_sufficiency"]
