"""Revenue posting and ledger summaries.

Settled tabs are reclassified into one revenue entry per payment method so
that the daily cash close can attribute every amount to the drawer, card
terminal, or voucher batch it came from.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .constants import AccountType, PaymentMethod
from .payment_gate import PaymentLine
from .totals import ZERO, round_currency, to_decimal

DEFAULT_REVENUE_PREFIX = "Revenue from tab"


@dataclass(frozen=True)
class RevenueEntryMetadata:
    """Context shared by every revenue entry produced for one settlement."""

    category_id: str
    tab_id: str
    created_by: str
    date: datetime
    description_prefix: Optional[str] = None


@dataclass(frozen=True)
class RevenueLedgerEntry:
    """Ledger entry ready to be persisted by the data layer."""

    category_id: str
    related_tab_id: str
    created_by: str
    date: datetime
    description: str
    amount: Decimal
    payment_method: PaymentMethod


@dataclass(frozen=True)
class CategorizedAmount:
    """Ledger entry reduced to its classification and amount."""

    category_type: AccountType
    amount: Decimal
    payment_method: Optional[PaymentMethod] = None


@dataclass(frozen=True)
class LedgerSummary:
    revenue: Decimal
    expenses: Decimal
    balance: Decimal
    revenue_by_method: Dict[PaymentMethod, Decimal]


def aggregate_payments_by_method(payments: Iterable[PaymentLine]) -> Dict[PaymentMethod, Decimal]:
    """Group payments by method, rounding each group's sum to cents."""

    grouped: Dict[PaymentMethod, Decimal] = {}
    for payment in payments:
        method = PaymentMethod(payment.method)
        grouped[method] = grouped.get(method, ZERO) + to_decimal(payment.amount)
    return {method: round_currency(amount) for method, amount in grouped.items()}


def build_revenue_ledger_entries(
    payments: Iterable[PaymentLine],
    metadata: RevenueEntryMetadata,
) -> List[RevenueLedgerEntry]:
    """Turn a tab's payments into one revenue entry per payment method.

    Empty input yields an empty list. Entry order follows the first
    appearance of each method but callers must not rely on it.
    """

    prefix = metadata.description_prefix or DEFAULT_REVENUE_PREFIX
    return [
        RevenueLedgerEntry(
            category_id=metadata.category_id,
            related_tab_id=metadata.tab_id,
            created_by=metadata.created_by,
            date=metadata.date,
            description=f"{prefix} ({method.value})",
            amount=amount,
            payment_method=method,
        )
        for method, amount in aggregate_payments_by_method(payments).items()
    ]


def summarize_ledger(entries: Iterable[CategorizedAmount]) -> LedgerSummary:
    """Compute revenue, expenses, balance and revenue split by method."""

    revenue = ZERO
    expenses = ZERO
    by_method: Dict[PaymentMethod, Decimal] = {method: ZERO for method in PaymentMethod}
    for entry in entries:
        amount = to_decimal(entry.amount)
        if AccountType(entry.category_type) is AccountType.REVENUE:
            revenue += amount
            if entry.payment_method is not None:
                by_method[PaymentMethod(entry.payment_method)] += amount
        else:
            expenses += amount
    return LedgerSummary(
        revenue=round_currency(revenue),
        expenses=round_currency(expenses),
        balance=round_currency(revenue - expenses),
        revenue_by_method={method: round_currency(value) for method, value in by_method.items()},
    )


__all__ = [
    "DEFAULT_REVENUE_PREFIX",
    "RevenueEntryMetadata",
    "RevenueLedgerEntry",
    "CategorizedAmount",
    "LedgerSummary",
    "aggregate_payments_by_method",
    "build_revenue_ledger_entries",
    "summarize_ledger",
]
