"""Unit tests for revenue posting and ledger summaries."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from comandas import ledger
from comandas.constants import AccountType, PaymentMethod
from comandas.payment_gate import PaymentLine

WHEN = datetime(2025, 3, 14, 22, 0, tzinfo=UTC)


def _meta(**overrides):
    values = dict(category_id="CAT-sales", tab_id="TAB-1", created_by="carla", date=WHEN)
    values.update(overrides)
    return ledger.RevenueEntryMetadata(**values)


def test_entries_are_grouped_per_method():
    """Two PIX payments collapse into one entry next to the CASH one."""

    payments = [
        PaymentLine(PaymentMethod.PIX, Decimal("10")),
        PaymentLine(PaymentMethod.PIX, Decimal("5.5")),
        PaymentLine(PaymentMethod.CASH, Decimal("20")),
    ]

    entries = ledger.build_revenue_ledger_entries(payments, _meta())

    assert len(entries) == 2
    by_method = {entry.payment_method: entry for entry in entries}
    assert by_method[PaymentMethod.PIX].amount == Decimal("15.50")
    assert by_method[PaymentMethod.CASH].amount == Decimal("20.00")
    assert all(entry.related_tab_id == "TAB-1" for entry in entries)
    assert all(entry.category_id == "CAT-sales" and entry.created_by == "carla" for entry in entries)


def test_description_names_the_method():
    entries = ledger.build_revenue_ledger_entries([PaymentLine(PaymentMethod.DEBIT, Decimal("7"))], _meta())

    assert entries[0].description == "Revenue from tab (DEBIT)"


def test_description_prefix_can_be_overridden():
    entries = ledger.build_revenue_ledger_entries(
        [PaymentLine(PaymentMethod.FIADO, Decimal("7"))],
        _meta(description_prefix="Delivery revenue"),
    )

    assert entries[0].description == "Delivery revenue (FIADO)"


def test_no_payments_means_no_entries():
    assert ledger.build_revenue_ledger_entries([], _meta()) == []


def test_group_sums_are_rounded():
    grouped = ledger.aggregate_payments_by_method(
        [PaymentLine(PaymentMethod.CREDIT, Decimal("0.333")), PaymentLine(PaymentMethod.CREDIT, Decimal("0.333"))]
    )

    assert grouped == {PaymentMethod.CREDIT: Decimal("0.67")}


def test_summarize_ledger_splits_revenue_and_expenses():
    summary = ledger.summarize_ledger(
        [
            ledger.CategorizedAmount(AccountType.REVENUE, Decimal("100"), PaymentMethod.PIX),
            ledger.CategorizedAmount(AccountType.REVENUE, Decimal("40"), PaymentMethod.CASH),
            ledger.CategorizedAmount(AccountType.REVENUE, Decimal("5"), None),
            ledger.CategorizedAmount(AccountType.EXPENSE, Decimal("30"), PaymentMethod.CASH),
        ]
    )

    assert summary.revenue == Decimal("145.00")
    assert summary.expenses == Decimal("30.00")
    assert summary.balance == Decimal("115.00")
    assert summary.revenue_by_method[PaymentMethod.PIX] == Decimal("100.00")
    assert summary.revenue_by_method[PaymentMethod.CASH] == Decimal("40.00")
    assert summary.revenue_by_method[PaymentMethod.VOUCHER] == Decimal("0.00")
