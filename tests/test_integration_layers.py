"""Integration tests describing end-to-end bar night workflows.

These scenarios exercise the business layer against a real workbook and
persist to disk between steps, the way the CLI does between invocations.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from comandas import core_logic, data_manager
from comandas.constants import AccountType, AuditAction, PaymentMethod, StockMovementType, TabKind, TabStatus
from comandas.errors import TabStatusError

NIGHT = date(2025, 3, 14)


def _reload(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    core_logic.persist_context(context)
    return core_logic.refresh_context(context)


def _stocked_menu(context, manager):
    beer = core_logic.create_product(
        context,
        manager,
        core_logic.ProductCommand(name="Beer", category="Drinks", price=Decimal("15.00"), controls_stock=True, min_stock=Decimal("23")),
    )
    fries = core_logic.create_product(
        context,
        manager,
        core_logic.ProductCommand(name="Fries", category="Kitchen", price=Decimal("20.00")),
    )
    core_logic.create_stock_movement(
        context,
        manager,
        core_logic.StockMovementCommand(
            product_id=beer.product_id,
            movement_type=StockMovementType.IN,
            quantity=Decimal("24"),
            note="Weekly delivery",
            unit_cost=Decimal("6.00"),
        ),
    )
    return beer, fries


def test_bar_night_lifecycle_flow(runtime_context, manager, cashier, waiter):
    """Menu setup, ordering, payment, settlement and cash close survive disk round trips."""

    context = runtime_context
    beer, fries = _stocked_menu(context, manager)
    context = _reload(context)

    tab = core_logic.open_tab(context, waiter, core_logic.OpenTabCommand(kind=TabKind.TABLE, table_number=12))
    core_logic.add_tab_item(context, waiter, core_logic.AddItemCommand(tab_id=tab.tab_id, product_id=beer.product_id, quantity=Decimal("2")))
    core_logic.add_tab_item(context, waiter, core_logic.AddItemCommand(tab_id=tab.tab_id, product_id=fries.product_id, quantity=Decimal("1")))
    context = _reload(context)

    snapshot = core_logic.get_tab_snapshot(context, tab.tab_id)
    assert snapshot.totals.subtotal == Decimal("50.00")
    assert snapshot.totals.total == Decimal("55.00")

    core_logic.register_payment(context, cashier, core_logic.PaymentCommand(tab.tab_id, PaymentMethod.PIX, Decimal("15.50")))
    core_logic.register_payment(context, cashier, core_logic.PaymentCommand(tab.tab_id, PaymentMethod.CASH, Decimal("39.50")))
    assert core_logic.get_tab(context, tab.tab_id).status is TabStatus.BILLING
    context = _reload(context)

    result = core_logic.settle_tab(context, cashier, tab.tab_id)
    assert result.total_paid == Decimal("55.00")
    context = _reload(context)

    settled = core_logic.get_tab(context, tab.tab_id)
    assert settled.status is TabStatus.PAID
    assert settled.closed_by == cashier.user_id
    assert core_logic.calculate_stock_levels(context)[beer.product_id] == Decimal("22")
    assert [alert.product_id for alert in core_logic.low_stock_report(context)] == [beer.product_id]

    revenue = {entry.payment_method: entry.amount for entry in core_logic.list_ledger_entries(context)}
    assert revenue == {PaymentMethod.PIX: Decimal("15.50"), PaymentMethod.CASH: Decimal("39.50")}

    ice = core_logic.create_account_category(
        context, manager, core_logic.AccountCategoryCommand(name="Ice", account_type=AccountType.EXPENSE)
    )
    core_logic.create_ledger_entry(
        context,
        manager,
        core_logic.LedgerEntryCommand(
            category_id=ice.category_id,
            description="Ice bags from the corner shop",
            amount=Decimal("10.00"),
            payment_method=PaymentMethod.CASH,
        ),
    )

    close = core_logic.create_cash_close(
        context,
        cashier,
        core_logic.CashCloseCommand(
            day=NIGHT,
            counted={PaymentMethod.PIX: Decimal("15.50"), PaymentMethod.CASH: Decimal("30.00")},
            shift="night",
        ),
    )
    assert close.expected_by_method[PaymentMethod.CASH] == Decimal("29.50")
    assert close.expected_total == Decimal("45.00")
    assert close.difference == Decimal("0.50")
    context = _reload(context)

    rows = list(data_manager.iter_cash_closes(context.workbook))
    assert len(rows) == 1
    assert rows[0].difference == Decimal("0.50")
    assert rows[0].shift == "night"
    assert rows[0].closed_by == cashier.user_id

    summary = core_logic.calculate_finance_summary(context, NIGHT)
    assert summary.revenue == Decimal("55.00")
    assert summary.expenses == Decimal("10.00")
    assert summary.balance == Decimal("45.00")

    actions = [event.action for event in core_logic.list_audit_log(context, entity_id=tab.tab_id)]
    assert actions[0] == AuditAction.TAB_CREATED.value
    assert actions[-1] == AuditAction.TAB_STATUS_UPDATED.value


def test_canceled_tab_flow(runtime_context, manager, cashier, waiter):
    """A canceled tab leaves stock and ledger untouched and refuses further orders."""

    context = runtime_context
    beer, _ = _stocked_menu(context, manager)
    tab = core_logic.open_tab(context, waiter, core_logic.OpenTabCommand(kind=TabKind.BAR, customer_name="Joana"))
    core_logic.add_tab_item(context, waiter, core_logic.AddItemCommand(tab_id=tab.tab_id, product_id=beer.product_id, quantity=Decimal("3")))
    context = _reload(context)

    canceled = core_logic.update_tab_status(context, cashier, core_logic.StatusChangeCommand(tab.tab_id, TabStatus.CANCELED))
    context = _reload(context)

    assert canceled.status is TabStatus.CANCELED
    assert core_logic.get_tab(context, tab.tab_id).closed_at is not None
    assert core_logic.list_ledger_entries(context) == []
    assert core_logic.calculate_stock_levels(context)[beer.product_id] == Decimal("24")
    with pytest.raises(TabStatusError):
        core_logic.add_tab_item(
            context, waiter, core_logic.AddItemCommand(tab_id=tab.tab_id, product_id=beer.product_id, quantity=Decimal("1"))
        )


def test_reopened_tab_settles_only_the_difference_after_reload(runtime_context, manager, cashier, admin):
    """Settlement, reopen and re-settlement across saves post each unit exactly once."""

    context = runtime_context
    beer, _ = _stocked_menu(context, manager)
    tab = core_logic.open_tab(context, cashier, core_logic.OpenTabCommand(kind=TabKind.TABLE, table_number=2))
    core_logic.add_tab_item(context, cashier, core_logic.AddItemCommand(tab_id=tab.tab_id, product_id=beer.product_id, quantity=Decimal("2")))
    core_logic.register_payment(context, cashier, core_logic.PaymentCommand(tab.tab_id, PaymentMethod.CREDIT, Decimal("33.00")))
    core_logic.settle_tab(context, cashier, tab.tab_id)
    context = _reload(context)

    core_logic.reopen_tab(context, admin, tab.tab_id)
    core_logic.add_tab_item(context, admin, core_logic.AddItemCommand(tab_id=tab.tab_id, product_id=beer.product_id, quantity=Decimal("1")))
    core_logic.register_payment(context, admin, core_logic.PaymentCommand(tab.tab_id, PaymentMethod.CREDIT, Decimal("16.50")))
    context = _reload(context)

    result = core_logic.settle_tab(context, admin, tab.tab_id)
    context = _reload(context)

    assert [entry.amount for entry in result.ledger_entries] == [Decimal("16.50")]
    assert [movement.quantity for movement in result.stock_movements] == [Decimal("1")]
    assert sum(entry.amount for entry in core_logic.list_ledger_entries(context)) == Decimal("49.50")
    assert core_logic.calculate_stock_levels(context)[beer.product_id] == Decimal("21")
