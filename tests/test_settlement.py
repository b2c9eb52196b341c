"""Settlement pipeline tests: payment gate, revenue posting, stock deduction and reopen."""

from __future__ import annotations

import random
import threading
from dataclasses import replace
from decimal import Decimal

import pytest

from comandas import core_logic, data_manager
from comandas.constants import AccountType, AuditAction, PaymentMethod, SheetName, StockMovementType, TabStatus
from comandas.errors import (
    BusinessRuleViolation,
    ConcurrentModificationError,
    IllegalTransitionError,
    InsufficientPaymentError,
    PermissionDeniedError,
)

from conftest import FIXED_NOW

# Beer 2 x 15.00 + Fries 1 x 20.00, 10% service fee: 50.00 + 5.00 = 55.00
LINES = [("Beer", "15.00", "2"), ("Fries", "20.00", "1")]


def _pay(context, actor, tab_id, amount, method=PaymentMethod.CASH):
    return core_logic.register_payment(
        context, actor, core_logic.PaymentCommand(tab_id=tab_id, method=method, amount=Decimal(amount))
    )


def _revenue_for(context, tab_id):
    return [entry for entry in core_logic.list_ledger_entries(context) if entry.related_tab_id == tab_id]


def _movements_for(context, tab_id):
    return [
        movement
        for movement in data_manager.iter_stock_movements(context.workbook)
        if movement.related_tab_id == tab_id
    ]


@pytest.fixture
def billed_tab(runtime_context, cashier, open_tab_with_items):
    """A tab of 55.00 paid with PIX 10 + PIX 5.50 + CASH 39.50."""

    tab = open_tab_with_items(runtime_context, LINES)
    _pay(runtime_context, cashier, tab.tab_id, "10", PaymentMethod.PIX)
    _pay(runtime_context, cashier, tab.tab_id, "5.50", PaymentMethod.PIX)
    _pay(runtime_context, cashier, tab.tab_id, "39.50", PaymentMethod.CASH)
    return core_logic.get_tab(runtime_context, tab.tab_id)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_settle_tab_posts_revenue_per_method(runtime_context, cashier, billed_tab):
    result = core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    assert result.totals.total == Decimal("55.00")
    assert result.total_paid == Decimal("55.00")
    by_method = {entry.payment_method: entry.amount for entry in _revenue_for(runtime_context, billed_tab.tab_id)}
    assert by_method == {PaymentMethod.PIX: Decimal("15.50"), PaymentMethod.CASH: Decimal("39.50")}

    [sales] = [c for c in core_logic.list_account_categories(runtime_context) if c.name == "Sales"]
    assert sales.account_type is AccountType.REVENUE
    assert all(entry.category_id == sales.category_id for entry in result.ledger_entries)
    assert {entry.description for entry in result.ledger_entries} == {
        "Revenue from tab (PIX)",
        "Revenue from tab (CASH)",
    }


def test_settle_tab_closes_tab_and_deducts_stock(runtime_context, cashier, billed_tab):
    result = core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    tab = core_logic.get_tab(runtime_context, billed_tab.tab_id)
    assert tab.status is TabStatus.PAID
    assert (tab.closed_at, tab.closed_by) == (FIXED_NOW, "carla")
    assert tab.version == billed_tab.version + 1
    assert result.tab == tab

    movements = _movements_for(runtime_context, billed_tab.tab_id)
    assert sorted((m.quantity, m.movement_type) for m in movements) == [
        (Decimal("1"), StockMovementType.OUT),
        (Decimal("2"), StockMovementType.OUT),
    ]
    assert all(m.note == f"Automatic deduction for tab {tab.code}" for m in movements)


def test_settle_tab_audits_the_status_change(runtime_context, cashier, billed_tab):
    core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    event = core_logic.list_audit_log(runtime_context, entity_id=billed_tab.tab_id)[-1]
    assert event.action == AuditAction.TAB_STATUS_UPDATED.value
    assert '"status": "PAID"' in event.after_json
    assert '"ledger_entries": 2' in event.after_json


def test_settle_through_status_change(runtime_context, cashier, billed_tab):
    result = core_logic.update_tab_status(
        runtime_context, cashier, core_logic.StatusChangeCommand(billed_tab.tab_id, TabStatus.PAID)
    )

    assert isinstance(result, core_logic.SettlementResult)
    assert result.tab.status is TabStatus.PAID


def test_settle_tab_tolerates_one_cent_short(runtime_context, cashier, open_tab_with_items):
    tab = open_tab_with_items(runtime_context, LINES)
    _pay(runtime_context, cashier, tab.tab_id, "54.99")

    result = core_logic.settle_tab(runtime_context, cashier, tab.tab_id)

    assert result.total_paid == Decimal("54.99")
    assert [entry.amount for entry in result.ledger_entries] == [Decimal("54.99")]


def test_settle_with_stock_module_disabled_skips_movements(config_factory, clock, cashier, open_tab_with_items):
    bundle = config_factory(stock_module=False)
    context = core_logic.load_runtime_context(bundle.config_path, clock=clock, rng=random.Random(3))
    tab = open_tab_with_items(context, LINES)
    _pay(context, cashier, tab.tab_id, "55")

    result = core_logic.settle_tab(context, cashier, tab.tab_id)

    assert result.stock_movements == []
    assert list(data_manager.iter_stock_movements(context.workbook)) == []


def test_settle_creates_missing_revenue_category_once(runtime_context, admin, cashier, open_tab_with_items):
    context = core_logic.update_settings(
        runtime_context, admin, replace(runtime_context.settings.tabs, revenue_category_name="Bar Sales")
    )
    for _ in range(2):
        tab = open_tab_with_items(context, [("Soda", "5.00", "1")])
        _pay(context, cashier, tab.tab_id, "5.50")
        core_logic.settle_tab(context, cashier, tab.tab_id)

    created = [c for c in core_logic.list_account_categories(context) if c.name == "Bar Sales"]
    assert len(created) == 1
    assert created[0].account_type is AccountType.REVENUE


def test_settled_revenue_shows_in_finance_summary(runtime_context, cashier, billed_tab):
    core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    summary = core_logic.calculate_finance_summary(runtime_context, core_logic.business_today(runtime_context))
    monthly = core_logic.calculate_finance_summary(
        runtime_context, core_logic.business_today(runtime_context), period="monthly"
    )

    assert summary.revenue == Decimal("55.00")
    assert summary.revenue_by_method[PaymentMethod.PIX] == Decimal("15.50")
    assert monthly.balance == Decimal("55.00")


# ---------------------------------------------------------------------------
# Rejections leave nothing behind
# ---------------------------------------------------------------------------


def test_insufficient_payment_blocks_settlement(runtime_context, cashier, open_tab_with_items):
    tab = open_tab_with_items(runtime_context, LINES)
    _pay(runtime_context, cashier, tab.tab_id, "54.98")

    with pytest.raises(InsufficientPaymentError) as excinfo:
        core_logic.settle_tab(runtime_context, cashier, tab.tab_id)

    assert excinfo.value.remaining == Decimal("0.02")
    assert core_logic.get_tab(runtime_context, tab.tab_id).status is TabStatus.BILLING
    assert _revenue_for(runtime_context, tab.tab_id) == []
    assert _movements_for(runtime_context, tab.tab_id) == []


def test_open_tab_cannot_jump_to_paid(runtime_context, cashier, open_tab_with_items):
    tab = open_tab_with_items(runtime_context, LINES)

    with pytest.raises(IllegalTransitionError):
        core_logic.settle_tab(runtime_context, cashier, tab.tab_id)


def test_settling_twice_is_rejected(runtime_context, cashier, billed_tab):
    core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    with pytest.raises(IllegalTransitionError):
        core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    assert len(_revenue_for(runtime_context, billed_tab.tab_id)) == 2


def test_waiter_cannot_settle(runtime_context, waiter, billed_tab):
    with pytest.raises(PermissionDeniedError):
        core_logic.settle_tab(runtime_context, waiter, billed_tab.tab_id)


def test_concurrent_modification_aborts_settlement(runtime_context, cashier, billed_tab, monkeypatch):
    """A version bump between snapshot and commit rejects the whole settlement."""

    original = core_logic._already_deducted

    def _bump_then_plan(context, tab_id):
        data_manager.update_row(context.workbook, SheetName.TABS.value, "TabID", tab_id, field_values={"Version": 99})
        return original(context, tab_id)

    monkeypatch.setattr(core_logic, "_already_deducted", _bump_then_plan)

    with pytest.raises(ConcurrentModificationError):
        core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    assert core_logic.get_tab(runtime_context, billed_tab.tab_id).status is TabStatus.BILLING
    assert _revenue_for(runtime_context, billed_tab.tab_id) == []
    assert _movements_for(runtime_context, billed_tab.tab_id) == []


def test_concurrent_settlements_post_revenue_once(runtime_context, cashier, billed_tab):
    """Two cashiers pressing close at the same time: one wins, one is refused."""

    barrier = threading.Barrier(2)
    outcomes: list[object] = []
    guard = threading.Lock()

    def _settle():
        barrier.wait()
        try:
            outcome = core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)
        except BusinessRuleViolation as exc:
            outcome = exc
        with guard:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_settle) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    successes = [o for o in outcomes if isinstance(o, core_logic.SettlementResult)]
    failures = [o for o in outcomes if isinstance(o, IllegalTransitionError)]
    assert (len(successes), len(failures)) == (1, 1)
    assert len(_revenue_for(runtime_context, billed_tab.tab_id)) == 2
    assert len(_movements_for(runtime_context, billed_tab.tab_id)) == 2


# ---------------------------------------------------------------------------
# Reopen and override
# ---------------------------------------------------------------------------


def test_reopen_requires_admin_override(runtime_context, cashier, billed_tab):
    core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    with pytest.raises(PermissionDeniedError):
        core_logic.reopen_tab(runtime_context, cashier, billed_tab.tab_id)


def test_reopen_only_applies_to_paid_tabs(runtime_context, admin, billed_tab):
    with pytest.raises(IllegalTransitionError):
        core_logic.reopen_tab(runtime_context, admin, billed_tab.tab_id)


def test_paid_tab_cannot_be_canceled_even_by_admin(runtime_context, admin, cashier, billed_tab):
    core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    with pytest.raises(IllegalTransitionError):
        core_logic.update_tab_status(
            runtime_context, admin, core_logic.StatusChangeCommand(billed_tab.tab_id, TabStatus.CANCELED)
        )


def test_reopen_and_resettle_posts_only_the_difference(runtime_context, admin, cashier, billed_tab, make_product):
    core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    reopened = core_logic.reopen_tab(runtime_context, admin, billed_tab.tab_id)
    assert reopened.status is TabStatus.BILLING
    assert (reopened.closed_at, reopened.closed_by) == (None, None)

    beer = next(item for item in core_logic.get_tab_snapshot(runtime_context, billed_tab.tab_id).items)
    core_logic.add_tab_item(
        runtime_context,
        admin,
        core_logic.AddItemCommand(tab_id=billed_tab.tab_id, product_id=beer.product_id, quantity=Decimal("1")),
    )
    # 65.00 + 6.50 fee = 71.50, 16.50 still due
    _pay(runtime_context, cashier, billed_tab.tab_id, "16.50", PaymentMethod.DEBIT)

    result = core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    assert result.totals.total == Decimal("71.50")
    assert [(e.payment_method, e.amount) for e in result.ledger_entries] == [(PaymentMethod.DEBIT, Decimal("16.50"))]
    assert [(m.product_id, m.movement_type, m.quantity) for m in result.stock_movements] == [
        (beer.product_id, StockMovementType.OUT, Decimal("1"))
    ]
    assert sum(e.amount for e in _revenue_for(runtime_context, billed_tab.tab_id)) == Decimal("71.50")


def test_override_payment_on_paid_tab_reopens_it(runtime_context, admin, cashier, billed_tab):
    core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    _pay(runtime_context, admin, billed_tab.tab_id, "5", PaymentMethod.VOUCHER)

    tab = core_logic.get_tab(runtime_context, billed_tab.tab_id)
    assert tab.status is TabStatus.BILLING
    actions = [event.action for event in core_logic.list_audit_log(runtime_context, entity_id=billed_tab.tab_id)]
    assert AuditAction.TAB_REOPENED.value in actions


@pytest.mark.parametrize("target", [TabStatus.OPEN, TabStatus.BILLING])
def test_override_status_change_out_of_paid_goes_through_reopen(runtime_context, admin, cashier, billed_tab, target):
    settled = core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id).tab

    moved = core_logic.update_tab_status(runtime_context, admin, core_logic.StatusChangeCommand(billed_tab.tab_id, target))

    assert moved.status is target
    assert (moved.closed_at, moved.closed_by) == (None, None)
    actions = [event.action for event in core_logic.list_audit_log(runtime_context, entity_id=billed_tab.tab_id)]
    expected_tail = [AuditAction.TAB_REOPENED.value]
    if target is TabStatus.OPEN:
        expected_tail.append(AuditAction.TAB_STATUS_UPDATED.value)
    assert actions[-len(expected_tail):] == expected_tail
    assert core_logic.get_tab(runtime_context, billed_tab.tab_id).version > settled.version


def test_payment_on_paid_tab_without_override_is_refused(runtime_context, cashier, billed_tab):
    core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    with pytest.raises(BusinessRuleViolation):
        _pay(runtime_context, cashier, billed_tab.tab_id, "5")


def test_canceling_item_after_settlement_returns_stock(runtime_context, admin, cashier, billed_tab):
    core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)
    fries = core_logic.get_tab_snapshot(runtime_context, billed_tab.tab_id).items[1]

    core_logic.cancel_tab_item(runtime_context, admin, core_logic.CancelItemCommand(fries.item_id, "Never served"))
    result = core_logic.settle_tab(runtime_context, cashier, billed_tab.tab_id)

    assert result.ledger_entries == []
    assert [(m.product_id, m.movement_type, m.quantity) for m in result.stock_movements] == [
        (fries.product_id, StockMovementType.IN, Decimal("1"))
    ]
    assert core_logic.calculate_stock_levels(runtime_context)[fries.product_id] == Decimal("0")
