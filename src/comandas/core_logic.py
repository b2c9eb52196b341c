"""Business logic layer for the comandas tab engine.

This module ties the pure engine modules (totals, status machine, payment
gate, ledger builder, stock planner, cash close reconciler) to the workbook
data layer. Every operation takes a :class:`RuntimeContext` and the acting
:class:`~comandas.capabilities.Actor`, checks the actor's capabilities, runs
the domain gates, and stages its writes in a single
:class:`~comandas.data_manager.UnitOfWork` together with an audit event.

Writes only touch the in-memory workbook; :func:`persist_context` saves it.
"""

from __future__ import annotations

import json
import random
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from openpyxl.workbook import Workbook

from . import cash_close, data_manager, ledger, log, payment_gate, stock, tab_status
from .capabilities import Actor
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    AccountType,
    AuditAction,
    PaymentMethod,
    SheetName,
    StockMovementType,
    TabKind,
    TabStatus,
)
from .errors import (
    AlreadyCanceledError,
    IllegalTransitionError,
    InactiveResourceError,
    MissingReferenceError,
    PermissionDeniedError,
    TabStatusError,
    ValidationError,
)
from .totals import ZERO, TabTotals, TotalsLine, calculate_tab_totals, round_currency, to_decimal

TAB_CODE_ATTEMPTS = 10


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and injected collaborators.

    ``clock`` is the only time source and ``rng`` the only source of
    randomness used by the business layer, so a context built with fixed
    values replays every operation identically.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    clock: Callable[[], datetime] = field(default=_utc_now, repr=False, compare=False)
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)
    locks: data_manager.LockRegistry = field(default_factory=data_manager.LockRegistry, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


# ---------------------------------------------------------------------------
# Commands and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OpenTabCommand:
    """User intent for opening a new tab."""

    kind: TabKind
    table_number: Optional[int] = None
    customer_name: Optional[str] = None


@dataclass(frozen=True)
class AddItemCommand:
    """User intent for ordering a product on a tab."""

    tab_id: str
    product_id: str
    quantity: Decimal
    note: Optional[str] = None


@dataclass(frozen=True)
class CancelItemCommand:
    item_id: str
    reason: str


@dataclass(frozen=True)
class DiscountCommand:
    tab_id: str
    discount: Decimal


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for registering a payment against a tab."""

    tab_id: str
    method: PaymentMethod
    amount: Decimal


@dataclass(frozen=True)
class StatusChangeCommand:
    tab_id: str
    next_status: TabStatus


@dataclass(frozen=True)
class ProductCommand:
    """Product attributes supplied on create and update."""

    name: str
    category: str
    price: Decimal
    cost: Optional[Decimal] = None
    controls_stock: bool = False
    min_stock: Optional[Decimal] = None


@dataclass(frozen=True)
class StockMovementCommand:
    """Manual stock movement (purchase, loss, count adjustment)."""

    product_id: str
    movement_type: StockMovementType
    quantity: Decimal
    note: str
    unit_cost: Optional[Decimal] = None


@dataclass(frozen=True)
class AccountCategoryCommand:
    name: str
    account_type: AccountType
    parent_id: Optional[str] = None


@dataclass(frozen=True)
class LedgerEntryCommand:
    """Manual ledger entry such as a supplier payment or petty revenue."""

    category_id: str
    description: str
    amount: Decimal
    payment_method: Optional[PaymentMethod] = None
    date: Optional[datetime] = None


@dataclass(frozen=True)
class CashCloseCommand:
    """Operator-counted amounts for one business day."""

    day: date
    counted: Mapping[PaymentMethod, Decimal]
    shift: Optional[str] = None
    observation: Optional[str] = None


@dataclass(frozen=True)
class TabSnapshot:
    """A tab together with its items, payments and computed totals."""

    tab: data_manager.TabRow
    items: List[data_manager.TabItemRow]
    payments: List[data_manager.PaymentRow]
    totals: TabTotals
    total_paid: Decimal
    remaining: Decimal


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of moving a tab to PAID."""

    tab: data_manager.TabRow
    totals: TabTotals
    total_paid: Decimal
    ledger_entries: List[data_manager.LedgerEntryRow]
    stock_movements: List[data_manager.StockMovementRow]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _now(context: RuntimeContext) -> datetime:
    """Read the injected clock, treating naive values as UTC."""

    now = context.clock()
    return now if now.tzinfo is not None else now.replace(tzinfo=UTC)


def business_today(context: RuntimeContext) -> date:
    """Current calendar day in the configured business timezone."""

    return _now(context).astimezone(context.settings.tz).date()


def generate_id(prefix: str) -> str:
    """Return a short unique identifier such as ``TAB-1a2b3c4d5e6f``."""

    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Only reference data (products and account categories) is cached. Tabs,
    items and payments are always read fresh because they change under
    concurrent operations.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    if not names:
        return
    log.debug("Invalidating cache buckets: %s", ", ".join(names))
    for name in names:
        context._cache.pop(name, None)


def _read(context: RuntimeContext, loader: Callable[..., Iterable[Any]], *args: Any, **kwargs: Any) -> List[Any]:
    """Materialize a data layer iterator while holding the workbook lock."""

    with context.locks.workbook:
        return list(loader(context.workbook, *args, **kwargs))


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = _read(context, data_manager.iter_products)
        bucket["all"] = all_products
        bucket["active"] = [product for product in all_products if product.is_active]
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug(
            "Populated products cache with %d entries (%d active)",
            len(all_products),
            len(bucket["active"]),
        )
    return bucket


def _ensure_categories_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "categories")
    if "all" not in bucket:
        all_categories = _read(context, data_manager.iter_account_categories)
        bucket["all"] = all_categories
        bucket["by_id"] = {category.category_id: category for category in all_categories}
        log.debug("Populated account categories cache with %d entries", len(all_categories))
    return bucket


def _require_capability(actor: Actor, allowed: bool, action: str) -> None:
    if not allowed:
        log.warning("User '%s' is not allowed to %s", actor.user_id, action)
        raise PermissionDeniedError(f"User '{actor.user_id}' is not allowed to {action}")


def _unit_of_work(context: RuntimeContext) -> data_manager.UnitOfWork:
    return data_manager.UnitOfWork(context.workbook, context.locks.workbook)


def _to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "__dataclass_fields__"):
        value = asdict(value)
    return json.dumps(value, default=str, sort_keys=True)


def _stage_audit(
    uow: data_manager.UnitOfWork,
    context: RuntimeContext,
    actor: Actor,
    action: AuditAction,
    entity: str,
    entity_id: Optional[str],
    *,
    before: Any = None,
    after: Any = None,
    timestamp: Optional[datetime] = None,
) -> None:
    """Stage one audit event in the same unit of work as the change it describes."""

    uow.add(
        data_manager.AuditRow(
            audit_id=generate_id("AUD"),
            timestamp=timestamp or _now(context),
            actor_id=actor.user_id,
            action=action.value,
            entity=entity,
            entity_id=entity_id,
            before_json=_to_json(before),
            after_json=_to_json(after),
        )
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _coerce_decimal(value: Any, field_name: str) -> Decimal:
    try:
        number = to_decimal(value)
    except InvalidOperation as exc:
        log.error("Invalid numeric value for %s: %r", field_name, value)
        raise ValidationError(f"{field_name} must be a number, got {value!r}") from exc
    if not number.is_finite():
        log.error("Non-finite numeric value for %s: %r", field_name, value)
        raise ValidationError(f"{field_name} must be a finite number, got {value!r}")
    return number


def require_positive_quantity(quantity: Any, field_name: str = "Quantity") -> Decimal:
    """Validate that a quantity is strictly positive and return it as ``Decimal``.

    Fractional quantities (half portions, liters) are accepted.

    Raises:
        ValidationError: If ``quantity`` is not a number or is zero or negative.
    """

    value = _coerce_decimal(quantity, field_name)
    if value <= ZERO:
        log.error("Quantity validation failed for %s: %s", field_name, value)
        raise ValidationError(f"{field_name} must be greater than zero")
    return value


def require_positive_money(amount: Any, field_name: str = "Amount") -> Decimal:
    """Validate that an amount is positive once rounded to cents."""

    value = round_currency(_coerce_decimal(amount, field_name))
    if value <= ZERO:
        log.error("Monetary value validation failed for %s: %s", field_name, value)
        raise ValidationError(f"{field_name} must be greater than zero")
    return value


def require_nonnegative_money(amount: Any, field_name: str = "Amount") -> Decimal:
    """Validate that a monetary value is zero or positive, rounded to cents."""

    value = round_currency(_coerce_decimal(amount, field_name))
    if value < ZERO:
        log.error("Monetary value validation failed for %s: %s", field_name, value)
        raise ValidationError(f"{field_name} must be zero or positive")
    return value


def require_text(value: Optional[str], field_name: str, *, min_length: int, max_length: int) -> str:
    """Strip ``value`` and check its length bounds."""

    text = (value or "").strip()
    if not min_length <= len(text) <= max_length:
        log.error("Text validation failed for %s: length %d", field_name, len(text))
        raise ValidationError(f"{field_name} must be between {min_length} and {max_length} characters")
    return text


def optional_text(value: Optional[str], field_name: str, *, max_length: int) -> Optional[str]:
    text = (value or "").strip()
    if not text:
        return None
    if len(text) > max_length:
        log.error("Text validation failed for %s: length %d", field_name, len(text))
        raise ValidationError(f"{field_name} must be at most {max_length} characters")
    return text


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    clock: Optional[Callable[[], datetime]] = None,
    rng: Optional[random.Random] = None,
) -> RuntimeContext:
    """Load configuration settings and a live workbook for the business layer.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        clock (Callable[[], datetime] | None): Time source; defaults to the
            current UTC time.
        rng (random.Random | None): Random generator used for tab codes.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(
        parser,
        base_path=resolved_config.parent,
        config_path=resolved_config,
    )
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        clock=clock or _utc_now,
        rng=rng or random.Random(),
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION`` or the workbook lacks one of
            the expected sheets.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    missing = data_manager.missing_sheets(context.workbook)
    if missing:
        log.error("Workbook is missing sheets: %s", ", ".join(missing))
        raise RuntimeError(f"Workbook is missing sheets: {', '.join(missing)}")

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""

    with context.locks.workbook:
        data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook and an empty
            cache. Clock, random generator and locks are carried over.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        clock=context.clock,
        rng=context.rng,
        locks=context.locks,
    )


# ---------------------------------------------------------------------------
# Read helpers
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return cached product rows, active ones only unless asked otherwise."""

    cache = _ensure_products_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    product = _ensure_products_cache(context)["by_id"].get(product_id)
    if product is None:
        log.warning("Product '%s' not found", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return product


def list_account_categories(context: RuntimeContext) -> List[data_manager.AccountCategoryRow]:
    return list(_ensure_categories_cache(context)["all"])


def get_account_category(context: RuntimeContext, category_id: str) -> data_manager.AccountCategoryRow:
    category = _ensure_categories_cache(context)["by_id"].get(category_id)
    if category is None:
        log.warning("Account category '%s' not found", category_id)
        raise MissingReferenceError(f"Unknown account category id: {category_id}")
    return category


def list_tabs(context: RuntimeContext, *, status: Optional[TabStatus] = None) -> List[data_manager.TabRow]:
    """Return every tab in sheet order, optionally filtered by status."""

    tabs = _read(context, data_manager.iter_tabs)
    if status is None:
        return tabs
    wanted = TabStatus(status)
    return [tab for tab in tabs if tab.status is wanted]


def get_tab(context: RuntimeContext, tab_id: str) -> data_manager.TabRow:
    """Read a tab straight from the workbook.

    Raises:
        MissingReferenceError: If ``tab_id`` is unknown.
    """
    for tab in _read(context, data_manager.iter_tabs):
        if tab.tab_id == tab_id:
            return tab
    log.warning("Tab '%s' not found", tab_id)
    raise MissingReferenceError(f"Unknown tab id: {tab_id}")


def get_tab_item(context: RuntimeContext, item_id: str) -> data_manager.TabItemRow:
    for item in _read(context, data_manager.iter_tab_items):
        if item.item_id == item_id:
            return item
    log.warning("Tab item '%s' not found", item_id)
    raise MissingReferenceError(f"Unknown tab item id: {item_id}")


def _totals_for(tab: data_manager.TabRow, items: Iterable[data_manager.TabItemRow]) -> TabTotals:
    lines = [
        TotalsLine(quantity=item.quantity, unit_price=item.unit_price_snapshot, canceled=item.is_canceled)
        for item in items
    ]
    return calculate_tab_totals(lines, tab.discount, tab.service_fee_percent)


def _payment_lines(payments: Iterable[data_manager.PaymentRow]) -> List[payment_gate.PaymentLine]:
    return [payment_gate.PaymentLine(method=payment.method, amount=payment.amount) for payment in payments]


def get_tab_snapshot(context: RuntimeContext, tab_id: str) -> TabSnapshot:
    """Load a tab with its items and payments and compute what it owes.

    The snapshot is what both the settlement pipeline and the CLI tab view
    work from: totals are computed by :func:`comandas.totals.calculate_tab_totals`
    over the item snapshots, and ``remaining`` is floored at zero for display.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        tab_id (str): Identifier of the tab to load.

    Returns:
        TabSnapshot: Tab row, items, payments, totals, amount paid and
            remaining balance.

    Raises:
        MissingReferenceError: If ``tab_id`` is unknown.
    """
    with context.locks.workbook:
        tab = get_tab(context, tab_id)
        items = _read(context, data_manager.iter_tab_items, tab_id)
        payments = _read(context, data_manager.iter_payments, tab_id)
    totals = _totals_for(tab, items)
    lines = _payment_lines(payments)
    return TabSnapshot(
        tab=tab,
        items=items,
        payments=payments,
        totals=totals,
        total_paid=payment_gate.sum_payments(lines),
        remaining=payment_gate.remaining_balance(totals.total, lines),
    )


def calculate_tab_summary(context: RuntimeContext, tab_id: str) -> TabTotals:
    """Return the current totals of a tab."""

    return get_tab_snapshot(context, tab_id).totals


def list_ledger_entries(
    context: RuntimeContext,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[data_manager.LedgerEntryRow]:
    return _read(context, data_manager.iter_ledger_entries, start=start, end=end)


def list_audit_log(context: RuntimeContext, *, entity_id: Optional[str] = None) -> List[data_manager.AuditRow]:
    events = _read(context, data_manager.iter_audit_log)
    if entity_id is None:
        return events
    return [event for event in events if event.entity_id == entity_id]


def _category_type(context: RuntimeContext, category_id: str) -> AccountType:
    return get_account_category(context, category_id).account_type


def calculate_finance_summary(
    context: RuntimeContext,
    day: date,
    *,
    period: str = "daily",
) -> ledger.LedgerSummary:
    """Summarize revenue and expenses for the day or month containing ``day``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        day (date): Reference day, interpreted in the business timezone.
        period (str): ``"daily"`` or ``"monthly"``.

    Returns:
        ledger.LedgerSummary: Revenue, expenses, balance and revenue by
            payment method for the period.

    Raises:
        ValidationError: If ``period`` is not recognized.
        MissingReferenceError: If an entry references an unknown category.
    """
    if period == "daily":
        start, end = cash_close.day_range(day, context.settings.tz)
    elif period == "monthly":
        start, end = cash_close.month_range(day, context.settings.tz)
    else:
        raise ValidationError(f"Unknown period: {period}")

    entries = [
        ledger.CategorizedAmount(
            category_type=_category_type(context, entry.category_id),
            amount=entry.amount,
            payment_method=entry.payment_method,
        )
        for entry in list_ledger_entries(context, start=start, end=end)
    ]
    summary = ledger.summarize_ledger(entries)
    log.debug(
        "Finance summary %s %s: revenue=%s expenses=%s",
        period,
        day.isoformat(),
        summary.revenue,
        summary.expenses,
    )
    return summary


def _movement_lines(context: RuntimeContext) -> List[stock.MovementLine]:
    return [
        stock.MovementLine(
            product_id=movement.product_id,
            movement_type=movement.movement_type,
            quantity=movement.quantity,
        )
        for movement in _read(context, data_manager.iter_stock_movements)
    ]


def calculate_stock_levels(context: RuntimeContext) -> Dict[str, Decimal]:
    """Compute on-hand quantity per product from the stock movement sheet."""

    levels = stock.calculate_stock_levels(_movement_lines(context))
    log.debug("Calculated stock levels for %d products", len(levels))
    return levels


def low_stock_report(context: RuntimeContext) -> List[stock.StockAlert]:
    """Active stock-controlled products at or below their minimum."""

    products = [product for product in list_products(context) if product.controls_stock]
    return stock.low_stock_alerts(
        calculate_stock_levels(context),
        {product.product_id: product.min_stock for product in products},
        {product.product_id: product.name for product in products},
    )


# ---------------------------------------------------------------------------
# Tabs
# ---------------------------------------------------------------------------


def generate_tab_code(context: RuntimeContext) -> str:
    """Generate a human-readable tab code such as ``CMD250314-042``.

    Up to ``TAB_CODE_ATTEMPTS`` random suffixes are tried against the codes
    already in the workbook. When all of them collide the code falls back to
    ``CMD-<epoch millis>``.
    """

    now = _now(context)
    existing = {tab.code for tab in _read(context, data_manager.iter_tabs)}
    stamp = now.astimezone(context.settings.tz).strftime("%y%m%d")
    for _ in range(TAB_CODE_ATTEMPTS):
        code = f"CMD{stamp}-{context.rng.randrange(1000):03d}"
        if code not in existing:
            return code
    log.warning("Could not find a free tab code after %d attempts", TAB_CODE_ATTEMPTS)
    return f"CMD-{int(now.timestamp() * 1000)}"


def open_tab(context: RuntimeContext, actor: Actor, command: OpenTabCommand) -> data_manager.TabRow:
    """Open a new tab in ``OPEN`` status.

    The tab takes its service fee from the configured default. The customer
    name is stored only when customer fields are enabled in ``config.ini``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        actor (Actor): Acting principal; needs ``can_open_tabs``.
        command (OpenTabCommand): Kind, optional table number and customer.

    Returns:
        data_manager.TabRow: The newly staged tab at version 0.

    Raises:
        PermissionDeniedError: If the actor may not open tabs.
        ValidationError: For a non-positive table number or an overlong
            customer name.
    """
    _require_capability(actor, actor.capabilities.can_open_tabs, "open tabs")
    kind = TabKind(command.kind)
    if command.table_number is not None and int(command.table_number) <= 0:
        log.error("Table number validation failed: %s", command.table_number)
        raise ValidationError("Table number must be a positive integer")
    customer_name = optional_text(command.customer_name, "Customer name", max_length=120)
    if not context.settings.tabs.enable_customer_fields:
        customer_name = None

    now = _now(context)
    with context.locks.workbook:
        tab = data_manager.TabRow(
            tab_id=generate_id("TAB"),
            code=generate_tab_code(context),
            kind=kind,
            status=TabStatus.OPEN,
            table_number=int(command.table_number) if command.table_number is not None else None,
            customer_name=customer_name,
            discount=Decimal("0.00"),
            service_fee_percent=context.settings.tabs.default_service_fee_percent,
            opened_at=now,
            opened_by=actor.user_id,
            closed_at=None,
            closed_by=None,
            version=0,
        )
        with _unit_of_work(context) as uow:
            uow.add(tab)
            _stage_audit(uow, context, actor, AuditAction.TAB_CREATED, "Tab", tab.tab_id, after=tab, timestamp=now)

    log.info("Opened tab '%s' (%s) as %s", tab.code, tab.tab_id, kind.value)
    return tab


def _reopen_locked(context: RuntimeContext, actor: Actor, tab: data_manager.TabRow) -> data_manager.TabRow:
    """Move a PAID tab back to BILLING in its own unit of work.

    Caller must hold the tab lock.
    """

    if tab.status is not TabStatus.PAID:
        log.warning("Refused to reopen tab '%s' in status %s", tab.tab_id, tab.status.value)
        raise IllegalTransitionError(
            tab.status.value,
            TabStatus.BILLING.value,
            f"Only paid tabs can be reopened (tab is {tab.status.value})",
        )
    tab_status.require_transition(tab.status, TabStatus.BILLING, actor.capabilities.admin_override)

    now = _now(context)
    with _unit_of_work(context) as uow:
        version = uow.update_tab(
            tab.tab_id,
            tab.version,
            {"Status": TabStatus.BILLING, "ClosedAt": None, "ClosedBy": None},
        )
        reopened = replace(tab, status=TabStatus.BILLING, closed_at=None, closed_by=None, version=version)
        _stage_audit(
            uow,
            context,
            actor,
            AuditAction.TAB_REOPENED,
            "Tab",
            tab.tab_id,
            before=tab,
            after=reopened,
            timestamp=now,
        )
    log.info("Reopened tab '%s' by override of '%s'", tab.code, actor.user_id)
    return reopened


def reopen_tab(context: RuntimeContext, actor: Actor, tab_id: str) -> data_manager.TabRow:
    """Reopen a PAID tab to BILLING, clearing its close metadata.

    Only an actor holding ``admin_override`` may reopen. Revenue and stock
    movements posted by the earlier settlement stay in place; settling the
    tab again posts only the difference.

    Raises:
        PermissionDeniedError: Without ``admin_override``.
        IllegalTransitionError: If the tab is not PAID.
        MissingReferenceError: If ``tab_id`` is unknown.
    """
    _require_capability(actor, actor.capabilities.admin_override, "reopen paid tabs")
    with context.locks.for_tab(tab_id):
        return _reopen_locked(context, actor, get_tab(context, tab_id))


def _load_for_mutation(context: RuntimeContext, actor: Actor, tab_id: str) -> data_manager.TabRow:
    """Fetch a tab for an override-aware mutation, reopening it when PAID."""

    tab = get_tab(context, tab_id)
    if tab_status.requires_reopen(tab.status, actor.capabilities.admin_override):
        tab = _reopen_locked(context, actor, tab)
    return tab


def add_tab_item(context: RuntimeContext, actor: Actor, command: AddItemCommand) -> data_manager.TabItemRow:
    """Order a product on a tab, snapshotting its current name and price.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        actor (Actor): Acting principal; needs ``can_add_items``.
        command (AddItemCommand): Tab, product, quantity and optional note.

    Returns:
        data_manager.TabItemRow: The staged item.

    Raises:
        PermissionDeniedError: If the actor may not add items.
        ValidationError: For a non-positive quantity or an overlong note.
        MissingReferenceError: If the tab or product is unknown.
        InactiveResourceError: If the product is inactive.
        TabStatusError: If the tab's status does not accept new items.
    """
    _require_capability(actor, actor.capabilities.can_add_items, "add items to tabs")
    quantity = require_positive_quantity(command.quantity)
    note = optional_text(command.note, "Note", max_length=240)
    product = get_product(context, command.product_id)
    if not product.is_active:
        log.warning("Attempted to order inactive product '%s'", product.product_id)
        raise InactiveResourceError(f"Product '{product.product_id}' is inactive")

    override = actor.capabilities.admin_override
    with context.locks.for_tab(command.tab_id):
        tab = _load_for_mutation(context, actor, command.tab_id)
        if not tab_status.can_add_items_to_tab(
            tab.status, context.settings.tabs.allow_add_items_when_billing, override
        ):
            log.warning("Tab '%s' in status %s does not accept items", tab.tab_id, tab.status.value)
            raise TabStatusError(tab.status.value, "add items")

        now = _now(context)
        item = data_manager.TabItemRow(
            item_id=generate_id("ITEM"),
            tab_id=tab.tab_id,
            product_id=product.product_id,
            name_snapshot=product.name,
            unit_price_snapshot=product.price,
            quantity=quantity,
            note=note,
            added_by=actor.user_id,
            added_at=now,
        )
        with _unit_of_work(context) as uow:
            uow.update_tab(tab.tab_id, tab.version, {})
            uow.add(item)
            _stage_audit(uow, context, actor, AuditAction.TAB_ITEM_ADDED, "TabItem", item.item_id, after=item, timestamp=now)

    log.info("Added %s x '%s' to tab '%s'", quantity, product.name, tab.code)
    return item


def cancel_tab_item(context: RuntimeContext, actor: Actor, command: CancelItemCommand) -> data_manager.TabItemRow:
    """Cancel a tab item, keeping it on the tab but out of every total.

    Raises:
        PermissionDeniedError: If the actor may not cancel items.
        ValidationError: If the reason is not 3-250 characters long.
        MissingReferenceError: If the item is unknown.
        AlreadyCanceledError: If the item was canceled before.
        TabStatusError: If the tab's status does not allow changes.
    """
    _require_capability(actor, actor.capabilities.can_cancel_items, "cancel tab items")
    reason = require_text(command.reason, "Cancel reason", min_length=3, max_length=250)
    item = get_tab_item(context, command.item_id)

    with context.locks.for_tab(item.tab_id):
        item = get_tab_item(context, command.item_id)
        if item.is_canceled:
            log.warning("Tab item '%s' is already canceled", item.item_id)
            raise AlreadyCanceledError(f"Tab item '{item.item_id}' is already canceled")
        tab = _load_for_mutation(context, actor, item.tab_id)
        if not tab_status.can_mutate_tab(tab.status, actor.capabilities.admin_override):
            log.warning("Tab '%s' in status %s does not allow item cancellation", tab.tab_id, tab.status.value)
            raise TabStatusError(tab.status.value, "cancel items")

        now = _now(context)
        canceled = replace(item, canceled_at=now, canceled_by=actor.user_id, cancel_reason=reason)
        with _unit_of_work(context) as uow:
            uow.update_tab(tab.tab_id, tab.version, {})
            uow.update(
                SheetName.TAB_ITEMS,
                "ItemID",
                item.item_id,
                {"CanceledAt": now, "CanceledBy": actor.user_id, "CancelReason": reason},
            )
            _stage_audit(
                uow,
                context,
                actor,
                AuditAction.TAB_ITEM_CANCELED,
                "TabItem",
                item.item_id,
                before=item,
                after=canceled,
                timestamp=now,
            )

    log.info("Canceled item '%s' on tab '%s': %s", item.name_snapshot, tab.code, reason)
    return canceled


def apply_discount(context: RuntimeContext, actor: Actor, command: DiscountCommand) -> data_manager.TabRow:
    """Set a tab's discount.

    The stored value may exceed the current subtotal; totals clamp it when
    computed.

    Raises:
        PermissionDeniedError: If the actor may not apply discounts.
        ValidationError: If the discount is negative.
        TabStatusError: If the tab's status does not allow changes.
    """
    _require_capability(actor, actor.capabilities.can_apply_discount, "apply discounts")
    discount = require_nonnegative_money(command.discount, "Discount")

    with context.locks.for_tab(command.tab_id):
        tab = _load_for_mutation(context, actor, command.tab_id)
        if not tab_status.can_mutate_tab(tab.status, actor.capabilities.admin_override):
            log.warning("Tab '%s' in status %s does not allow discounts", tab.tab_id, tab.status.value)
            raise TabStatusError(tab.status.value, "apply discount")

        with _unit_of_work(context) as uow:
            version = uow.update_tab(tab.tab_id, tab.version, {"Discount": discount})
            updated = replace(tab, discount=discount, version=version)
            _stage_audit(
                uow,
                context,
                actor,
                AuditAction.TAB_DISCOUNT_APPLIED,
                "Tab",
                tab.tab_id,
                before={"discount": tab.discount},
                after={"discount": discount},
            )

    log.info("Applied discount %s to tab '%s'", discount, tab.code)
    return updated


def register_payment(context: RuntimeContext, actor: Actor, command: PaymentCommand) -> data_manager.PaymentRow:
    """Record a payment against a tab.

    An OPEN tab moves to BILLING in the same unit of work as the payment.
    Overpayment is accepted; the sufficiency check happens at settlement.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        actor (Actor): Acting principal; needs ``can_operate_cashier``.
        command (PaymentCommand): Tab, method and positive amount.

    Returns:
        data_manager.PaymentRow: The staged payment.

    Raises:
        PermissionDeniedError: If the actor may not operate the cashier.
        ValidationError: If the amount is not positive.
        TabStatusError: If the tab's status does not accept payments.
    """
    _require_capability(actor, actor.capabilities.can_operate_cashier, "register payments")
    method = PaymentMethod(command.method)
    amount = require_positive_money(command.amount)

    with context.locks.for_tab(command.tab_id):
        tab = _load_for_mutation(context, actor, command.tab_id)
        if not tab_status.can_register_payment(tab.status, actor.capabilities.admin_override):
            log.warning("Tab '%s' in status %s does not accept payments", tab.tab_id, tab.status.value)
            raise TabStatusError(tab.status.value, "register payment")

        now = _now(context)
        payment = data_manager.PaymentRow(
            payment_id=generate_id("PAY"),
            tab_id=tab.tab_id,
            method=method,
            amount=amount,
            received_by=actor.user_id,
            received_at=now,
        )
        changes: Dict[str, Any] = {}
        if tab.status is TabStatus.OPEN:
            tab_status.require_transition(tab.status, TabStatus.BILLING)
            changes["Status"] = TabStatus.BILLING
        with _unit_of_work(context) as uow:
            uow.update_tab(tab.tab_id, tab.version, changes)
            uow.add(payment)
            _stage_audit(
                uow,
                context,
                actor,
                AuditAction.TAB_PAYMENT_REGISTERED,
                "Payment",
                payment.payment_id,
                after={"payment": asdict(payment), "status_change": "BILLING" if changes else None},
                timestamp=now,
            )

    log.info("Registered %s payment of %s on tab '%s'", method.value, amount, tab.code)
    return payment


def _resolve_revenue_category(
    context: RuntimeContext,
    uow: data_manager.UnitOfWork,
) -> data_manager.AccountCategoryRow:
    """Find the configured revenue category, staging it when absent."""

    name = context.settings.tabs.revenue_category_name
    for category in list_account_categories(context):
        if category.account_type is AccountType.REVENUE and category.name.casefold() == name.casefold():
            return category
    category = data_manager.AccountCategoryRow(
        category_id=generate_id("CAT"),
        name=name,
        account_type=AccountType.REVENUE,
        parent_id=None,
    )
    uow.add(category)
    log.info("Creating missing revenue category '%s'", name)
    return category


def _already_deducted(context: RuntimeContext, tab_id: str) -> Dict[str, Decimal]:
    """Net quantity per product moved out by earlier settlements of a tab."""

    net: Dict[str, Decimal] = {}
    for movement in _read(context, data_manager.iter_stock_movements):
        if movement.related_tab_id != tab_id:
            continue
        signed = -movement.quantity * stock.movement_signal(movement.movement_type)
        net[movement.product_id] = net.get(movement.product_id, ZERO) + signed
    return net


def _unposted_payments(
    context: RuntimeContext,
    tab_id: str,
    payments: List[payment_gate.PaymentLine],
) -> List[payment_gate.PaymentLine]:
    """Payments not yet covered by revenue entries linked to the tab.

    A first settlement returns every payment. After a reopen only the
    per-method increase is returned, so revenue is never posted twice.
    """

    posted: Dict[PaymentMethod, Decimal] = {}
    for entry in list_ledger_entries(context):
        if entry.related_tab_id != tab_id or entry.payment_method is None:
            continue
        if _category_type(context, entry.category_id) is not AccountType.REVENUE:
            continue
        posted[entry.payment_method] = posted.get(entry.payment_method, ZERO) + entry.amount
    if not posted:
        return payments

    pending = []
    for method, amount in ledger.aggregate_payments_by_method(payments).items():
        delta = amount - posted.get(method, ZERO)
        if delta > ZERO:
            pending.append(payment_gate.PaymentLine(method=method, amount=delta))
    return pending


def settle_tab(context: RuntimeContext, actor: Actor, tab_id: str) -> SettlementResult:
    """Close a tab as PAID, deducting stock and posting revenue atomically.

    The pipeline runs under the tab's lock against a fresh snapshot:

    1. the status machine confirms the move to PAID is legal;
    2. totals are computed from the item snapshots;
    3. the payment gate confirms payments cover the total within one cent;
    4. one unit of work stages the status change (guarded by the tab's
       version), the planned stock movements, one revenue ledger entry per
       payment method and the audit event.

    Either every write lands or none does. A tab that is already PAID is
    rejected, so of two concurrent settlements exactly one succeeds.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        actor (Actor): Acting principal; needs ``can_operate_cashier``.
        tab_id (str): Tab to settle.

    Returns:
        SettlementResult: Updated tab, totals, amount paid and the staged
            ledger and stock rows.

    Raises:
        PermissionDeniedError: If the actor may not operate the cashier.
        IllegalTransitionError: If the tab cannot move to PAID, including when
            it is already PAID.
        InsufficientPaymentError: If more than one cent is still due.
        ConcurrentModificationError: If the tab changed before commit.
    """
    _require_capability(actor, actor.capabilities.can_operate_cashier, "settle tabs")
    override = actor.capabilities.admin_override

    with context.locks.for_tab(tab_id):
        snapshot = get_tab_snapshot(context, tab_id)
        tab = snapshot.tab
        if tab.status is TabStatus.PAID:
            log.warning("Tab '%s' is already paid", tab.tab_id)
            raise IllegalTransitionError(
                TabStatus.PAID.value,
                TabStatus.PAID.value,
                f"Tab '{tab.code}' is already paid",
            )
        tab_status.require_transition(tab.status, TabStatus.PAID, override)
        payment_lines = _payment_lines(snapshot.payments)
        total_paid = payment_gate.check_payment_sufficiency(snapshot.totals.total, payment_lines)

        now = _now(context)
        products = _ensure_products_cache(context)["by_id"]
        stock_lines = []
        for item in snapshot.items:
            product = products.get(item.product_id) if item.product_id else None
            stock_lines.append(
                stock.StockLine(
                    product_id=item.product_id,
                    product_name=item.name_snapshot,
                    quantity=item.quantity,
                    controls_stock=bool(product and product.controls_stock),
                    canceled=item.is_canceled,
                )
            )
        planned = stock.plan_stock_deductions(
            stock_lines,
            tab_id=tab.tab_id,
            tab_code=tab.code,
            created_by=actor.user_id,
            stock_module_enabled=context.settings.tabs.enable_stock_module,
            already_deducted=_already_deducted(context, tab.tab_id),
        )
        movement_rows = [
            data_manager.StockMovementRow(
                movement_id=generate_id("MOV"),
                product_id=movement.product_id,
                movement_type=movement.movement_type,
                quantity=movement.quantity,
                unit_cost=None,
                note=movement.note,
                related_tab_id=movement.related_tab_id,
                created_by=movement.created_by,
                created_at=now,
            )
            for movement in planned
        ]

        with _unit_of_work(context) as uow:
            version = uow.update_tab(
                tab.tab_id,
                tab.version,
                {"Status": TabStatus.PAID, "ClosedAt": now, "ClosedBy": actor.user_id},
            )
            for row in movement_rows:
                uow.add(row)

            category = _resolve_revenue_category(context, uow)
            revenue = ledger.build_revenue_ledger_entries(
                _unposted_payments(context, tab.tab_id, payment_lines),
                ledger.RevenueEntryMetadata(
                    category_id=category.category_id,
                    tab_id=tab.tab_id,
                    created_by=actor.user_id,
                    date=now,
                ),
            )
            ledger_rows = [
                data_manager.LedgerEntryRow(
                    entry_id=generate_id("LED"),
                    date=entry.date,
                    category_id=entry.category_id,
                    description=entry.description,
                    amount=round_currency(entry.amount),
                    payment_method=entry.payment_method,
                    related_tab_id=entry.related_tab_id,
                    created_by=entry.created_by,
                )
                for entry in revenue
            ]
            for row in ledger_rows:
                uow.add(row)

            settled = replace(tab, status=TabStatus.PAID, closed_at=now, closed_by=actor.user_id, version=version)
            _stage_audit(
                uow,
                context,
                actor,
                AuditAction.TAB_STATUS_UPDATED,
                "Tab",
                tab.tab_id,
                before={"status": tab.status.value},
                after={
                    "status": TabStatus.PAID.value,
                    "total": snapshot.totals.total,
                    "total_paid": total_paid,
                    "ledger_entries": len(ledger_rows),
                    "stock_movements": len(movement_rows),
                },
                timestamp=now,
            )
        _invalidate_cache(context, "categories")

    log.info(
        "Settled tab '%s': total=%s paid=%s (%d ledger entries, %d stock movements)",
        tab.code,
        snapshot.totals.total,
        total_paid,
        len(ledger_rows),
        len(movement_rows),
    )
    return SettlementResult(
        tab=settled,
        totals=snapshot.totals,
        total_paid=total_paid,
        ledger_entries=ledger_rows,
        stock_movements=movement_rows,
    )


def update_tab_status(
    context: RuntimeContext,
    actor: Actor,
    command: StatusChangeCommand,
) -> Union[SettlementResult, data_manager.TabRow]:
    """Move a tab to a new lifecycle status.

    ``PAID`` delegates to :func:`settle_tab` and returns its
    :class:`SettlementResult`. ``CANCELED`` needs ``can_cancel_tabs`` and
    records close metadata; ``OPEN``/``BILLING`` need ``can_open_tabs``.
    A PAID tab leaving PAID by override is reopened to BILLING first, audited
    as ``TAB_REOPENED``.
    Requesting the current status is a no-op that returns the tab unchanged.

    Raises:
        PermissionDeniedError: If the actor lacks the capability for the move.
        IllegalTransitionError: If the status machine rejects the move.
    """
    requested = TabStatus(command.next_status)
    if requested is TabStatus.PAID:
        return settle_tab(context, actor, command.tab_id)

    if requested is TabStatus.CANCELED:
        _require_capability(actor, actor.capabilities.can_cancel_tabs, "cancel tabs")
    else:
        _require_capability(actor, actor.capabilities.can_open_tabs, "change tab status")
    override = actor.capabilities.admin_override

    with context.locks.for_tab(command.tab_id):
        tab = get_tab(context, command.tab_id)
        if tab.status is requested:
            log.info("Tab '%s' already in status %s", tab.code, requested.value)
            return tab
        tab_status.require_transition(tab.status, requested, override)
        if tab.status is TabStatus.PAID:
            tab = _reopen_locked(context, actor, tab)
            if requested is TabStatus.BILLING:
                return tab

        now = _now(context)
        closing = requested is TabStatus.CANCELED
        closed_at = now if closing else None
        closed_by = actor.user_id if closing else None
        with _unit_of_work(context) as uow:
            version = uow.update_tab(
                tab.tab_id,
                tab.version,
                {"Status": requested, "ClosedAt": closed_at, "ClosedBy": closed_by},
            )
            updated = replace(tab, status=requested, closed_at=closed_at, closed_by=closed_by, version=version)
            _stage_audit(
                uow,
                context,
                actor,
                AuditAction.TAB_CANCELED if closing else AuditAction.TAB_STATUS_UPDATED,
                "Tab",
                tab.tab_id,
                before={"status": tab.status.value},
                after={"status": requested.value},
                timestamp=now,
            )

    log.info("Tab '%s' moved %s -> %s", tab.code, tab.status.value, requested.value)
    return updated


# ---------------------------------------------------------------------------
# Products and stock
# ---------------------------------------------------------------------------


def _validated_product_fields(command: ProductCommand) -> Dict[str, Any]:
    name = require_text(command.name, "Product name", min_length=2, max_length=120)
    category = require_text(command.category, "Product category", min_length=2, max_length=80)
    price = require_positive_money(command.price, "Price")
    cost = require_nonnegative_money(command.cost, "Cost") if command.cost is not None else None
    min_stock = None
    if command.controls_stock and command.min_stock is not None:
        min_stock = _coerce_decimal(command.min_stock, "Minimum stock")
        if min_stock < ZERO:
            raise ValidationError("Minimum stock must be zero or positive")
    return {
        "name": name,
        "category": category,
        "price": price,
        "cost": cost,
        "controls_stock": bool(command.controls_stock),
        "min_stock": min_stock,
    }


def create_product(context: RuntimeContext, actor: Actor, command: ProductCommand) -> data_manager.ProductRow:
    """Add a product to the catalog.

    ``min_stock`` is kept only for stock-controlled products.

    Raises:
        PermissionDeniedError: If the actor may not manage products.
        ValidationError: For out-of-range names, prices or costs.
    """
    _require_capability(actor, actor.capabilities.can_manage_products, "manage products")
    product = data_manager.ProductRow(
        product_id=generate_id("PRD"),
        is_active=True,
        **_validated_product_fields(command),
    )
    with _unit_of_work(context) as uow:
        uow.add(product)
        _stage_audit(uow, context, actor, AuditAction.PRODUCT_CREATED, "Product", product.product_id, after=product)
    _invalidate_cache(context, "products")
    log.info("Created product '%s' (%s)", product.name, product.product_id)
    return product


def update_product(
    context: RuntimeContext,
    actor: Actor,
    product_id: str,
    command: ProductCommand,
) -> data_manager.ProductRow:
    """Replace a product's attributes. Existing tab items keep their snapshots."""

    _require_capability(actor, actor.capabilities.can_manage_products, "manage products")
    current = get_product(context, product_id)
    fields = _validated_product_fields(command)
    updated = replace(current, **fields)
    with _unit_of_work(context) as uow:
        uow.update(
            SheetName.PRODUCTS,
            "ProductID",
            product_id,
            {
                "Name": updated.name,
                "Category": updated.category,
                "Price": updated.price,
                "Cost": updated.cost,
                "ControlsStock": updated.controls_stock,
                "MinStock": updated.min_stock,
            },
        )
        _stage_audit(
            uow, context, actor, AuditAction.PRODUCT_UPDATED, "Product", product_id, before=current, after=updated
        )
    _invalidate_cache(context, "products")
    log.info("Updated product '%s'", product_id)
    return updated


def toggle_product_active(
    context: RuntimeContext,
    actor: Actor,
    product_id: str,
    is_active: Optional[bool] = None,
) -> data_manager.ProductRow:
    """Activate or deactivate a product; flips the flag when ``is_active`` is omitted."""

    _require_capability(actor, actor.capabilities.can_manage_products, "manage products")
    current = get_product(context, product_id)
    target = (not current.is_active) if is_active is None else bool(is_active)
    updated = replace(current, is_active=target)
    with _unit_of_work(context) as uow:
        uow.update(SheetName.PRODUCTS, "ProductID", product_id, {"IsActive": target})
        _stage_audit(
            uow,
            context,
            actor,
            AuditAction.PRODUCT_STATUS_UPDATED,
            "Product",
            product_id,
            before={"is_active": current.is_active},
            after={"is_active": target},
        )
    _invalidate_cache(context, "products")
    log.info("Product '%s' is now %s", product_id, "active" if target else "inactive")
    return updated


def create_stock_movement(
    context: RuntimeContext,
    actor: Actor,
    command: StockMovementCommand,
) -> data_manager.StockMovementRow:
    """Record a manual stock movement for a product.

    Raises:
        PermissionDeniedError: If the actor may not manage stock.
        ValidationError: For a non-positive quantity, a negative unit cost or
            a note outside 3-240 characters.
        MissingReferenceError: If the product is unknown.
    """
    _require_capability(actor, actor.capabilities.can_manage_stock, "manage stock")
    product = get_product(context, command.product_id)
    quantity = require_positive_quantity(command.quantity)
    note = require_text(command.note, "Note", min_length=3, max_length=240)
    unit_cost = require_nonnegative_money(command.unit_cost, "Unit cost") if command.unit_cost is not None else None

    now = _now(context)
    movement = data_manager.StockMovementRow(
        movement_id=generate_id("MOV"),
        product_id=product.product_id,
        movement_type=StockMovementType(command.movement_type),
        quantity=quantity,
        unit_cost=unit_cost,
        note=note,
        related_tab_id=None,
        created_by=actor.user_id,
        created_at=now,
    )
    with _unit_of_work(context) as uow:
        uow.add(movement)
        _stage_audit(
            uow, context, actor, AuditAction.STOCK_ADJUSTED, "StockMovement", movement.movement_id, after=movement,
            timestamp=now,
        )
    log.info("Recorded %s of %s for product '%s'", movement.movement_type.value, quantity, product.name)
    return movement


# ---------------------------------------------------------------------------
# Finance
# ---------------------------------------------------------------------------


def create_account_category(
    context: RuntimeContext,
    actor: Actor,
    command: AccountCategoryCommand,
) -> data_manager.AccountCategoryRow:
    _require_capability(actor, actor.capabilities.can_manage_categories, "manage account categories")
    name = require_text(command.name, "Category name", min_length=2, max_length=120)
    if command.parent_id is not None:
        get_account_category(context, command.parent_id)
    category = data_manager.AccountCategoryRow(
        category_id=generate_id("CAT"),
        name=name,
        account_type=AccountType(command.account_type),
        parent_id=command.parent_id,
    )
    with _unit_of_work(context) as uow:
        uow.add(category)
        _stage_audit(
            uow, context, actor, AuditAction.ACCOUNT_CATEGORY_CREATED, "AccountCategory", category.category_id,
            after=category,
        )
    _invalidate_cache(context, "categories")
    log.info("Created %s category '%s'", category.account_type.value, name)
    return category


def create_ledger_entry(
    context: RuntimeContext,
    actor: Actor,
    command: LedgerEntryCommand,
) -> data_manager.LedgerEntryRow:
    """Post a manual ledger entry.

    Naive dates are interpreted in the business timezone; a missing date
    means now. Amounts are rounded to cents before storage.

    Raises:
        PermissionDeniedError: If the actor may not post ledger entries.
        ValidationError: For a non-positive amount or a description outside
            3-240 characters.
        MissingReferenceError: If the category is unknown.
    """
    _require_capability(actor, actor.capabilities.can_post_ledger, "post ledger entries")
    category = get_account_category(context, command.category_id)
    description = require_text(command.description, "Description", min_length=3, max_length=240)
    amount = require_positive_money(command.amount)
    when = command.date or _now(context)
    if when.tzinfo is None:
        when = when.replace(tzinfo=context.settings.tz)

    entry = data_manager.LedgerEntryRow(
        entry_id=generate_id("LED"),
        date=when,
        category_id=category.category_id,
        description=description,
        amount=amount,
        payment_method=PaymentMethod(command.payment_method) if command.payment_method is not None else None,
        related_tab_id=None,
        created_by=actor.user_id,
    )
    with _unit_of_work(context) as uow:
        uow.add(entry)
        _stage_audit(uow, context, actor, AuditAction.LEDGER_MANUAL_CREATED, "LedgerEntry", entry.entry_id, after=entry)
    log.info("Posted %s entry '%s' of %s", category.account_type.value, description, amount)
    return entry


def create_cash_close(
    context: RuntimeContext,
    actor: Actor,
    command: CashCloseCommand,
) -> cash_close.CashCloseResult:
    """Reconcile and record the cash close for a business day.

    Expected amounts come from the ledger entries dated inside the day (in
    the configured timezone) that carry a payment method. The difference
    between counted and expected totals is stored as-is; a nonzero value is
    not an error.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        actor (Actor): Acting principal; needs ``can_operate_cashier``.
        command (CashCloseCommand): Day, counted amounts per method, optional
            shift label and observation.

    Returns:
        cash_close.CashCloseResult: Both per-method maps, totals and the
            signed difference.

    Raises:
        PermissionDeniedError: If the actor may not operate the cashier.
        ValidationError: For negative counted amounts or overlong text.
    """
    _require_capability(actor, actor.capabilities.can_operate_cashier, "close the cash register")
    shift = optional_text(command.shift, "Shift", max_length=80)
    observation = optional_text(command.observation, "Observation", max_length=240)
    counted = {
        PaymentMethod(method): require_nonnegative_money(amount, f"Counted {PaymentMethod(method).value}")
        for method, amount in command.counted.items()
    }

    tz = context.settings.tz
    start, end = cash_close.day_range(command.day, tz)
    entries = [
        cash_close.ReconciliationEntry(
            date=entry.date,
            amount=entry.amount,
            category_type=_category_type(context, entry.category_id),
            payment_method=entry.payment_method,
        )
        for entry in list_ledger_entries(context, start=start, end=end)
        if entry.payment_method is not None
    ]
    result = cash_close.reconcile_cash_close(
        command.day,
        entries,
        counted,
        closed_by=actor.user_id,
        tz=tz,
        shift=shift,
        observation=observation,
    )

    now = _now(context)
    row = data_manager.CashCloseRow(
        cash_close_id=generate_id("CC"),
        date=result.day_start,
        shift=result.shift,
        expected_by_method=result.expected_by_method,
        counted_by_method=result.counted_by_method,
        difference=result.difference,
        observation=result.observation,
        closed_by=actor.user_id,
        closed_at=now,
    )
    with _unit_of_work(context) as uow:
        uow.add(row)
        _stage_audit(
            uow,
            context,
            actor,
            AuditAction.CASH_CLOSE_CREATED,
            "CashClose",
            row.cash_close_id,
            after={
                "day": command.day.isoformat(),
                "expected_total": result.expected_total,
                "counted_total": result.counted_total,
                "difference": result.difference,
            },
            timestamp=now,
        )
    log.info(
        "Cash close for %s recorded: expected=%s counted=%s difference=%s",
        command.day.isoformat(),
        result.expected_total,
        result.counted_total,
        result.difference,
    )
    return result


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def update_settings(
    context: RuntimeContext,
    actor: Actor,
    tabs: data_manager.TabSettings,
) -> RuntimeContext:
    """Replace the operational tab settings.

    The new values are written back to ``config.ini`` when the context was
    loaded from one. Because :class:`RuntimeContext` is immutable a new
    context is returned; it shares the workbook, cache and locks of the old
    one.

    Raises:
        PermissionDeniedError: If the actor may not manage settings.
        ValidationError: If the default service fee is outside 0-100 or the
            revenue category name is empty.
    """
    _require_capability(actor, actor.capabilities.can_manage_settings, "manage settings")
    fee = _coerce_decimal(tabs.default_service_fee_percent, "Default service fee")
    if fee < ZERO or fee > Decimal("100"):
        log.error("Service fee validation failed: %s", fee)
        raise ValidationError("Default service fee must be between 0 and 100")
    revenue_name = require_text(tabs.revenue_category_name, "Revenue category", min_length=2, max_length=120)
    new_tabs = replace(tabs, default_service_fee_percent=fee, revenue_category_name=revenue_name)

    with _unit_of_work(context) as uow:
        _stage_audit(
            uow,
            context,
            actor,
            AuditAction.SETTINGS_UPDATED,
            "Settings",
            None,
            before=context.settings.tabs,
            after=new_tabs,
        )
    if context.settings.config_path is not None:
        data_manager.write_tab_settings(context.settings.config_path, new_tabs)
    log.info("Updated tab settings")
    return replace(context, settings=replace(context.settings, tabs=new_tabs))


__all__ = [
    "RuntimeContext",
    "OpenTabCommand",
    "AddItemCommand",
    "CancelItemCommand",
    "DiscountCommand",
    "PaymentCommand",
    "StatusChangeCommand",
    "ProductCommand",
    "StockMovementCommand",
    "AccountCategoryCommand",
    "LedgerEntryCommand",
    "CashCloseCommand",
    "TabSnapshot",
    "SettlementResult",
    "business_today",
    "generate_id",
    "generate_tab_code",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "list_products",
    "get_product",
    "list_account_categories",
    "get_account_category",
    "list_tabs",
    "get_tab",
    "get_tab_item",
    "get_tab_snapshot",
    "calculate_tab_summary",
    "list_ledger_entries",
    "list_audit_log",
    "calculate_finance_summary",
    "calculate_stock_levels",
    "low_stock_report",
    "open_tab",
    "reopen_tab",
    "add_tab_item",
    "cancel_tab_item",
    "apply_discount",
    "register_payment",
    "settle_tab",
    "update_tab_status",
    "create_product",
    "update_product",
    "toggle_product_active",
    "create_stock_movement",
    "create_account_category",
    "create_ledger_entry",
    "create_cash_close",
    "update_settings",
    "require_positive_quantity",
    "require_positive_money",
    "require_nonnegative_money",
    "require_text",
    "optional_text",
]
