"""Data access layer for the comandas workbook.

This module provides low-level helpers that read from and write to the bar's
master workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding, parsing, and updating ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
4. Transactions: :class:`UnitOfWork` stages several writes, applies them
   together, rolls them back in memory when one fails, and checks each
   touched tab's ``Version`` column (compare-and-swap) before applying.
"""


from __future__ import annotations

import configparser
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    CENT,
    AccountType,
    PaymentMethod,
    SheetName,
    StockMovementType,
    TabKind,
    TabStatus,
)
from .errors import ConcurrentModificationError, MissingReferenceError


CONFIG_FILE_NAME = "config.ini"

_METHODS = [method.value for method in PaymentMethod]

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "Name",
        "Category",
        "Price",
        "Cost",
        "ControlsStock",
        "MinStock",
        "IsActive",
    ],
    SheetName.TABS.value: [
        "TabID",
        "Code",
        "Kind",
        "Status",
        "TableNumber",
        "CustomerName",
        "Discount",
        "ServiceFeePercent",
        "OpenedAt",
        "OpenedBy",
        "ClosedAt",
        "ClosedBy",
        "Version",
    ],
    SheetName.TAB_ITEMS.value: [
        "ItemID",
        "TabID",
        "ProductID",
        "NameSnapshot",
        "UnitPriceSnapshot",
        "Quantity",
        "Note",
        "AddedBy",
        "AddedAt",
        "CanceledAt",
        "CanceledBy",
        "CancelReason",
    ],
    SheetName.PAYMENTS.value: [
        "PaymentID",
        "TabID",
        "Method",
        "Amount",
        "ReceivedBy",
        "ReceivedAt",
    ],
    SheetName.ACCOUNT_CATEGORIES.value: [
        "CategoryID",
        "Name",
        "Type",
        "ParentID",
    ],
    SheetName.LEDGER_ENTRIES.value: [
        "EntryID",
        "Date",
        "CategoryID",
        "Description",
        "Amount",
        "PaymentMethod",
        "RelatedTabID",
        "CreatedBy",
    ],
    SheetName.STOCK_MOVEMENTS.value: [
        "MovementID",
        "ProductID",
        "Type",
        "Quantity",
        "UnitCost",
        "Note",
        "RelatedTabID",
        "CreatedBy",
        "CreatedAt",
    ],
    SheetName.CASH_CLOSES.value: [
        "CashCloseID",
        "Date",
        "Shift",
        *[f"Expected{method}" for method in _METHODS],
        *[f"Counted{method}" for method in _METHODS],
        "Difference",
        "Observation",
        "ClosedBy",
        "ClosedAt",
    ],
    SheetName.AUDIT_LOG.value: [
        "AuditID",
        "Timestamp",
        "ActorID",
        "Action",
        "Entity",
        "EntityID",
        "BeforeJSON",
        "AfterJSON",
    ],
}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TabSettings:
    """Operational switches read by the tab engine."""

    allow_add_items_when_billing: bool = False
    default_service_fee_percent: Decimal = Decimal("10")
    enable_stock_module: bool = True
    enable_customer_fields: bool = True
    revenue_category_name: str = "Sales"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    bar_name: str
    schema_version: str
    timezone: str = "UTC"
    tabs: TabSettings = field(default_factory=TabSettings)
    config_path: Optional[Path] = None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match wins.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_tab_settings(parser: configparser.ConfigParser) -> TabSettings:
    """Read the optional ``[Tabs]`` and ``[Finance]`` sections.

    Missing options fall back to :class:`TabSettings` defaults; present but
    malformed values raise ``ValueError``.
    """

    defaults = TabSettings()
    fee_raw = parser.get("Tabs", "DefaultServiceFeePercent", fallback=str(defaults.default_service_fee_percent))
    fee = Decimal(fee_raw.strip().replace(",", "."))
    if fee < Decimal("0") or fee > Decimal("100"):
        raise ValueError(f"DefaultServiceFeePercent must be between 0 and 100, got {fee}")

    return TabSettings(
        allow_add_items_when_billing=parser.getboolean(
            "Tabs", "AllowAddItemsWhenBilling", fallback=defaults.allow_add_items_when_billing
        ),
        default_service_fee_percent=fee,
        enable_stock_module=parser.getboolean("Tabs", "EnableStockModule", fallback=defaults.enable_stock_module),
        enable_customer_fields=parser.getboolean(
            "Tabs", "EnableCustomerFields", fallback=defaults.enable_customer_fields
        ),
        revenue_category_name=parser.get("Finance", "RevenueCategory", fallback=defaults.revenue_category_name),
    )


def parse_settings(
    parser: configparser.ConfigParser,
    *,
    base_path: Optional[Path] = None,
    config_path: Optional[Path] = None,
) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        bar_name = parser.get("System", "BarName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        bar_name=bar_name,
        schema_version=schema_version,
        timezone=parser.get("System", "Timezone", fallback="UTC"),
        tabs=parse_tab_settings(parser),
        config_path=config_path,
    )


def write_tab_settings(config_path: Path, tabs: TabSettings) -> None:
    """Rewrite the ``[Tabs]`` and ``[Finance]`` sections of ``config.ini``."""

    parser = read_config(config_path)
    for section in ("Tabs", "Finance"):
        if not parser.has_section(section):
            parser.add_section(section)
    parser.set("Tabs", "AllowAddItemsWhenBilling", str(tabs.allow_add_items_when_billing).lower())
    parser.set("Tabs", "DefaultServiceFeePercent", str(tabs.default_service_fee_percent))
    parser.set("Tabs", "EnableStockModule", str(tabs.enable_stock_module).lower())
    parser.set("Tabs", "EnableCustomerFields", str(tabs.enable_customer_fields).lower())
    parser.set("Finance", "RevenueCategory", tabs.revenue_category_name)
    with Path(config_path).expanduser().resolve().open("w", encoding="utf-8") as handle:
        parser.write(handle)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination`` atomically.

    The workbook is first written to a temporary file in the destination
    directory and then moved over the target with :func:`os.replace`, so a
    crash mid-save never leaves a truncated workbook behind.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    try:
        workbook.save(temp_name)
        os.replace(temp_name, dest)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def missing_sheets(workbook: Workbook) -> List[str]:
    """Return the expected sheet names absent from ``workbook``."""

    return [name for name in SHEET_COLUMNS if name not in workbook.sheetnames]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    category: str
    price: Decimal
    cost: Optional[Decimal]
    controls_stock: bool
    min_stock: Optional[Decimal]
    is_active: bool


@dataclass(frozen=True)
class TabRow:
    """In-memory view of a row from the ``Tabs`` sheet."""

    tab_id: str
    code: str
    kind: TabKind
    status: TabStatus
    table_number: Optional[int]
    customer_name: Optional[str]
    discount: Decimal
    service_fee_percent: Decimal
    opened_at: datetime
    opened_by: str
    closed_at: Optional[datetime]
    closed_by: Optional[str]
    version: int


@dataclass(frozen=True)
class TabItemRow:
    """In-memory view of a row from the ``TabItems`` sheet."""

    item_id: str
    tab_id: str
    product_id: Optional[str]
    name_snapshot: str
    unit_price_snapshot: Decimal
    quantity: Decimal
    note: Optional[str]
    added_by: str
    added_at: datetime
    canceled_at: Optional[datetime] = None
    canceled_by: Optional[str] = None
    cancel_reason: Optional[str] = None

    @property
    def is_canceled(self) -> bool:
        return self.canceled_at is not None


@dataclass(frozen=True)
class PaymentRow:
    payment_id: str
    tab_id: str
    method: PaymentMethod
    amount: Decimal
    received_by: str
    received_at: datetime


@dataclass(frozen=True)
class AccountCategoryRow:
    category_id: str
    name: str
    account_type: AccountType
    parent_id: Optional[str]


@dataclass(frozen=True)
class LedgerEntryRow:
    entry_id: str
    date: datetime
    category_id: str
    description: str
    amount: Decimal
    payment_method: Optional[PaymentMethod]
    related_tab_id: Optional[str]
    created_by: str


@dataclass(frozen=True)
class StockMovementRow:
    movement_id: str
    product_id: str
    movement_type: StockMovementType
    quantity: Decimal
    unit_cost: Optional[Decimal]
    note: str
    related_tab_id: Optional[str]
    created_by: str
    created_at: datetime


@dataclass(frozen=True)
class CashCloseRow:
    cash_close_id: str
    date: datetime
    shift: Optional[str]
    expected_by_method: Dict[PaymentMethod, Decimal]
    counted_by_method: Dict[PaymentMethod, Decimal]
    difference: Decimal
    observation: Optional[str]
    closed_by: str
    closed_at: datetime


@dataclass(frozen=True)
class AuditRow:
    audit_id: str
    timestamp: datetime
    actor_id: str
    action: str
    entity: str
    entity_id: Optional[str]
    before_json: Optional[str]
    after_json: Optional[str]


# ---------------------------------------------------------------------------
# Cell conversion
# ---------------------------------------------------------------------------


def to_cell(value: Any) -> Any:
    """Convert a Python value into something ``openpyxl`` stores faithfully."""

    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _decimal(raw: Any, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _optional_decimal(raw: Any) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw is not None else None


def _money(raw: Any) -> Decimal:
    """Read a money cell; openpyxl hands numbers back as floats, so restore the cents."""
    return _decimal(raw, "0").quantize(CENT, rounding=ROUND_HALF_UP)


def _optional_money(raw: Any) -> Optional[Decimal]:
    return _money(raw) if raw is not None else None


def _optional_str(raw: Any) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def _datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def _optional_datetime(raw: Any) -> Optional[datetime]:
    return _datetime(raw) if raw is not None and raw != "" else None


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> list[object]:
    return [
        record.product_id,
        record.name,
        record.category,
        record.price,
        record.cost,
        record.controls_stock,
        record.min_stock,
        record.is_active,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric values become :class:`~decimal.Decimal` instances and id/name
    fields are coerced to ``str`` to avoid surprises caused by Excel
    interpreting numbers.
    """

    product_id, name, category, price, cost, controls_stock, min_stock, is_active = raw_row[:8]
    return ProductRow(
        product_id=str(product_id),
        name=str(name),
        category=str(category) if category is not None else "",
        price=_money(price),
        cost=_optional_money(cost),
        controls_stock=bool(controls_stock),
        min_stock=_optional_decimal(min_stock),
        is_active=bool(is_active),
    )


def serialize_tab(record: TabRow) -> list[object]:
    return [
        record.tab_id,
        record.code,
        record.kind.value,
        record.status.value,
        record.table_number,
        record.customer_name,
        record.discount,
        record.service_fee_percent,
        to_cell(record.opened_at),
        record.opened_by,
        to_cell(record.closed_at),
        record.closed_by,
        record.version,
    ]


def deserialize_tab(raw_row: Sequence[object]) -> TabRow:
    (
        tab_id,
        code,
        kind,
        status,
        table_number,
        customer_name,
        discount,
        service_fee_percent,
        opened_at,
        opened_by,
        closed_at,
        closed_by,
        version,
    ) = raw_row[:13]
    return TabRow(
        tab_id=str(tab_id),
        code=str(code),
        kind=TabKind(str(kind)),
        status=TabStatus(str(status)),
        table_number=int(table_number) if table_number is not None else None,
        customer_name=_optional_str(customer_name),
        discount=_money(discount),
        service_fee_percent=_decimal(service_fee_percent),
        opened_at=_datetime(opened_at),
        opened_by=str(opened_by),
        closed_at=_optional_datetime(closed_at),
        closed_by=_optional_str(closed_by),
        version=int(version) if version is not None else 0,
    )


def serialize_tab_item(record: TabItemRow) -> list[object]:
    return [
        record.item_id,
        record.tab_id,
        record.product_id,
        record.name_snapshot,
        record.unit_price_snapshot,
        record.quantity,
        record.note,
        record.added_by,
        to_cell(record.added_at),
        to_cell(record.canceled_at),
        record.canceled_by,
        record.cancel_reason,
    ]


def deserialize_tab_item(raw_row: Sequence[object]) -> TabItemRow:
    (
        item_id,
        tab_id,
        product_id,
        name_snapshot,
        unit_price,
        quantity,
        note,
        added_by,
        added_at,
        canceled_at,
        canceled_by,
        cancel_reason,
    ) = raw_row[:12]
    return TabItemRow(
        item_id=str(item_id),
        tab_id=str(tab_id),
        product_id=_optional_str(product_id),
        name_snapshot=str(name_snapshot),
        unit_price_snapshot=_money(unit_price),
        quantity=_decimal(quantity),
        note=_optional_str(note),
        added_by=str(added_by),
        added_at=_datetime(added_at),
        canceled_at=_optional_datetime(canceled_at),
        canceled_by=_optional_str(canceled_by),
        cancel_reason=_optional_str(cancel_reason),
    )


def serialize_payment(record: PaymentRow) -> list[object]:
    return [
        record.payment_id,
        record.tab_id,
        record.method.value,
        record.amount,
        record.received_by,
        to_cell(record.received_at),
    ]


def deserialize_payment(raw_row: Sequence[object]) -> PaymentRow:
    payment_id, tab_id, method, amount, received_by, received_at = raw_row[:6]
    return PaymentRow(
        payment_id=str(payment_id),
        tab_id=str(tab_id),
        method=PaymentMethod(str(method)),
        amount=_money(amount),
        received_by=str(received_by),
        received_at=_datetime(received_at),
    )


def serialize_account_category(record: AccountCategoryRow) -> list[object]:
    return [record.category_id, record.name, record.account_type.value, record.parent_id]


def deserialize_account_category(raw_row: Sequence[object]) -> AccountCategoryRow:
    category_id, name, account_type, parent_id = raw_row[:4]
    return AccountCategoryRow(
        category_id=str(category_id),
        name=str(name),
        account_type=AccountType(str(account_type)),
        parent_id=_optional_str(parent_id),
    )


def serialize_ledger_entry(record: LedgerEntryRow) -> list[object]:
    return [
        record.entry_id,
        to_cell(record.date),
        record.category_id,
        record.description,
        record.amount,
        to_cell(record.payment_method),
        record.related_tab_id,
        record.created_by,
    ]


def deserialize_ledger_entry(raw_row: Sequence[object]) -> LedgerEntryRow:
    entry_id, date, category_id, description, amount, payment_method, related_tab_id, created_by = raw_row[:8]
    method = _optional_str(payment_method)
    return LedgerEntryRow(
        entry_id=str(entry_id),
        date=_datetime(date),
        category_id=str(category_id),
        description=str(description),
        amount=_money(amount),
        payment_method=PaymentMethod(method) if method is not None else None,
        related_tab_id=_optional_str(related_tab_id),
        created_by=str(created_by),
    )


def serialize_stock_movement(record: StockMovementRow) -> list[object]:
    return [
        record.movement_id,
        record.product_id,
        record.movement_type.value,
        record.quantity,
        record.unit_cost,
        record.note,
        record.related_tab_id,
        record.created_by,
        to_cell(record.created_at),
    ]


def deserialize_stock_movement(raw_row: Sequence[object]) -> StockMovementRow:
    movement_id, product_id, movement_type, quantity, unit_cost, note, related_tab_id, created_by, created_at = (
        raw_row[:9]
    )
    return StockMovementRow(
        movement_id=str(movement_id),
        product_id=str(product_id),
        movement_type=StockMovementType(str(movement_type)),
        quantity=_decimal(quantity),
        unit_cost=_optional_money(unit_cost),
        note=str(note) if note is not None else "",
        related_tab_id=_optional_str(related_tab_id),
        created_by=str(created_by),
        created_at=_datetime(created_at),
    )


def serialize_cash_close(record: CashCloseRow) -> list[object]:
    return [
        record.cash_close_id,
        to_cell(record.date),
        record.shift,
        *[record.expected_by_method.get(method, Decimal("0")) for method in PaymentMethod],
        *[record.counted_by_method.get(method, Decimal("0")) for method in PaymentMethod],
        record.difference,
        record.observation,
        record.closed_by,
        to_cell(record.closed_at),
    ]


def deserialize_cash_close(raw_row: Sequence[object]) -> CashCloseRow:
    count = len(_METHODS)
    cash_close_id, date, shift = raw_row[:3]
    expected_raw = raw_row[3:3 + count]
    counted_raw = raw_row[3 + count:3 + 2 * count]
    difference, observation, closed_by, closed_at = raw_row[3 + 2 * count:7 + 2 * count]
    return CashCloseRow(
        cash_close_id=str(cash_close_id),
        date=_datetime(date),
        shift=_optional_str(shift),
        expected_by_method={method: _money(value) for method, value in zip(PaymentMethod, expected_raw)},
        counted_by_method={method: _money(value) for method, value in zip(PaymentMethod, counted_raw)},
        difference=_money(difference),
        observation=_optional_str(observation),
        closed_by=str(closed_by),
        closed_at=_datetime(closed_at),
    )


def serialize_audit(record: AuditRow) -> list[object]:
    return [
        record.audit_id,
        to_cell(record.timestamp),
        record.actor_id,
        record.action,
        record.entity,
        record.entity_id,
        record.before_json,
        record.after_json,
    ]


def deserialize_audit(raw_row: Sequence[object]) -> AuditRow:
    audit_id, timestamp, actor_id, action, entity, entity_id, before_json, after_json = raw_row[:8]
    return AuditRow(
        audit_id=str(audit_id),
        timestamp=_datetime(timestamp),
        actor_id=str(actor_id),
        action=str(action),
        entity=str(entity),
        entity_id=_optional_str(entity_id),
        before_json=_optional_str(before_json),
        after_json=_optional_str(after_json),
    )


_RECORD_TYPES: Dict[type, Tuple[SheetName, Callable[[Any], list[object]]]] = {
    ProductRow: (SheetName.PRODUCTS, serialize_product),
    TabRow: (SheetName.TABS, serialize_tab),
    TabItemRow: (SheetName.TAB_ITEMS, serialize_tab_item),
    PaymentRow: (SheetName.PAYMENTS, serialize_payment),
    AccountCategoryRow: (SheetName.ACCOUNT_CATEGORIES, serialize_account_category),
    LedgerEntryRow: (SheetName.LEDGER_ENTRIES, serialize_ledger_entry),
    StockMovementRow: (SheetName.STOCK_MOVEMENTS, serialize_stock_movement),
    CashCloseRow: (SheetName.CASH_CLOSES, serialize_cash_close),
    AuditRow: (SheetName.AUDIT_LOG, serialize_audit),
}


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def _iter_raw(workbook: Workbook, sheet_name: SheetName) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name.value]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    for raw in _iter_raw(workbook, SheetName.PRODUCTS):
        yield deserialize_product(raw)


def iter_tabs(workbook: Workbook) -> Iterable[TabRow]:
    for raw in _iter_raw(workbook, SheetName.TABS):
        yield deserialize_tab(raw)


def iter_tab_items(workbook: Workbook, tab_id: Optional[str] = None) -> Iterable[TabItemRow]:
    """Stream tab items, optionally restricted to a single tab."""

    for raw in _iter_raw(workbook, SheetName.TAB_ITEMS):
        item = deserialize_tab_item(raw)
        if tab_id is None or item.tab_id == tab_id:
            yield item


def iter_payments(workbook: Workbook, tab_id: Optional[str] = None) -> Iterable[PaymentRow]:
    for raw in _iter_raw(workbook, SheetName.PAYMENTS):
        payment = deserialize_payment(raw)
        if tab_id is None or payment.tab_id == tab_id:
            yield payment


def iter_account_categories(workbook: Workbook) -> Iterable[AccountCategoryRow]:
    for raw in _iter_raw(workbook, SheetName.ACCOUNT_CATEGORIES):
        yield deserialize_account_category(raw)


def iter_ledger_entries(
    workbook: Workbook,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Iterable[LedgerEntryRow]:
    """Stream ledger entries, optionally limited to ``[start, end)``."""

    for raw in _iter_raw(workbook, SheetName.LEDGER_ENTRIES):
        entry = deserialize_ledger_entry(raw)
        if start is not None and entry.date < start:
            continue
        if end is not None and entry.date >= end:
            continue
        yield entry


def iter_stock_movements(workbook: Workbook) -> Iterable[StockMovementRow]:
    for raw in _iter_raw(workbook, SheetName.STOCK_MOVEMENTS):
        yield deserialize_stock_movement(raw)


def iter_cash_closes(workbook: Workbook) -> Iterable[CashCloseRow]:
    for raw in _iter_raw(workbook, SheetName.CASH_CLOSES):
        yield deserialize_cash_close(raw)


def iter_audit_log(workbook: Workbook) -> Iterable[AuditRow]:
    for raw in _iter_raw(workbook, SheetName.AUDIT_LOG):
        yield deserialize_audit(raw)


def append_record(workbook: Workbook, record: Any) -> None:
    """Append any supported record dataclass to its worksheet."""

    sheet_name, serializer = _RECORD_TYPES[type(record)]
    workbook[sheet_name.value].append([to_cell(value) for value in serializer(record)])


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value == key_value:
            return row_idx

    return None


def update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    field_values: Mapping[str, Any],
) -> Dict[str, Any]:
    """Update selected columns of the row whose ``key_column`` matches.

    Returns:
        dict[str, Any]: Previous values of the touched columns, so callers
            can restore them.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    previous: Dict[str, Any] = {}
    for column in field_values:
        if column not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {column}")
    for column, value in field_values.items():
        cell = sheet.cell(row=row_index, column=header_map[column])
        previous[column] = cell.value
        cell.value = to_cell(value)
    return previous


def read_tab_version(workbook: Workbook, tab_id: str) -> int:
    """Return the current ``Version`` of a tab straight from the sheet."""

    sheet_name = SheetName.TABS.value
    row_index = locate_row(workbook, sheet_name, "TabID", tab_id)
    if row_index is None:
        raise MissingReferenceError(f"Unknown tab id: {tab_id}")
    sheet = workbook[sheet_name]
    column = list(SHEET_COLUMNS[sheet_name]).index("Version") + 1
    value = sheet.cell(row=row_index, column=column).value
    return int(value) if value is not None else 0


# ---------------------------------------------------------------------------
# Transactions and locking
# ---------------------------------------------------------------------------


class LockRegistry:
    """Per-tab locks plus one re-entrant lock guarding the workbook object."""

    def __init__(self) -> None:
        self.workbook = threading.RLock()
        self._guard = threading.Lock()
        self._tabs: Dict[str, threading.Lock] = {}

    def for_tab(self, tab_id: str) -> threading.Lock:
        with self._guard:
            lock = self._tabs.get(tab_id)
            if lock is None:
                lock = threading.Lock()
                self._tabs[tab_id] = lock
            return lock


@dataclass
class _PendingUpdate:
    sheet_name: str
    key_column: str
    key_value: str
    field_values: Dict[str, Any]


def _check_update_target(workbook: Workbook, pending: _PendingUpdate) -> None:
    if locate_row(workbook, pending.sheet_name, pending.key_column, pending.key_value) is None:
        raise KeyError(f"{pending.sheet_name} row not found: {pending.key_value}")
    headers = {cell.value for cell in workbook[pending.sheet_name][1]}
    for column in pending.field_values:
        if column not in headers:
            raise KeyError(f"Unknown {pending.sheet_name} field: {column}")


class UnitOfWork:
    """Stage several workbook writes and apply them all or none.

    Usage::

        with UnitOfWork(workbook) as uow:
            uow.update_tab(tab.tab_id, tab.version, {"Status": TabStatus.PAID})
            uow.add(ledger_row)

    Leaving the block normally commits; an exception discards the staged
    writes. :meth:`commit` verifies every registered tab version first and
    raises :class:`ConcurrentModificationError` on a mismatch, then applies
    updates and appends, undoing the ones already applied if a later write
    fails.
    """

    def __init__(self, workbook: Workbook, lock: Optional[threading.RLock] = None) -> None:
        self.workbook = workbook
        self._lock = lock or threading.RLock()
        self._appends: List[Any] = []
        self._updates: List[_PendingUpdate] = []
        self._versions: Dict[str, int] = {}
        self.committed = False

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commit()
        else:
            log.debug("Discarding unit of work after %s", exc_type.__name__)

    def add(self, record: Any) -> None:
        if type(record) not in _RECORD_TYPES:
            raise TypeError(f"Unsupported record type: {type(record).__name__}")
        self._appends.append(record)

    def update(self, sheet_name: SheetName, key_column: str, key_value: str, field_values: Mapping[str, Any]) -> None:
        self._updates.append(_PendingUpdate(sheet_name.value, key_column, key_value, dict(field_values)))

    def update_tab(self, tab_id: str, expected_version: int, field_values: Mapping[str, Any]) -> int:
        """Stage a tab update guarded by its version; returns the new version."""

        if tab_id in self._versions:
            expected_version = self._versions[tab_id]
        else:
            self._versions[tab_id] = expected_version
        new_version = expected_version + 1 + sum(
            1 for pending in self._updates if pending.sheet_name == SheetName.TABS.value and pending.key_value == tab_id
        )
        values = dict(field_values)
        values["Version"] = new_version
        self.update(SheetName.TABS, "TabID", tab_id, values)
        return new_version

    def commit(self) -> None:
        if self.committed:
            raise RuntimeError("Unit of work already committed")
        with self._lock:
            for tab_id, expected in self._versions.items():
                actual = read_tab_version(self.workbook, tab_id)
                if actual != expected:
                    log.warning(
                        "Version conflict on tab '%s': expected %s, found %s",
                        tab_id,
                        expected,
                        actual,
                    )
                    raise ConcurrentModificationError(tab_id, expected, actual)

            # Resolve everything that can fail before touching any cell.
            for pending in self._updates:
                _check_update_target(self.workbook, pending)
            staged_rows = [
                (_RECORD_TYPES[type(record)][0].value, _RECORD_TYPES[type(record)][1](record))
                for record in self._appends
            ]

            undo_updates: List[Tuple[_PendingUpdate, Dict[str, Any]]] = []
            appended: List[str] = []
            try:
                for pending in self._updates:
                    previous = update_row(
                        self.workbook,
                        pending.sheet_name,
                        pending.key_column,
                        pending.key_value,
                        field_values=pending.field_values,
                    )
                    undo_updates.append((pending, previous))
                for sheet_name, values in staged_rows:
                    self.workbook[sheet_name].append([to_cell(value) for value in values])
                    appended.append(sheet_name)
            except Exception:
                log.error(
                    "Rolling back unit of work (%d updates, %d appends applied)",
                    len(undo_updates),
                    len(appended),
                )
                for sheet_name in reversed(appended):
                    sheet = self.workbook[sheet_name]
                    sheet.delete_rows(sheet.max_row)
                for pending, previous in reversed(undo_updates):
                    update_row(
                        self.workbook,
                        pending.sheet_name,
                        pending.key_column,
                        pending.key_value,
                        field_values=previous,
                    )
                raise
            self.committed = True
            log.debug(
                "Committed unit of work (%d updates, %d appends)",
                len(self._updates),
                len(self._appends),
            )
