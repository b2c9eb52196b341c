"""Enumerations shared across the comandas modules.

Centralises domain constants so that the data access layer (DAL), the pure
engine modules, the business logic layer (BLL), and the CLI rely on a single
source of truth for status names, payment methods, and sheet identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"

# Smallest currency unit; also the tolerance used by the settlement gate.
CENT = Decimal("0.01")


class TabKind(str, Enum):
    """Where a tab is being served."""

    TABLE = "TABLE"
    BAR = "BAR"
    DELIVERY = "DELIVERY"


class TabStatus(str, Enum):
    """Lifecycle states of a tab."""

    OPEN = "OPEN"
    BILLING = "BILLING"
    PAID = "PAID"
    CANCELED = "CANCELED"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for tabs and ledger entries."""

    PIX = "PIX"
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    CASH = "CASH"
    VOUCHER = "VOUCHER"
    FIADO = "FIADO"


class AccountType(str, Enum):
    """Classification of ledger categories."""

    REVENUE = "REVENUE"
    EXPENSE = "EXPENSE"


class StockMovementType(str, Enum):
    """Direction of a stock movement."""

    IN = "IN"
    OUT = "OUT"
    LOSS = "LOSS"
    ADJUST = "ADJUST"


class AuditAction(str, Enum):
    """Actions recorded in the audit log sheet."""

    TAB_CREATED = "TAB_CREATED"
    TAB_ITEM_ADDED = "TAB_ITEM_ADDED"
    TAB_ITEM_CANCELED = "TAB_ITEM_CANCELED"
    TAB_DISCOUNT_APPLIED = "TAB_DISCOUNT_APPLIED"
    TAB_PAYMENT_REGISTERED = "TAB_PAYMENT_REGISTERED"
    TAB_STATUS_UPDATED = "TAB_STATUS_UPDATED"
    TAB_CANCELED = "TAB_CANCELED"
    TAB_REOPENED = "TAB_REOPENED"
    PRODUCT_CREATED = "PRODUCT_CREATED"
    PRODUCT_UPDATED = "PRODUCT_UPDATED"
    PRODUCT_STATUS_UPDATED = "PRODUCT_STATUS_UPDATED"
    STOCK_ADJUSTED = "STOCK_ADJUSTED"
    ACCOUNT_CATEGORY_CREATED = "ACCOUNT_CATEGORY_CREATED"
    LEDGER_MANUAL_CREATED = "LEDGER_MANUAL_CREATED"
    CASH_CLOSE_CREATED = "CASH_CLOSE_CREATED"
    SETTINGS_UPDATED = "SETTINGS_UPDATED"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    TABS = "Tabs"
    TAB_ITEMS = "TabItems"
    PAYMENTS = "Payments"
    ACCOUNT_CATEGORIES = "AccountCategories"
    LEDGER_ENTRIES = "LedgerEntries"
    STOCK_MOVEMENTS = "StockMovements"
    CASH_CLOSES = "CashCloses"
    AUDIT_LOG = "AuditLog"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "CENT",
    "TabKind",
    "TabStatus",
    "PaymentMethod",
    "AccountType",
    "StockMovementType",
    "AuditAction",
    "SheetName",
]
