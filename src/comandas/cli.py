"""Command-line entry points for the comandas tab engine.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. The staff role given with ``--role`` is resolved into capability flags
here, once, and only the resulting :class:`~comandas.capabilities.Actor`
travels further.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import cash_close, core_logic, log
from .capabilities import Actor, Role, capabilities_for_role
from .constants import AccountType, PaymentMethod, StockMovementType, TabKind, TabStatus
from .data_manager import TabSettings
from .errors import BusinessRuleViolation


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


if TYPE_CHECKING:
    SubParsers = argparse._SubParsersAction[argparse.ArgumentParser]


def parse_decimal(raw: str) -> Decimal:
    """``argparse`` type accepting ``12.50`` as well as ``12,50``."""

    try:
        value = Decimal(raw.strip().replace(",", "."))
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {raw!r}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"not a finite number: {raw!r}")
    return value


def parse_day(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {raw!r}") from exc


def parse_counted(raw: str) -> tuple[PaymentMethod, Decimal]:
    """Parse a ``METHOD=AMOUNT`` pair such as ``CASH=150.00``."""

    method, sep, amount = raw.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(f"expected METHOD=AMOUNT, got {raw!r}")
    try:
        payment_method = PaymentMethod(method.strip().upper())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"unknown payment method: {method!r}") from exc
    return payment_method, parse_decimal(amount)


def build_parser(prog: str = "comandas") -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Command-line tools for running bar tabs on the comandas workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--user",
        default="operator",
        help="Identifier recorded as the acting user (default: operator).",
    )
    parser.add_argument(
        "--role",
        choices=[member.value for member in Role],
        default=Role.CASHIER.value,
        help="Staff role whose permissions apply (default: CASHIER).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as orders and payments."""
    specs = {
        "open-tab": register_open_tab_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "cancel-item": register_cancel_item_command(subparsers),
        "discount": register_discount_command(subparsers),
        "pay": register_pay_command(subparsers),
        "close": register_close_command(subparsers),
        "status": register_status_command(subparsers),
        "reopen": register_reopen_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "toggle-product": register_toggle_product_command(subparsers),
        "stock-move": register_stock_move_command(subparsers),
        "add-category": register_add_category_command(subparsers),
        "ledger": register_ledger_command(subparsers),
        "cash-close": register_cash_close_command(subparsers),
        "settings": register_settings_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "tab": register_tab_command(subparsers),
        "tabs": register_tabs_command(subparsers),
        "stock": register_stock_command(subparsers),
        "finance": register_finance_command(subparsers),
        "audit": register_audit_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_open_tab_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``open-tab``."""
    name = "open-tab"
    help_text = "Open a new tab."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in TabKind], default=TabKind.TABLE.value)
        parser.add_argument("--table", dest="table_number", type=int, default=None)
        parser.add_argument("--customer", dest="customer_name", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_open_tab)


def register_add_item_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Order a product on a tab."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tab-id", required=True)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=parse_decimal, default=Decimal("1"))
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_cancel_item_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``cancel-item``."""
    name = "cancel-item"
    help_text = "Cancel an item on a tab."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--reason", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cancel_item)


def register_discount_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``discount``."""
    name = "discount"
    help_text = "Set the discount of a tab."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tab-id", required=True)
        parser.add_argument("--amount", type=parse_decimal, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_discount)


def register_pay_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Register a payment on a tab."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tab-id", required=True)
        parser.add_argument("--method", choices=[member.value for member in PaymentMethod], required=True)
        parser.add_argument("--amount", type=parse_decimal, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_close_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``close``."""
    name = "close"
    help_text = "Settle a tab: check payments, deduct stock and post revenue."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tab-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_close)


def register_status_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``status``."""
    name = "status"
    help_text = "Move a tab to another status."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tab-id", required=True)
        parser.add_argument("--to", dest="next_status", choices=[member.value for member in TabStatus], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_status)


def register_reopen_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``reopen``."""
    name = "reopen"
    help_text = "Reopen a paid tab (administrators only)."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tab-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reopen)


def register_add_product_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--price", type=parse_decimal, required=True)
        parser.add_argument("--cost", type=parse_decimal, default=None)
        parser.add_argument("--controls-stock", action="store_true")
        parser.add_argument("--min-stock", type=parse_decimal, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_toggle_product_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``toggle-product``."""
    name = "toggle-product"
    help_text = "Activate or deactivate a product."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        state = parser.add_mutually_exclusive_group()
        state.add_argument("--active", dest="is_active", action="store_const", const=True, default=None)
        state.add_argument("--inactive", dest="is_active", action="store_const", const=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_toggle_product)


def register_stock_move_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``stock-move``."""
    name = "stock-move"
    help_text = "Record a manual stock movement."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--type", dest="movement_type", choices=[member.value for member in StockMovementType], required=True)
        parser.add_argument("--quantity", type=parse_decimal, required=True)
        parser.add_argument("--note", required=True)
        parser.add_argument("--unit-cost", type=parse_decimal, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_move)


def register_add_category_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-category``."""
    name = "add-category"
    help_text = "Create an account category."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--type", dest="account_type", choices=[member.value for member in AccountType], required=True)
        parser.add_argument("--parent-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_category)


def register_ledger_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``ledger``."""
    name = "ledger"
    help_text = "Post a manual ledger entry."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category-id", required=True)
        parser.add_argument("--description", required=True)
        parser.add_argument("--amount", type=parse_decimal, required=True)
        parser.add_argument("--method", choices=[member.value for member in PaymentMethod], default=None)
        parser.add_argument("--date", dest="entry_date", type=parse_day, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger)


def register_cash_close_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``cash-close``."""
    name = "cash-close"
    help_text = "Reconcile counted amounts against the day's ledger."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--day", type=parse_day, required=True)
        parser.add_argument(
            "--counted",
            type=parse_counted,
            action="append",
            default=[],
            help="Counted amount as METHOD=AMOUNT; repeat per method.",
        )
        parser.add_argument("--shift", default=None)
        parser.add_argument("--observation", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cash_close)


def register_settings_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``settings``."""
    name = "settings"
    help_text = "Change operational tab settings."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--service-fee", type=parse_decimal, default=None)
        parser.add_argument("--allow-items-when-billing", choices=["yes", "no"], default=None)
        parser.add_argument("--stock-module", choices=["yes", "no"], default=None)
        parser.add_argument("--customer-fields", choices=["yes", "no"], default=None)
        parser.add_argument("--revenue-category", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settings)


def register_tab_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``tab``."""
    name = "tab"
    help_text = "Show a tab with its items, payments and totals."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tab-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_tab_report)


def register_tabs_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``tabs``."""
    name = "tabs"
    help_text = "List tabs, optionally by status."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", choices=[member.value for member in TabStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_tabs_report)


def register_stock_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels and low-stock alerts."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_finance_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``finance``."""
    name = "finance"
    help_text = "Display revenue, expenses and balance for a day or month."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--day", type=parse_day, default=None)
        parser.add_argument("--period", choices=["daily", "monthly"], default="daily")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_finance_report)


def register_audit_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "Display audit events, optionally for one entity."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entity-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def resolve_actor(args: argparse.Namespace) -> Actor:
    """Turn ``--user``/``--role`` into the actor passed to the business layer."""
    role = getattr(args, "role", None) or Role.CASHIER.value
    return Actor(user_id=getattr(args, "user", None) or "operator", capabilities=capabilities_for_role(role))


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def translate_open_tab(args: argparse.Namespace) -> core_logic.OpenTabCommand:
    return core_logic.OpenTabCommand(
        kind=TabKind(args.kind),
        table_number=args.table_number,
        customer_name=args.customer_name,
    )


def translate_add_item(args: argparse.Namespace) -> core_logic.AddItemCommand:
    return core_logic.AddItemCommand(
        tab_id=args.tab_id,
        product_id=args.product_id,
        quantity=args.quantity,
        note=args.note,
    )


def translate_cancel_item(args: argparse.Namespace) -> core_logic.CancelItemCommand:
    return core_logic.CancelItemCommand(item_id=args.item_id, reason=args.reason)


def translate_discount(args: argparse.Namespace) -> core_logic.DiscountCommand:
    return core_logic.DiscountCommand(tab_id=args.tab_id, discount=args.amount)


def translate_pay(args: argparse.Namespace) -> core_logic.PaymentCommand:
    return core_logic.PaymentCommand(tab_id=args.tab_id, method=PaymentMethod(args.method), amount=args.amount)


def translate_status(args: argparse.Namespace) -> core_logic.StatusChangeCommand:
    return core_logic.StatusChangeCommand(tab_id=args.tab_id, next_status=TabStatus(args.next_status))


def translate_product(args: argparse.Namespace) -> core_logic.ProductCommand:
    return core_logic.ProductCommand(
        name=args.name,
        category=args.category,
        price=args.price,
        cost=args.cost,
        controls_stock=args.controls_stock,
        min_stock=args.min_stock,
    )


def translate_stock_move(args: argparse.Namespace) -> core_logic.StockMovementCommand:
    return core_logic.StockMovementCommand(
        product_id=args.product_id,
        movement_type=StockMovementType(args.movement_type),
        quantity=args.quantity,
        note=args.note,
        unit_cost=args.unit_cost,
    )


def translate_add_category(args: argparse.Namespace) -> core_logic.AccountCategoryCommand:
    return core_logic.AccountCategoryCommand(
        name=args.name,
        account_type=AccountType(args.account_type),
        parent_id=args.parent_id,
    )


def translate_ledger(args: argparse.Namespace) -> core_logic.LedgerEntryCommand:
    """Translate CLI args into a manual ledger entry; a bare day means midnight."""
    when = datetime.combine(args.entry_date, datetime.min.time()) if args.entry_date is not None else None
    return core_logic.LedgerEntryCommand(
        category_id=args.category_id,
        description=args.description,
        amount=args.amount,
        payment_method=PaymentMethod(args.method) if args.method else None,
        date=when,
    )


def translate_cash_close(args: argparse.Namespace) -> core_logic.CashCloseCommand:
    counted: Dict[PaymentMethod, Decimal] = {}
    for method, amount in args.counted:
        counted[method] = counted.get(method, Decimal("0")) + amount
    return core_logic.CashCloseCommand(
        day=args.day,
        counted=counted,
        shift=args.shift,
        observation=args.observation,
    )


def translate_settings(context: core_logic.RuntimeContext, args: argparse.Namespace) -> TabSettings:
    """Overlay the options given on the command line onto the current settings."""
    current = context.settings.tabs
    changes = {}
    if args.service_fee is not None:
        changes["default_service_fee_percent"] = args.service_fee
    if args.allow_items_when_billing is not None:
        changes["allow_add_items_when_billing"] = args.allow_items_when_billing == "yes"
    if args.stock_module is not None:
        changes["enable_stock_module"] = args.stock_module == "yes"
    if args.customer_fields is not None:
        changes["enable_customer_fields"] = args.customer_fields == "yes"
    if args.revenue_category is not None:
        changes["revenue_category_name"] = args.revenue_category
    return replace(current, **changes)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def run_open_tab(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    tab = core_logic.open_tab(context, resolve_actor(args), translate_open_tab(args))
    print(f"Opened tab {tab.code} ({tab.tab_id})")
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    item = core_logic.add_tab_item(context, resolve_actor(args), translate_add_item(args))
    print(f"Added {item.quantity} x {item.name_snapshot} ({item.item_id})")
    return 0


def run_cancel_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    item = core_logic.cancel_tab_item(context, resolve_actor(args), translate_cancel_item(args))
    print(f"Canceled {item.name_snapshot} ({item.item_id})")
    return 0


def run_discount(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    tab = core_logic.apply_discount(context, resolve_actor(args), translate_discount(args))
    print(f"Discount on {tab.code} set to {tab.discount}")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    payment = core_logic.register_payment(context, resolve_actor(args), translate_pay(args))
    print(f"Registered {payment.method.value} payment of {payment.amount} ({payment.payment_id})")
    return 0


def run_close(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the settlement workflow via the business layer."""
    result = core_logic.settle_tab(context, resolve_actor(args), args.tab_id)
    print(f"Tab {result.tab.code} paid: total {result.totals.total}, received {result.total_paid}")
    return 0


def run_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.update_tab_status(context, resolve_actor(args), translate_status(args))
    tab = result.tab if isinstance(result, core_logic.SettlementResult) else result
    print(f"Tab {tab.code} is now {tab.status.value}")
    return 0


def run_reopen(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    tab = core_logic.reopen_tab(context, resolve_actor(args), args.tab_id)
    print(f"Tab {tab.code} reopened")
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.create_product(context, resolve_actor(args), translate_product(args))
    print(f"Created product {product.name} ({product.product_id})")
    return 0


def run_toggle_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.toggle_product_active(context, resolve_actor(args), args.product_id, args.is_active)
    print(f"Product {product.name} is now {'active' if product.is_active else 'inactive'}")
    return 0


def run_stock_move(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    movement = core_logic.create_stock_movement(context, resolve_actor(args), translate_stock_move(args))
    print(f"Recorded {movement.movement_type.value} of {movement.quantity} ({movement.movement_id})")
    return 0


def run_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    category = core_logic.create_account_category(context, resolve_actor(args), translate_add_category(args))
    print(f"Created category {category.name} ({category.category_id})")
    return 0


def run_ledger(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entry = core_logic.create_ledger_entry(context, resolve_actor(args), translate_ledger(args))
    print(f"Posted {entry.amount} to {entry.category_id} ({entry.entry_id})")
    return 0


def run_cash_close(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.create_cash_close(context, resolve_actor(args), translate_cash_close(args))
    for line in format_cash_close(result):
        print(line)
    return 0


def run_settings(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    updated = core_logic.update_settings(context, resolve_actor(args), translate_settings(context, args))
    print(f"Service fee {updated.settings.tabs.default_service_fee_percent}%")
    return 0


def run_tab_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    snapshot = core_logic.get_tab_snapshot(context, args.tab_id)
    for line in format_tab_snapshot(snapshot):
        print(line)
    return 0


def run_tabs_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    status = TabStatus(args.status) if args.status else None
    for tab in core_logic.list_tabs(context, status=status):
        print(f"{tab.code}\t{tab.tab_id}\t{tab.kind.value}\t{tab.status.value}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    names = {product.product_id: product.name for product in core_logic.list_products(context, include_inactive=True)}
    for product_id, level in sorted(core_logic.calculate_stock_levels(context).items()):
        print(f"{names.get(product_id, product_id)}\t{level}")
    for alert in core_logic.low_stock_report(context):
        print(f"LOW: {alert.product_name} at {alert.current} (minimum {alert.min_stock})")
    return 0


def run_finance_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the finance summary workflow."""
    day = args.day or core_logic.business_today(context)
    summary = core_logic.calculate_finance_summary(context, day, period=args.period)
    print(f"Revenue:  {summary.revenue}")
    print(f"Expenses: {summary.expenses}")
    print(f"Balance:  {summary.balance}")
    for method, amount in summary.revenue_by_method.items():
        if amount:
            print(f"  {method.value}: {amount}")
    return 0


def run_audit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for event in core_logic.list_audit_log(context, entity_id=args.entity_id):
        print(f"{event.timestamp.isoformat()}\t{event.actor_id}\t{event.action}\t{event.entity}\t{event.entity_id or ''}")
    return 0


def format_tab_snapshot(snapshot: core_logic.TabSnapshot) -> List[str]:
    tab = snapshot.tab
    lines = [f"Tab {tab.code} [{tab.status.value}] {tab.kind.value}"]
    for item in snapshot.items:
        marker = " (canceled)" if item.is_canceled else ""
        lines.append(f"  {item.quantity} x {item.name_snapshot} @ {item.unit_price_snapshot}{marker}")
    lines.append(f"Subtotal:    {snapshot.totals.subtotal}")
    lines.append(f"Discount:    {snapshot.totals.discount}")
    lines.append(f"Service fee: {snapshot.totals.service_fee}")
    lines.append(f"Total:       {snapshot.totals.total}")
    lines.append(f"Paid:        {snapshot.total_paid}")
    lines.append(f"Remaining:   {snapshot.remaining}")
    return lines


def format_cash_close(result: cash_close.CashCloseResult) -> List[str]:
    lines = [f"Cash close {result.day_start.date().isoformat()}"]
    for method in PaymentMethod:
        lines.append(
            f"  {method.value}: expected {result.expected_by_method[method]}, counted {result.counted_by_method[method]}"
        )
    lines.append(f"Difference: {result.difference}")
    return lines


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
