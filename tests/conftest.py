"""Shared pytest fixtures and utilities for comandas tests."""

from __future__ import annotations

import argparse
import random
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from comandas import cli, constants, core_logic, data_manager  # noqa: E402
from comandas.capabilities import Actor, Capabilities, Role, capabilities_for_role  # noqa: E402
from comandas.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2025, 3, 14, 21, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BarName = {bar_name}\n"
    "SchemaVersion = {schema_version}\n"
    "Timezone = {timezone}\n\n"
    "[Tabs]\n"
    "AllowAddItemsWhenBilling = {allow_billing}\n"
    "DefaultServiceFeePercent = {service_fee}\n"
    "EnableStockModule = {stock_module}\n"
    "EnableCustomerFields = true\n\n"
    "[Finance]\n"
    "RevenueCategory = Sales\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    bar_name: str


class FixedClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, moment: datetime = FIXED_NOW) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **kwargs: float) -> datetime:
        self.moment = self.moment + timedelta(**kwargs)
        return self.moment


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "comandas.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        bar_name: str = "Test Bar",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        timezone: str = "America/Sao_Paulo",
        allow_billing: bool = False,
        service_fee: str = "10",
        stock_module: bool = True,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                bar_name=bar_name,
                schema_version=schema_version,
                timezone=timezone,
                allow_billing=str(allow_billing).lower(),
                service_fee=service_fee,
                stock_module=str(stock_module).lower(),
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            bar_name=bar_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def runtime_context(config_file: Path, clock: FixedClock) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file, clock=clock, rng=random.Random(7))
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


@pytest.fixture
def admin() -> Actor:
    return Actor("ana", capabilities_for_role(Role.ADMIN))


@pytest.fixture
def manager() -> Actor:
    return Actor("marcos", capabilities_for_role(Role.MANAGER))


@pytest.fixture
def cashier() -> Actor:
    return Actor("carla", capabilities_for_role(Role.CASHIER))


@pytest.fixture
def waiter() -> Actor:
    return Actor("wagner", capabilities_for_role(Role.WAITER))


@pytest.fixture
def nobody() -> Actor:
    return Actor("guest", Capabilities())


# ---------------------------------------------------------------------------
# Workflow helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def make_product(manager: Actor) -> Callable[..., data_manager.ProductRow]:
    """Create a product through the business layer."""

    def _make(
        context: core_logic.RuntimeContext,
        name: str = "Draft Beer",
        price: str = "12.50",
        *,
        controls_stock: bool = True,
        min_stock: str | None = None,
    ) -> data_manager.ProductRow:
        return core_logic.create_product(
            context,
            manager,
            core_logic.ProductCommand(
                name=name,
                category="Drinks",
                price=Decimal(price),
                controls_stock=controls_stock,
                min_stock=Decimal(min_stock) if min_stock is not None else None,
            ),
        )

    return _make


@pytest.fixture
def open_tab_with_items(
    cashier: Actor,
    make_product: Callable[..., data_manager.ProductRow],
) -> Callable[..., data_manager.TabRow]:
    """Open a tab and order ``(product_name, price, quantity)`` lines on it."""

    def _open(
        context: core_logic.RuntimeContext,
        lines: list[tuple[str, str, str]] | None = None,
    ) -> data_manager.TabRow:
        tab = core_logic.open_tab(context, cashier, core_logic.OpenTabCommand(kind=constants.TabKind.TABLE, table_number=4))
        for name, price, quantity in lines or [("Draft Beer", "12.50", "2")]:
            product = make_product(context, name, price)
            core_logic.add_tab_item(
                context,
                cashier,
                core_logic.AddItemCommand(tab_id=tab.tab_id, product_id=product.product_id, quantity=Decimal(quantity)),
            )
        return core_logic.get_tab(context, tab.tab_id)

    return _open


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="comandas", description="Comandas CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "comandas.xlsx",
        bar_name="Test Bar",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock, clock: FixedClock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook, clock=clock, rng=random.Random(7))
