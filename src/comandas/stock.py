"""Stock deduction planning and stock level reporting."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from . import log
from .constants import StockMovementType
from .totals import ZERO, to_decimal

_DEPLETING_TYPES = frozenset({StockMovementType.OUT, StockMovementType.LOSS})


@dataclass(frozen=True)
class StockLine:
    """Tab item as seen by the stock planner."""

    product_id: Optional[str]
    product_name: str
    quantity: Decimal
    controls_stock: bool
    canceled: bool = False


@dataclass(frozen=True)
class PlannedStockMovement:
    """Movement emitted by settlement, not yet persisted."""

    product_id: str
    product_name: str
    movement_type: StockMovementType
    quantity: Decimal
    note: str
    related_tab_id: str
    created_by: str


@dataclass(frozen=True)
class MovementLine:
    product_id: str
    movement_type: StockMovementType
    quantity: Decimal


@dataclass(frozen=True)
class StockAlert:
    product_id: str
    product_name: str
    current: Decimal
    min_stock: Decimal


def aggregate_stock_quantities(items: Iterable[StockLine]) -> Dict[str, Decimal]:
    """Sum quantities per stock-controlled product, skipping canceled lines."""

    grouped: Dict[str, Decimal] = {}
    for item in items:
        if item.canceled or not item.product_id or not item.controls_stock:
            continue
        grouped[item.product_id] = grouped.get(item.product_id, ZERO) + to_decimal(item.quantity)
    return grouped


def plan_stock_deductions(
    items: Iterable[StockLine],
    *,
    tab_id: str,
    tab_code: str,
    created_by: str,
    stock_module_enabled: bool,
    already_deducted: Optional[Mapping[str, Decimal]] = None,
) -> List[PlannedStockMovement]:
    """Plan one consolidated movement per product for a settling tab.

    Multiple orders of the same product collapse into a single OUT movement.
    ``already_deducted`` holds the net quantity previously moved out for this
    tab (a tab settled, reopened and settled again); only the difference is
    planned, and a negative difference returns stock with an IN movement.

    Returns:
        list[PlannedStockMovement]: Empty when the stock module is disabled.
    """

    if not stock_module_enabled:
        return []

    items = list(items)
    names = {item.product_id: item.product_name for item in items if item.product_id}
    wanted = aggregate_stock_quantities(items)
    previous = {key: to_decimal(value) for key, value in (already_deducted or {}).items()}

    movements: List[PlannedStockMovement] = []
    for product_id in [*wanted, *(key for key in previous if key not in wanted)]:
        delta = wanted.get(product_id, ZERO) - previous.get(product_id, ZERO)
        if delta == ZERO:
            continue
        if delta > ZERO:
            movement_type = StockMovementType.OUT
            note = f"Automatic deduction for tab {tab_code}"
        else:
            movement_type = StockMovementType.IN
            note = f"Automatic return for tab {tab_code}"
        movements.append(
            PlannedStockMovement(
                product_id=product_id,
                product_name=names.get(product_id, product_id),
                movement_type=movement_type,
                quantity=abs(delta),
                note=note,
                related_tab_id=tab_id,
                created_by=created_by,
            )
        )
    log.debug("Planned %d stock movements for tab '%s'", len(movements), tab_code)
    return movements


def movement_signal(movement_type: StockMovementType) -> int:
    """OUT and LOSS deplete stock; IN and ADJUST add to it."""

    return -1 if StockMovementType(movement_type) in _DEPLETING_TYPES else 1


def calculate_stock_levels(movements: Iterable[MovementLine]) -> Dict[str, Decimal]:
    levels: Dict[str, Decimal] = {}
    for movement in movements:
        signed = to_decimal(movement.quantity) * movement_signal(movement.movement_type)
        levels[movement.product_id] = levels.get(movement.product_id, ZERO) + signed
    return levels


def low_stock_alerts(
    levels: Mapping[str, Decimal],
    minimums: Mapping[str, Optional[Decimal]],
    names: Mapping[str, str],
) -> List[StockAlert]:
    """Products whose current level is at or below their configured minimum."""

    alerts = []
    for product_id, min_stock in minimums.items():
        if min_stock is None:
            continue
        current = levels.get(product_id, ZERO)
        if current <= min_stock:
            alerts.append(
                StockAlert(
                    product_id=product_id,
                    product_name=names.get(product_id, product_id),
                    current=current,
                    min_stock=min_stock,
                )
            )
    return alerts


__all__ = [
    "StockLine",
    "PlannedStockMovement",
    "MovementLine",
    "StockAlert",
    "aggregate_stock_quantities",
    "plan_stock_deductions",
    "movement_signal",
    "calculate_stock_levels",
    "low_stock_alerts",
]
