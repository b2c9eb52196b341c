"""Capability flags for the acting principal.

The business layer only ever sees :class:`Capabilities`. Staff roles exist
solely at the boundary (the CLI) where :func:`capabilities_for_role` resolves
them once per invocation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict


class Role(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    CASHIER = "CASHIER"
    WAITER = "WAITER"
    STOCK = "STOCK"


@dataclass(frozen=True)
class Capabilities:
    """What the acting principal may do. Everything defaults to denied."""

    can_open_tabs: bool = False
    can_add_items: bool = False
    can_cancel_items: bool = False
    can_apply_discount: bool = False
    can_operate_cashier: bool = False
    can_cancel_tabs: bool = False
    can_manage_products: bool = False
    can_manage_stock: bool = False
    can_post_ledger: bool = False
    can_manage_categories: bool = False
    can_manage_settings: bool = False
    admin_override: bool = False


@dataclass(frozen=True)
class Actor:
    """User identifier paired with its resolved capabilities."""

    user_id: str
    capabilities: Capabilities = field(default_factory=Capabilities)


_ROLE_TABLE: Dict[Role, Capabilities] = {
    Role.ADMIN: Capabilities(
        can_open_tabs=True,
        can_add_items=True,
        can_cancel_items=True,
        can_apply_discount=True,
        can_operate_cashier=True,
        can_cancel_tabs=True,
        can_manage_products=True,
        can_manage_stock=True,
        can_post_ledger=True,
        can_manage_categories=True,
        can_manage_settings=True,
        admin_override=True,
    ),
    Role.MANAGER: Capabilities(
        can_open_tabs=True,
        can_add_items=True,
        can_cancel_items=True,
        can_apply_discount=True,
        can_operate_cashier=True,
        can_cancel_tabs=True,
        can_manage_products=True,
        can_manage_stock=True,
        can_post_ledger=True,
        can_manage_categories=True,
    ),
    Role.CASHIER: Capabilities(
        can_open_tabs=True,
        can_add_items=True,
        can_cancel_items=True,
        can_apply_discount=True,
        can_operate_cashier=True,
        can_cancel_tabs=True,
        can_post_ledger=True,
    ),
    Role.WAITER: Capabilities(can_open_tabs=True, can_add_items=True),
    Role.STOCK: Capabilities(can_manage_stock=True),
}


def capabilities_for_role(role: Role | str) -> Capabilities:
    """Resolve the capability set granted to a staff role."""

    return _ROLE_TABLE[Role(role)]


__all__ = ["Role", "Capabilities", "Actor", "capabilities_for_role"]
