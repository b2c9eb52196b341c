"""Lifecycle rules for tabs.

The transition table below covers normal operation. An admin override lifts
every restriction except PAID -> CANCELED: a paid tab can only be reopened to
BILLING through :func:`comandas.core_logic.reopen_tab`, never canceled
directly.
"""

from __future__ import annotations

from typing import Mapping, Union

from . import log
from .constants import TabStatus
from .errors import IllegalTransitionError

StatusLike = Union[TabStatus, str]

ALLOWED_TRANSITIONS: Mapping[TabStatus, frozenset[TabStatus]] = {
    TabStatus.OPEN: frozenset({TabStatus.BILLING, TabStatus.CANCELED}),
    TabStatus.BILLING: frozenset({TabStatus.OPEN, TabStatus.PAID, TabStatus.CANCELED}),
    TabStatus.PAID: frozenset(),
    TabStatus.CANCELED: frozenset(),
}

_MUTABLE_STATUSES = frozenset({TabStatus.OPEN, TabStatus.BILLING})


def _status(value: StatusLike) -> TabStatus:
    return value if isinstance(value, TabStatus) else TabStatus(value)


def can_transition_tab_status(current: StatusLike, requested: StatusLike, admin_override: bool = False) -> bool:
    """Return whether ``current -> requested`` is a legal status change."""

    current, requested = _status(current), _status(requested)
    if current is requested:
        return True
    if admin_override:
        return not (current is TabStatus.PAID and requested is TabStatus.CANCELED)
    return requested in ALLOWED_TRANSITIONS[current]


def can_add_items_to_tab(status: StatusLike, allow_add_items_when_billing: bool, admin_override: bool = False) -> bool:
    """Return whether items may be added to a tab in ``status``."""

    status = _status(status)
    if admin_override:
        return status is not TabStatus.CANCELED
    if status is TabStatus.OPEN:
        return True
    if status is TabStatus.BILLING:
        return allow_add_items_when_billing
    return False


def can_register_payment(status: StatusLike, admin_override: bool = False) -> bool:
    """Return whether a payment may be registered against a tab in ``status``."""

    status = _status(status)
    if admin_override:
        return status is not TabStatus.CANCELED
    return status in _MUTABLE_STATUSES


def can_mutate_tab(status: StatusLike, admin_override: bool = False) -> bool:
    """Gate for discounts and item cancellation."""

    status = _status(status)
    if admin_override:
        return status is not TabStatus.CANCELED
    return status in _MUTABLE_STATUSES


def requires_reopen(status: StatusLike, admin_override: bool) -> bool:
    """Return whether an override mutation must first reopen a PAID tab."""

    return admin_override and _status(status) is TabStatus.PAID


def require_transition(current: StatusLike, requested: StatusLike, admin_override: bool = False) -> None:
    """Raise :class:`IllegalTransitionError` unless the transition is legal."""

    if not can_transition_tab_status(current, requested, admin_override):
        current, requested = _status(current), _status(requested)
        log.warning(
            "Rejected tab transition %s -> %s (override=%s)",
            current.value,
            requested.value,
            admin_override,
        )
        raise IllegalTransitionError(current.value, requested.value)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "can_transition_tab_status",
    "can_add_items_to_tab",
    "can_register_payment",
    "can_mutate_tab",
    "requires_reopen",
    "require_transition",
]
