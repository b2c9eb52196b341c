"""Error taxonomy raised by the tab engine and the business logic layer.

Every failure is local and synchronous. Nothing in the package retries an
operation on its own; callers decide whether to correct the input and try
again.
"""

from __future__ import annotations

from decimal import Decimal


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised for malformed or out-of-range input."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced tab, item, product, or category is unknown."""


class InactiveResourceError(BusinessRuleViolation):
    """Raised when an operation targets an inactive product."""


class AlreadyCanceledError(BusinessRuleViolation):
    """Raised when a tab item is canceled twice."""


class PermissionDeniedError(BusinessRuleViolation):
    """Raised when the acting principal lacks the capability for an operation."""


class IllegalTransitionError(BusinessRuleViolation):
    """Raised when a status change is not in the allowed transition table."""

    def __init__(self, current: str, requested: str, message: str | None = None) -> None:
        self.current = current
        self.requested = requested
        super().__init__(message or f"Illegal transition: {current} -> {requested}")


class TabStatusError(BusinessRuleViolation):
    """Raised when a tab's status does not admit the requested mutation."""

    def __init__(self, status: str, operation: str) -> None:
        self.status = status
        self.operation = operation
        super().__init__(f"Tab in status {status} does not allow: {operation}")


class InsufficientPaymentError(BusinessRuleViolation):
    """Raised when collected payments do not cover the tab total."""

    def __init__(self, remaining: Decimal) -> None:
        self.remaining = remaining
        super().__init__(f"Insufficient payment: {remaining:.2f} still due to close the tab")


class ConcurrentModificationError(BusinessRuleViolation):
    """Raised when a tab changed between read and commit."""

    def __init__(self, tab_id: str, expected_version: int, actual_version: int) -> None:
        self.tab_id = tab_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Tab '{tab_id}' was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "MissingReferenceError",
    "InactiveResourceError",
    "AlreadyCanceledError",
    "PermissionDeniedError",
    "IllegalTransitionError",
    "TabStatusError",
    "InsufficientPaymentError",
    "ConcurrentModificationError",
]
