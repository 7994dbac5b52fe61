"""Custom exception hierarchy for the KidSpend package."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from .money import format_currency


class KidSpendError(Exception):
    """Base class for all KidSpend specific errors."""


class ValidationError(KidSpendError):
    """Raised when caller supplied values are malformed or out of range."""


class NotFoundError(KidSpendError):
    """Raised when a request, rule or child lookup fails."""


class UnauthorizedError(KidSpendError):
    """Raised when the caller may not act on the request or family."""


class InvalidStateError(KidSpendError):
    """Raised when an operation is illegal for the request's current status."""


class ConcurrencyError(InvalidStateError):
    """Raised when a stored request changed underneath an update."""


class InsufficientFundsError(KidSpendError):
    """Raised when a child's balance does not cover the requested amount."""

    def __init__(
        self,
        message: str | None = None,
        *,
        balance: Optional[Decimal] = None,
        requested: Optional[Decimal] = None,
    ) -> None:
        self.balance = balance
        self.requested = requested
        if message is None:
            if balance is not None and requested is not None:
                message = (
                    f"Balance {format_currency(balance)} does not cover "
                    f"the requested {format_currency(requested)}."
                )
            else:
                message = "Insufficient funds."
        super().__init__(message)


class LedgerInconsistencyError(KidSpendError):
    """A debit was posted but the matching status write did not commit.

    The ledger entry has to be reconciled by an operator; callers must not retry.
    """

    def __init__(self, message: str, *, request_id: str, ledger_entry_id: str) -> None:
        super().__init__(message)
        self.request_id = request_id
        self.ledger_entry_id = ledger_entry_id


__all__ = [
    "ConcurrencyError",
    "InsufficientFundsError",
    "InvalidStateError",
    "KidSpendError",
    "LedgerInconsistencyError",
    "NotFoundError",
    "UnauthorizedError",
    "ValidationError",
]
