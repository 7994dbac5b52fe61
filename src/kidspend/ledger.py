"""Ledger collaborator: the only component allowed to move a child's money."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from .exceptions import InsufficientFundsError, NotFoundError
from .money import AmountLike, format_currency, require_positive, to_decimal


class EntryType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


@dataclass(slots=True)
class LedgerEntry:
    """Represents a single money movement on a child's balance."""

    entry_id: str
    child_id: str
    amount: Decimal
    type: EntryType
    memo: str
    balance_after: Decimal
    timestamp: datetime = field(default_factory=datetime.utcnow)


class Ledger(Protocol):
    """Balance-of-record used by the request workflow."""

    def get_balance(self, child_id: str) -> Decimal:
        ...

    def debit(self, child_id: str, amount: Decimal, memo: str) -> str:
        """Remove ``amount`` and return the new entry id.

        Raises :class:`~kidspend.exceptions.InsufficientFundsError` when the
        balance does not cover the amount.
        """
        ...


class InMemoryLedger:
    """Thread-safe in-process ledger keyed by child id."""

    def __init__(self, balances: Optional[Dict[str, AmountLike]] = None) -> None:
        self._lock = threading.Lock()
        self._balances: Dict[str, Decimal] = {}
        self._entries: List[LedgerEntry] = []
        for child_id, amount in (balances or {}).items():
            self.open_account(child_id, starting_balance=amount)

    def open_account(self, child_id: str, *, starting_balance: AmountLike = 0) -> None:
        value = to_decimal(starting_balance)
        require_positive(value, allow_zero=True)
        with self._lock:
            self._balances[child_id] = Decimal("0.00")
        if value > Decimal("0"):
            self.credit(child_id, value, "Starting balance")

    def get_balance(self, child_id: str) -> Decimal:
        with self._lock:
            return self._require(child_id)

    def credit(self, child_id: str, amount: AmountLike, memo: str) -> str:
        value = to_decimal(amount)
        require_positive(value)
        with self._lock:
            balance = self._require(child_id) + value
            self._balances[child_id] = balance
            return self._record(child_id, value, EntryType.CREDIT, memo, balance)

    def debit(self, child_id: str, amount: AmountLike, memo: str) -> str:
        value = to_decimal(amount)
        require_positive(value)
        with self._lock:
            balance = self._require(child_id)
            if balance < value:
                raise InsufficientFundsError(
                    f"Child '{child_id}' has {format_currency(balance)}, "
                    f"which does not cover {format_currency(value)}.",
                    balance=balance,
                    requested=value,
                )
            balance -= value
            self._balances[child_id] = balance
            return self._record(child_id, value, EntryType.DEBIT, memo, balance)

    def set_balance(self, child_id: str, amount: AmountLike) -> None:
        """Overwrite a balance outside the request workflow (spending elsewhere, corrections)."""

        value = to_decimal(amount)
        require_positive(value, allow_zero=True)
        with self._lock:
            self._require(child_id)
            self._balances[child_id] = value

    def entries(self, child_id: str | None = None) -> Tuple[LedgerEntry, ...]:
        with self._lock:
            if child_id is None:
                return tuple(self._entries)
            return tuple(entry for entry in self._entries if entry.child_id == child_id)

    def get_entry(self, entry_id: str) -> LedgerEntry:
        with self._lock:
            for entry in self._entries:
                if entry.entry_id == entry_id:
                    return entry
        raise NotFoundError(f"Ledger entry '{entry_id}' does not exist.")

    def _require(self, child_id: str) -> Decimal:
        try:
            return self._balances[child_id]
        except KeyError as exc:
            raise NotFoundError(f"Child '{child_id}' has no ledger account.") from exc

    def _record(
        self,
        child_id: str,
        amount: Decimal,
        entry_type: EntryType,
        memo: str,
        balance_after: Decimal,
    ) -> str:
        entry = LedgerEntry(
            entry_id=str(uuid4()),
            child_id=child_id,
            amount=amount,
            type=entry_type,
            memo=memo,
            balance_after=balance_after,
        )
        self._entries.append(entry)
        return entry.entry_id


__all__ = ["EntryType", "InMemoryLedger", "Ledger", "LedgerEntry"]
