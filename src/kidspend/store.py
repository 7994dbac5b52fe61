"""Persistence contract for spending requests and its in-memory implementation."""

from __future__ import annotations

import threading
import weakref
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import ContextManager, Dict, Iterator, Optional, Protocol, Sequence

from .exceptions import ConcurrencyError, NotFoundError
from .models import AutoApprovalUsage, RequestStatus, SpendingRequest

CHILD_LOCK_PREFIX = "child:"


def child_lock_key(child_id: str) -> str:
    """Lock key serializing every auto-approval attempt for one child."""

    return f"{CHILD_LOCK_PREFIX}{child_id}"


class RequestStore(Protocol):
    """Queries and writes the request workflow needs.

    ``save`` inserts requests whose ``version`` is zero and otherwise performs
    an optimistic compare-and-swap on ``version``; a mismatch raises
    :class:`~kidspend.exceptions.ConcurrencyError`.

    ``lock`` serializes read-modify-write cycles on one request id or on a
    :func:`child_lock_key`.  Nested locks taken by the same caller join the
    outer one.  The context value is ``True`` when everything written inside
    the block, ledger movements on the same backend included, commits or
    rolls back as one unit.
    """

    def save(self, request: SpendingRequest) -> SpendingRequest:
        ...

    def get_by_id(self, request_id: str) -> SpendingRequest:
        ...

    def get_pending_by_family(self, family_id: str) -> Sequence[SpendingRequest]:
        ...

    def get_by_child(
        self, child_id: str, status: Optional[RequestStatus] = None
    ) -> Sequence[SpendingRequest]:
        ...

    def get_overdue(self, moment: datetime) -> Sequence[SpendingRequest]:
        ...

    def count_and_sum_auto_approved(self, child_id: str, day: date) -> AutoApprovalUsage:
        ...

    def lock(self, key: str) -> ContextManager[bool]:
        ...


class InMemoryRequestStore:
    """Dictionary backed store with per-key locks and versioned writes.

    Writes are not transactional, so :meth:`lock` yields ``False``.
    """

    def __init__(self) -> None:
        self._requests: Dict[str, SpendingRequest] = {}
        self._guard = threading.Lock()
        # Entries vanish once no caller holds the lock.
        self._row_locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()

    @contextmanager
    def lock(self, key: str) -> Iterator[bool]:
        with self._guard:
            row_lock = self._row_locks.get(key)
            if row_lock is None:
                row_lock = threading.RLock()
                self._row_locks[key] = row_lock
        with row_lock:
            yield False

    def held_locks(self) -> int:
        """Number of lock keys currently tracked."""

        with self._guard:
            return len(self._row_locks)

    def save(self, request: SpendingRequest) -> SpendingRequest:
        with self._guard:
            current = self._requests.get(request.request_id)
            if request.version == 0:
                if current is not None:
                    raise ConcurrencyError(f"Request {request.request_id} already exists.")
            elif current is None:
                raise NotFoundError(f"Request {request.request_id} does not exist.")
            elif current.version != request.version:
                raise ConcurrencyError(
                    f"Request {request.request_id} was modified concurrently "
                    f"(expected version {request.version}, found {current.version})."
                )
            stored = request.copy()
            stored.version = request.version + 1
            self._requests[stored.request_id] = stored
            return stored.copy()

    def get_by_id(self, request_id: str) -> SpendingRequest:
        with self._guard:
            try:
                return self._requests[request_id].copy()
            except KeyError as exc:
                raise NotFoundError(f"Request {request_id} does not exist.") from exc

    def get_pending_by_family(self, family_id: str) -> Sequence[SpendingRequest]:
        with self._guard:
            matches = [
                request.copy()
                for request in self._requests.values()
                if request.family_id == family_id and request.status is RequestStatus.PENDING
            ]
        return tuple(sorted(matches, key=lambda item: item.requested_at))

    def get_by_child(
        self, child_id: str, status: Optional[RequestStatus] = None
    ) -> Sequence[SpendingRequest]:
        with self._guard:
            matches = [
                request.copy()
                for request in self._requests.values()
                if request.child_id == child_id and (status is None or request.status is status)
            ]
        return tuple(sorted(matches, key=lambda item: item.requested_at, reverse=True))

    def get_overdue(self, moment: datetime) -> Sequence[SpendingRequest]:
        with self._guard:
            return tuple(request.copy() for request in self._requests.values() if request.is_overdue(moment))

    def count_and_sum_auto_approved(self, child_id: str, day: date) -> AutoApprovalUsage:
        count = 0
        total = Decimal("0.00")
        with self._guard:
            for request in self._requests.values():
                if request.child_id != child_id or not request.auto_approved:
                    continue
                if request.status is not RequestStatus.APPROVED or request.decided_at is None:
                    continue
                if request.decided_at.date() != day:
                    continue
                count += 1
                total += request.amount
        return AutoApprovalUsage(count=count, total=total)


__all__ = ["CHILD_LOCK_PREFIX", "InMemoryRequestStore", "RequestStore", "child_lock_key"]
