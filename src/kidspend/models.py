"""Domain models used by the KidSpend package."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum, IntEnum
from typing import Dict, FrozenSet, Iterable, Optional
from uuid import uuid4

from .exceptions import InvalidStateError, ValidationError
from .money import ZERO, AmountLike, to_decimal

DEFAULT_EXPIRY = timedelta(days=7)
MAX_DESCRIPTION_LENGTH = 200
MAX_MERCHANT_LENGTH = 100
MAX_REASON_LENGTH = 500
MAX_NOTES_LENGTH = 500


class RequestStatus(str, Enum):
    """Lifecycle of a spending request. Everything except ``PENDING`` is terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class RequestPriority(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"


class SpendingCategory(str, Enum):
    """Spending categories a child can attach to a request."""

    TOYS = "toys"
    GAMES = "games"
    BOOKS = "books"
    CLOTHES = "clothes"
    SNACKS = "snacks"
    CANDY = "candy"
    ELECTRONICS = "electronics"
    ENTERTAINMENT = "entertainment"
    SPORTS = "sports"
    CRAFTS = "crafts"
    CHARITY = "charity"
    OTHER = "other"


class Weekday(IntEnum):
    """Days of the week as used by ``datetime.weekday()``."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6

    @classmethod
    def from_datetime(cls, moment: datetime | date) -> "Weekday":
        return cls(moment.weekday())


def _clean_text(value: Optional[str], *, field_name: str, limit: int, required: bool = False) -> Optional[str]:
    text = (value or "").strip()
    if not text:
        if required:
            raise ValidationError(f"{field_name} is required.")
        return None
    if len(text) > limit:
        raise ValidationError(f"{field_name} must be at most {limit} characters.")
    return text


def _positive_amount(value: AmountLike, *, field_name: str = "amount") -> Decimal:
    try:
        amount = to_decimal(value)
    except (ArithmeticError, TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} is not a valid amount.") from exc
    if amount <= ZERO:
        raise ValidationError(f"{field_name} must be greater than zero.")
    return amount


def clean_review_notes(notes: Optional[str], *, required: bool = False) -> Optional[str]:
    return _clean_text(notes, field_name="review notes", limit=MAX_NOTES_LENGTH, required=required)


@dataclass(slots=True)
class NewSpendingRequest:
    """Payload a child submits to ask for permission to spend."""

    amount: AmountLike
    description: str
    category: SpendingCategory = SpendingCategory.OTHER
    merchant: Optional[str] = None
    reason: Optional[str] = None
    priority: RequestPriority = RequestPriority.NORMAL
    expires_at: Optional[datetime] = None


@dataclass(slots=True)
class SpendingRequest:
    """A child's ask to spend money, awaiting a parent or rule decision.

    Status changes go through :meth:`approve`, :meth:`auto_approve`,
    :meth:`reject`, :meth:`cancel` and :meth:`expire`; each one raises
    :class:`~kidspend.exceptions.InvalidStateError` unless the request is
    still pending.  ``version`` is bumped by the store on every write.
    """

    child_id: str
    family_id: str
    amount: Decimal
    description: str
    category: SpendingCategory = SpendingCategory.OTHER
    merchant: Optional[str] = None
    reason: Optional[str] = None
    priority: RequestPriority = RequestPriority.NORMAL
    request_id: str = field(default_factory=lambda: str(uuid4()))
    status: RequestStatus = RequestStatus.PENDING
    requested_at: datetime = field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    ledger_entry_id: Optional[str] = None
    auto_approved: bool = False
    auto_approval_rule_id: Optional[str] = None
    decided_at: Optional[datetime] = None
    version: int = 0

    def __post_init__(self) -> None:
        self.amount = _positive_amount(self.amount)
        self.description = _clean_text(
            self.description, field_name="description", limit=MAX_DESCRIPTION_LENGTH, required=True
        )
        self.merchant = _clean_text(self.merchant, field_name="merchant", limit=MAX_MERCHANT_LENGTH)
        self.reason = _clean_text(self.reason, field_name="reason", limit=MAX_REASON_LENGTH)
        self.category = SpendingCategory(self.category)
        self.priority = RequestPriority(self.priority)
        self.status = RequestStatus(self.status)
        if self.expires_at is None:
            self.expires_at = self.requested_at + DEFAULT_EXPIRY
        elif self.expires_at <= self.requested_at:
            raise ValidationError("expires_at must be after requested_at.")

    @property
    def is_pending(self) -> bool:
        return self.status is RequestStatus.PENDING

    def is_overdue(self, moment: datetime) -> bool:
        """True when the request is still pending but past its expiry."""

        return self.is_pending and self.expires_at is not None and moment > self.expires_at

    def copy(self) -> "SpendingRequest":
        return replace(self)

    def approve(
        self,
        reviewer: str,
        *,
        ledger_entry_id: str,
        notes: Optional[str] = None,
        when: datetime | None = None,
    ) -> None:
        self.ensure_pending("approve")
        moment = when or datetime.utcnow()
        self.status = RequestStatus.APPROVED
        self.reviewed_by = reviewer
        self.reviewed_at = moment
        self.review_notes = clean_review_notes(notes)
        self.ledger_entry_id = ledger_entry_id
        self.decided_at = moment

    def auto_approve(self, rule_id: str, *, ledger_entry_id: str, when: datetime | None = None) -> None:
        self.ensure_pending("auto-approve")
        self.status = RequestStatus.APPROVED
        self.auto_approved = True
        self.auto_approval_rule_id = rule_id
        self.ledger_entry_id = ledger_entry_id
        self.decided_at = when or datetime.utcnow()

    def reject(self, reviewer: str, *, notes: str, when: datetime | None = None) -> None:
        self.ensure_pending("reject")
        cleaned = clean_review_notes(notes, required=True)
        moment = when or datetime.utcnow()
        self.status = RequestStatus.REJECTED
        self.reviewed_by = reviewer
        self.reviewed_at = moment
        self.review_notes = cleaned
        self.decided_at = moment

    def cancel(self, *, when: datetime | None = None) -> None:
        self.ensure_pending("cancel")
        self.status = RequestStatus.CANCELLED
        self.decided_at = when or datetime.utcnow()

    def expire(self, *, when: datetime | None = None) -> None:
        self.ensure_pending("expire")
        self.status = RequestStatus.EXPIRED
        self.decided_at = when or datetime.utcnow()

    def ensure_pending(self, action: str) -> None:
        if self.status is not RequestStatus.PENDING:
            raise InvalidStateError(
                f"Cannot {action} request {self.request_id}: it is already {self.status.value}."
            )


def _weekday_set(days: Optional[Iterable[int]]) -> FrozenSet[Weekday]:
    if not days:
        return frozenset()
    try:
        return frozenset(Weekday(int(day)) for day in days)
    except ValueError as exc:
        raise ValidationError("days_of_week values must be between 0 (Monday) and 6 (Sunday).") from exc


@dataclass(slots=True)
class ApprovalRule:
    """Parent-authored policy that lets small requests through unattended.

    ``child_id`` and ``category`` of ``None`` mean "any".  ``max_daily_total``
    of zero means the daily sum is not capped.  An empty ``days_of_week``
    applies the rule every day.
    """

    family_id: str
    max_amount: Decimal
    child_id: Optional[str] = None
    category: Optional[SpendingCategory] = None
    max_per_day: int = 1
    max_daily_total: Decimal = ZERO
    days_of_week: FrozenSet[Weekday] = field(default_factory=frozenset)
    is_active: bool = True
    rule_id: str = field(default_factory=lambda: str(uuid4()))
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self) -> None:
        if not self.family_id:
            raise ValidationError("family_id is required.")
        self.max_amount = _positive_amount(self.max_amount, field_name="max_amount")
        try:
            daily_total = to_decimal(self.max_daily_total)
        except (ArithmeticError, TypeError, ValueError) as exc:
            raise ValidationError("max_daily_total is not a valid amount.") from exc
        if daily_total < ZERO:
            raise ValidationError("max_daily_total cannot be negative.")
        self.max_daily_total = daily_total
        if isinstance(self.max_per_day, bool) or int(self.max_per_day) < 1:
            raise ValidationError("max_per_day must be at least 1.")
        self.max_per_day = int(self.max_per_day)
        if self.category is not None:
            self.category = SpendingCategory(self.category)
        self.days_of_week = _weekday_set(self.days_of_week)

    def applies_on(self, moment: datetime | date) -> bool:
        return not self.days_of_week or Weekday.from_datetime(moment) in self.days_of_week

    def covers(self, request: SpendingRequest) -> bool:
        """Scope check: family, child and category."""

        if request.family_id != self.family_id:
            return False
        if self.child_id is not None and self.child_id != request.child_id:
            return False
        if self.category is not None and self.category is not request.category:
            return False
        return True


@dataclass(slots=True, frozen=True)
class AutoApprovalUsage:
    """Count and sum of a child's rule-driven approvals on one calendar day."""

    count: int = 0
    total: Decimal = ZERO


@dataclass(slots=True)
class RequestStatistics:
    """Aggregated view of a child's requests since a point in time."""

    child_id: str
    since: Optional[datetime]
    total: int
    counts: Dict[RequestStatus, int]
    approved_amount: Decimal
    rejected_amount: Decimal
    auto_approved_count: int
    average_decision_hours: Optional[Decimal]

    @property
    def approval_rate(self) -> Decimal:
        if self.total == 0:
            return Decimal("0")
        ratio = Decimal(self.counts.get(RequestStatus.APPROVED, 0)) / Decimal(self.total)
        return ratio.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)

    def count(self, status: RequestStatus) -> int:
        return self.counts.get(status, 0)

    def as_dict(self) -> Dict[str, object]:
        return {
            "child_id": self.child_id,
            "since": self.since.isoformat() if self.since else None,
            "total": self.total,
            "counts": {status.value: self.counts.get(status, 0) for status in RequestStatus},
            "approved_amount": str(self.approved_amount),
            "rejected_amount": str(self.rejected_amount),
            "approval_rate": str(self.approval_rate),
            "auto_approved_count": self.auto_approved_count,
            "average_decision_hours": (
                str(self.average_decision_hours) if self.average_decision_hours is not None else None
            ),
        }


@dataclass(slots=True)
class AuditEvent:
    """Represents an auditable decision or rule change."""

    actor: str
    action: str
    target: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    details: Dict[str, object] = field(default_factory=dict)


__all__ = [
    "ApprovalRule",
    "AuditEvent",
    "AutoApprovalUsage",
    "clean_review_notes",
    "DEFAULT_EXPIRY",
    "NewSpendingRequest",
    "RequestPriority",
    "RequestStatistics",
    "RequestStatus",
    "SpendingCategory",
    "SpendingRequest",
    "Weekday",
]
