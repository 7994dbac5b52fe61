"""Persistence and SQLModel definitions for the KidSpend web frontend."""
from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, create_engine, desc, select

from ..exceptions import ConcurrencyError, InsufficientFundsError, NotFoundError
from ..models import (
    ApprovalRule,
    AutoApprovalUsage,
    RequestPriority,
    RequestStatus,
    SpendingCategory,
    SpendingRequest,
)
from ..money import AmountLike, from_cents, require_positive, to_cents
from ..store import CHILD_LOCK_PREFIX
from .config import SQLITE_FILE_NAME

# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
engine = create_engine(
    f"sqlite:///{SQLITE_FILE_NAME}",
    echo=False,
    connect_args={"check_same_thread": False},
)

# Ensure fresh metadata when re-importing in test contexts.
SQLModel.metadata.clear()


class ChildAccount(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    kid_id: str = Field(index=True, unique=True)
    family_id: str = Field(index=True)
    name: str
    balance_cents: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)


class FamilyParent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: str = Field(index=True)
    parent_id: str


class LedgerEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    entry_id: str = Field(index=True, unique=True)
    child_id: str = Field(index=True)
    change_cents: int
    reason: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class SpendingRequestRecord(SQLModel, table=True):
    request_id: str = Field(primary_key=True)
    child_id: str = Field(index=True)
    family_id: str = Field(index=True)
    amount_cents: int
    category: str
    description: str
    merchant: Optional[str] = None
    reason: Optional[str] = None
    priority: str = RequestPriority.NORMAL.value
    status: str = Field(default=RequestStatus.PENDING.value, index=True)  # pending|approved|rejected|cancelled|expired
    requested_at: datetime
    expires_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    ledger_entry_id: Optional[str] = None
    auto_approved: bool = False
    auto_approval_rule_id: Optional[str] = None
    decided_at: Optional[datetime] = None
    version: int = 1


class ApprovalRuleRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    rule_id: str = Field(index=True, unique=True)
    family_id: str = Field(index=True)
    child_id: Optional[str] = None
    max_amount_cents: int
    category: Optional[str] = None
    max_per_day: int = 1
    max_daily_total_cents: int = 0
    days_of_week: Optional[str] = None  # comma separated weekday numbers, Monday=0
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


def create_db_and_tables(bind: Engine | None = None) -> None:
    SQLModel.metadata.create_all(bind or engine)


# ---------------------------------------------------------------------------
# Record <-> domain conversion
# ---------------------------------------------------------------------------
_REQUEST_FIELDS = (
    "child_id",
    "family_id",
    "description",
    "merchant",
    "reason",
    "requested_at",
    "expires_at",
    "reviewed_at",
    "reviewed_by",
    "review_notes",
    "ledger_entry_id",
    "auto_approved",
    "auto_approval_rule_id",
    "decided_at",
)


def _request_values(request: SpendingRequest) -> Dict[str, object]:
    values: Dict[str, object] = {name: getattr(request, name) for name in _REQUEST_FIELDS}
    values.update(
        amount_cents=to_cents(request.amount),
        category=request.category.value,
        priority=request.priority.value,
        status=request.status.value,
    )
    return values


def _request_from_record(record: SpendingRequestRecord) -> SpendingRequest:
    return SpendingRequest(
        request_id=record.request_id,
        amount=from_cents(record.amount_cents),
        category=SpendingCategory(record.category),
        priority=RequestPriority(record.priority),
        status=RequestStatus(record.status),
        version=record.version,
        **{name: getattr(record, name) for name in _REQUEST_FIELDS},
    )


def _rule_values(rule: ApprovalRule) -> Dict[str, object]:
    return {
        "family_id": rule.family_id,
        "child_id": rule.child_id,
        "max_amount_cents": to_cents(rule.max_amount),
        "category": rule.category.value if rule.category else None,
        "max_per_day": rule.max_per_day,
        "max_daily_total_cents": to_cents(rule.max_daily_total),
        "days_of_week": ",".join(str(int(day)) for day in sorted(rule.days_of_week)) or None,
        "is_active": rule.is_active,
        "created_by": rule.created_by,
        "created_at": rule.created_at,
    }


def _rule_from_record(record: ApprovalRuleRecord) -> ApprovalRule:
    days = [int(part) for part in (record.days_of_week or "").split(",") if part.strip()]
    return ApprovalRule(
        rule_id=record.rule_id,
        family_id=record.family_id,
        child_id=record.child_id,
        max_amount=from_cents(record.max_amount_cents),
        category=SpendingCategory(record.category) if record.category else None,
        max_per_day=record.max_per_day,
        max_daily_total=from_cents(record.max_daily_total_cents),
        days_of_week=frozenset(days),
        is_active=record.is_active,
        created_by=record.created_by,
        created_at=record.created_at,
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
# Session opened by ``SqlRequestStore.lock``; other stores on the same engine
# write through it so everything inside the lock commits together.
_ambient_session: ContextVar[Optional[Tuple[Engine, Session]]] = ContextVar(
    "kidspend_ambient_session", default=None
)


def _joined(bind: Engine) -> Optional[Session]:
    current = _ambient_session.get()
    if current is not None and current[0] is bind:
        return current[1]
    return None


@contextmanager
def _session_scope(bind: Engine) -> Iterator[Session]:
    session = _joined(bind)
    if session is not None:
        yield session
        return
    with Session(bind, expire_on_commit=False) as session:
        yield session
        session.commit()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------
class SqlRequestStore:
    """Request store on SQLite.

    ``lock`` opens a database transaction and takes the write lock up front
    with a no-op update, so it also holds across worker processes.  Ledger,
    rule and family writes on the same engine inside the block join that
    transaction.  The ``version`` column still guards writes made without a
    lock.
    """

    def __init__(self, bind: Engine | None = None) -> None:
        self._engine = bind or engine

    @contextmanager
    def lock(self, key: str) -> Iterator[bool]:
        session = _joined(self._engine)
        if session is not None:
            self._claim(session, key)
            yield True
            return
        with Session(self._engine, expire_on_commit=False) as session:
            token = _ambient_session.set((self._engine, session))
            try:
                self._claim(session, key)
                yield True
                session.commit()
            finally:
                _ambient_session.reset(token)

    @staticmethod
    def _claim(session: Session, key: str) -> None:
        if key.startswith(CHILD_LOCK_PREFIX):
            statement = (
                update(ChildAccount)
                .where(ChildAccount.kid_id == key[len(CHILD_LOCK_PREFIX):])
                .values(balance_cents=ChildAccount.balance_cents)
            )
        else:
            statement = (
                update(SpendingRequestRecord)
                .where(SpendingRequestRecord.request_id == key)
                .values(version=SpendingRequestRecord.version)
            )
        session.execute(statement)

    def save(self, request: SpendingRequest) -> SpendingRequest:
        values = _request_values(request)
        with _session_scope(self._engine) as session:
            if request.version == 0:
                if session.get(SpendingRequestRecord, request.request_id) is not None:
                    raise ConcurrencyError(f"Request {request.request_id} already exists.")
                session.add(SpendingRequestRecord(request_id=request.request_id, version=1, **values))
                session.flush()
            else:
                result = session.execute(
                    update(SpendingRequestRecord)
                    .where(SpendingRequestRecord.request_id == request.request_id)
                    .where(SpendingRequestRecord.version == request.version)
                    .values(version=request.version + 1, **values)
                )
                if result.rowcount == 0:
                    if session.get(SpendingRequestRecord, request.request_id) is None:
                        raise NotFoundError(f"Request {request.request_id} does not exist.")
                    raise ConcurrencyError(
                        f"Request {request.request_id} was modified concurrently "
                        f"(expected version {request.version})."
                    )
        stored = request.copy()
        stored.version = request.version + 1
        return stored

    def get_by_id(self, request_id: str) -> SpendingRequest:
        with _session_scope(self._engine) as session:
            record = session.exec(
                select(SpendingRequestRecord).where(SpendingRequestRecord.request_id == request_id)
            ).first()
            if record is None:
                raise NotFoundError(f"Request {request_id} does not exist.")
            return _request_from_record(record)

    def get_pending_by_family(self, family_id: str) -> Sequence[SpendingRequest]:
        with _session_scope(self._engine) as session:
            records = session.exec(
                select(SpendingRequestRecord)
                .where(SpendingRequestRecord.family_id == family_id)
                .where(SpendingRequestRecord.status == RequestStatus.PENDING.value)
                .order_by(SpendingRequestRecord.requested_at)
            ).all()
            return tuple(_request_from_record(record) for record in records)

    def get_by_child(
        self, child_id: str, status: Optional[RequestStatus] = None
    ) -> Sequence[SpendingRequest]:
        query = select(SpendingRequestRecord).where(SpendingRequestRecord.child_id == child_id)
        if status is not None:
            query = query.where(SpendingRequestRecord.status == status.value)
        with _session_scope(self._engine) as session:
            records = session.exec(query.order_by(desc(SpendingRequestRecord.requested_at))).all()
            return tuple(_request_from_record(record) for record in records)

    def get_overdue(self, moment: datetime) -> Sequence[SpendingRequest]:
        with _session_scope(self._engine) as session:
            records = session.exec(
                select(SpendingRequestRecord)
                .where(SpendingRequestRecord.status == RequestStatus.PENDING.value)
                .where(SpendingRequestRecord.expires_at < moment)
            ).all()
            return tuple(_request_from_record(record) for record in records)

    def count_and_sum_auto_approved(self, child_id: str, day: date) -> AutoApprovalUsage:
        start = datetime.combine(day, time.min)
        end = start + timedelta(days=1)
        with _session_scope(self._engine) as session:
            count, total_cents = session.exec(
                select(
                    func.count(SpendingRequestRecord.request_id),
                    func.coalesce(func.sum(SpendingRequestRecord.amount_cents), 0),
                )
                .where(SpendingRequestRecord.child_id == child_id)
                .where(SpendingRequestRecord.auto_approved == True)  # noqa: E712
                .where(SpendingRequestRecord.status == RequestStatus.APPROVED.value)
                .where(SpendingRequestRecord.decided_at >= start)
                .where(SpendingRequestRecord.decided_at < end)
            ).one()
        return AutoApprovalUsage(count=int(count), total=from_cents(int(total_cents)))


class SqlRuleStore:
    def __init__(self, bind: Engine | None = None) -> None:
        self._engine = bind or engine

    def save(self, rule: ApprovalRule) -> ApprovalRule:
        with _session_scope(self._engine) as session:
            record = session.exec(
                select(ApprovalRuleRecord).where(ApprovalRuleRecord.rule_id == rule.rule_id)
            ).first()
            if record is None:
                record = ApprovalRuleRecord(rule_id=rule.rule_id, **_rule_values(rule))
            else:
                for key, value in _rule_values(rule).items():
                    setattr(record, key, value)
            session.add(record)
        return rule

    def get(self, rule_id: str) -> ApprovalRule:
        with _session_scope(self._engine) as session:
            record = session.exec(select(ApprovalRuleRecord).where(ApprovalRuleRecord.rule_id == rule_id)).first()
            if record is None:
                raise NotFoundError(f"Rule '{rule_id}' does not exist.")
            return _rule_from_record(record)

    def delete(self, rule_id: str) -> None:
        with _session_scope(self._engine) as session:
            record = session.exec(select(ApprovalRuleRecord).where(ApprovalRuleRecord.rule_id == rule_id)).first()
            if record is None:
                raise NotFoundError(f"Rule '{rule_id}' does not exist.")
            session.delete(record)

    def list_for_family(self, family_id: str) -> Sequence[ApprovalRule]:
        with _session_scope(self._engine) as session:
            records = session.exec(
                select(ApprovalRuleRecord)
                .where(ApprovalRuleRecord.family_id == family_id)
                .order_by(ApprovalRuleRecord.id)
            ).all()
            return tuple(_rule_from_record(record) for record in records)

    def get_active_rules(self, family_id: str, child_id: Optional[str] = None) -> Sequence[ApprovalRule]:
        return tuple(
            rule
            for rule in self.list_for_family(family_id)
            if rule.is_active and (rule.child_id is None or rule.child_id == child_id)
        )


class SqlLedger:
    """Ledger on ``ChildAccount.balance_cents`` with one event row per movement.

    Inside ``SqlRequestStore.lock`` a debit is part of the lock's transaction
    and rolls back if the request write after it fails.
    """

    def __init__(self, bind: Engine | None = None) -> None:
        self._engine = bind or engine

    def get_balance(self, child_id: str) -> Decimal:
        with _session_scope(self._engine) as session:
            return from_cents(self._account(session, child_id).balance_cents)

    def debit(self, child_id: str, amount: AmountLike, memo: str) -> str:
        cents = to_cents(amount)
        require_positive(Decimal(cents))
        with _session_scope(self._engine) as session:
            result = session.execute(
                update(ChildAccount)
                .where(ChildAccount.kid_id == child_id)
                .where(ChildAccount.balance_cents >= cents)
                .values(balance_cents=ChildAccount.balance_cents - cents)
            )
            if result.rowcount == 0:
                account = self._account(session, child_id)
                raise InsufficientFundsError(
                    balance=from_cents(account.balance_cents),
                    requested=from_cents(cents),
                )
            return self._record(session, child_id, -cents, memo)

    def credit(self, child_id: str, amount: AmountLike, memo: str) -> str:
        cents = to_cents(amount)
        require_positive(Decimal(cents))
        with _session_scope(self._engine) as session:
            result = session.execute(
                update(ChildAccount)
                .where(ChildAccount.kid_id == child_id)
                .values(balance_cents=ChildAccount.balance_cents + cents)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Child '{child_id}' has no ledger account.")
            return self._record(session, child_id, cents, memo)

    def events(self, child_id: str) -> List[LedgerEvent]:
        with _session_scope(self._engine) as session:
            return list(
                session.exec(
                    select(LedgerEvent).where(LedgerEvent.child_id == child_id).order_by(LedgerEvent.id)
                ).all()
            )

    @staticmethod
    def _account(session: Session, child_id: str) -> ChildAccount:
        account = session.exec(select(ChildAccount).where(ChildAccount.kid_id == child_id)).first()
        if account is None:
            raise NotFoundError(f"Child '{child_id}' has no ledger account.")
        return account

    @staticmethod
    def _record(session: Session, child_id: str, change_cents: int, memo: str) -> str:
        entry_id = str(uuid4())
        session.add(LedgerEvent(entry_id=entry_id, child_id=child_id, change_cents=change_cents, reason=memo))
        session.flush()
        return entry_id


class SqlFamilyDirectory:
    def __init__(self, bind: Engine | None = None) -> None:
        self._engine = bind or engine

    def family_of_child(self, child_id: str) -> str:
        with _session_scope(self._engine) as session:
            account = session.exec(select(ChildAccount).where(ChildAccount.kid_id == child_id)).first()
            if account is None:
                raise NotFoundError(f"Child '{child_id}' does not exist.")
            return account.family_id

    def is_parent(self, user_id: str, family_id: str) -> bool:
        return user_id in self.parents_of(family_id)

    def parents_of(self, family_id: str) -> Tuple[str, ...]:
        with _session_scope(self._engine) as session:
            rows = session.exec(select(FamilyParent).where(FamilyParent.family_id == family_id)).all()
            return tuple(sorted({row.parent_id for row in rows}))


__all__ = [
    "ApprovalRuleRecord",
    "ChildAccount",
    "FamilyParent",
    "LedgerEvent",
    "SpendingRequestRecord",
    "SqlFamilyDirectory",
    "SqlLedger",
    "SqlRequestStore",
    "SqlRuleStore",
    "create_db_and_tables",
    "engine",
]
