"""High level service coordinating spending requests, rules and the ledger."""

from __future__ import annotations

import statistics
from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Mapping, Optional, Sequence, Tuple

from .exceptions import (
    InsufficientFundsError,
    InvalidStateError,
    LedgerInconsistencyError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from .family import FamilyDirectory
from .ledger import Ledger
from .matcher import RuleMatcher, describe_rule
from .models import (
    DEFAULT_EXPIRY,
    ApprovalRule,
    NewSpendingRequest,
    RequestStatistics,
    RequestStatus,
    SpendingRequest,
    clean_review_notes,
)
from .money import ZERO, format_currency
from .notifications import NotificationEvent, Notifier
from .ops import AuditLog, StructuredLogger
from .rules import RuleStore
from .store import RequestStore, child_lock_key

SYSTEM_ACTOR = "system"


class RequestService:
    """Create, decide and report on children's spending requests."""

    __slots__ = (
        "_requests",
        "_rules",
        "_ledger",
        "_family",
        "_notifier",
        "_matcher",
        "_logger",
        "_audit_log",
        "_expiry",
        "_clock",
    )

    def __init__(
        self,
        *,
        requests: RequestStore,
        rules: RuleStore,
        ledger: Ledger,
        family: FamilyDirectory,
        notifier: Notifier,
        logger: StructuredLogger | None = None,
        audit_log: AuditLog | None = None,
        expiry: timedelta = DEFAULT_EXPIRY,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        if expiry <= timedelta(0):
            raise ValueError("expiry must be positive.")
        self._requests = requests
        self._rules = rules
        self._ledger = ledger
        self._family = family
        self._notifier = notifier
        self._matcher = RuleMatcher(rules, requests, ledger)
        self._logger = logger or StructuredLogger()
        self._audit_log = audit_log or AuditLog()
        self._expiry = expiry
        self._clock = clock

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    # ------------------------------------------------------------------
    # Child facing operations
    # ------------------------------------------------------------------
    def create(self, dto: NewSpendingRequest, child_id: str) -> SpendingRequest:
        """Record a new request and try the auto-approval rules on it.

        The returned request is already approved when a rule matched and the
        debit went through; otherwise it is pending and the parents have been
        notified.
        """

        family_id = self._family.family_of_child(child_id)
        now = self._clock()
        request = SpendingRequest(
            child_id=child_id,
            family_id=family_id,
            amount=dto.amount,
            description=dto.description,
            category=dto.category,
            merchant=dto.merchant,
            reason=dto.reason,
            priority=dto.priority,
            requested_at=now,
            expires_at=dto.expires_at or now + self._expiry,
        )
        balance = self._ledger.get_balance(child_id)
        if balance < request.amount:
            raise InsufficientFundsError(balance=balance, requested=request.amount)

        stored = self._requests.save(request)
        self._logger.log(
            "request_created",
            request=stored.request_id,
            child=child_id,
            amount=str(stored.amount),
            category=stored.category.value,
        )
        self._audit_log.record(child_id, "create_request", stored.request_id)

        stored = self._attempt_auto_approval(stored, now)
        if stored.auto_approved:
            self._notify(stored.child_id, NotificationEvent.REQUEST_APPROVED, stored, message=(
                f"Your request for {format_currency(stored.amount)} was approved automatically."
            ))
        elif stored.is_pending:
            for parent_id in self._family.parents_of(family_id):
                self._notify(parent_id, NotificationEvent.REQUEST_CREATED, stored, message=(
                    f"{child_id} would like to spend {format_currency(stored.amount)} "
                    f"on {stored.description}."
                ))
        return stored

    def cancel(self, request_id: str, child_id: str) -> SpendingRequest:
        def authorize(request: SpendingRequest) -> None:
            if request.child_id != child_id:
                raise UnauthorizedError("Only the requesting child may cancel a request.")

        def apply(request: SpendingRequest, now: datetime, atomic: bool) -> SpendingRequest:
            request.cancel(when=now)
            return self._requests.save(request)

        cancelled = self._transition(request_id, authorize, apply)
        self._audit_log.record(child_id, "cancel_request", request_id)
        self._logger.log("request_cancelled", request=request_id, child=child_id)
        return cancelled

    # ------------------------------------------------------------------
    # Parent decisions
    # ------------------------------------------------------------------
    def approve(self, request_id: str, parent_id: str, review_notes: Optional[str] = None) -> SpendingRequest:
        notes = clean_review_notes(review_notes)

        def apply(request: SpendingRequest, now: datetime, atomic: bool) -> SpendingRequest:
            request.ensure_pending("approve")
            balance = self._ledger.get_balance(request.child_id)
            if balance < request.amount:
                self._logger.log(
                    "approval_insufficient_funds",
                    request=request_id,
                    balance=str(balance),
                    requested=str(request.amount),
                )
                raise InsufficientFundsError(balance=balance, requested=request.amount)
            memo = f"Spending request {request_id} approved by {parent_id}: {request.description}"
            entry_id = self._ledger.debit(request.child_id, request.amount, memo)
            request.approve(parent_id, ledger_entry_id=entry_id, notes=notes, when=now)
            return self._commit_debited(request, entry_id, atomic=atomic)

        approved = self._transition(request_id, self._parent_guard(parent_id), apply)
        self._audit_log.record(parent_id, "approve_request", request_id, details={"amount": str(approved.amount)})
        self._logger.log(
            "request_approved",
            request=request_id,
            parent=parent_id,
            amount=str(approved.amount),
            ledger_entry=approved.ledger_entry_id,
        )
        self._notify(approved.child_id, NotificationEvent.REQUEST_APPROVED, approved, message=(
            f"Your request for {format_currency(approved.amount)} was approved."
        ))
        return approved

    def reject(self, request_id: str, parent_id: str, review_notes: str) -> SpendingRequest:
        notes = clean_review_notes(review_notes, required=True)

        def apply(request: SpendingRequest, now: datetime, atomic: bool) -> SpendingRequest:
            request.reject(parent_id, notes=notes, when=now)
            return self._requests.save(request)

        rejected = self._transition(request_id, self._parent_guard(parent_id), apply)
        self._audit_log.record(parent_id, "reject_request", request_id, details={"notes": notes})
        self._logger.log("request_rejected", request=request_id, parent=parent_id)
        self._notify(rejected.child_id, NotificationEvent.REQUEST_REJECTED, rejected, message=(
            f"Your request for {format_currency(rejected.amount)} was declined: {notes}"
        ))
        return rejected

    def expire_stale(self, now: datetime | None = None) -> Tuple[SpendingRequest, ...]:
        """Expire every pending request past its deadline.

        Meant to be driven by an external scheduler.  Requests decided while
        the sweep runs are skipped.
        """

        moment = now or self._clock()
        expired: list[SpendingRequest] = []
        for candidate in self._requests.get_overdue(moment):
            with self._requests.lock(candidate.request_id):
                current = self._requests.get_by_id(candidate.request_id)
                if not current.is_overdue(moment):
                    continue
                current.expire(when=moment)
                expired.append(self._requests.save(current))
        for request in expired:
            self._after_expiry(request)
        return tuple(expired)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_request(self, request_id: str, *, requested_by: str | None = None) -> SpendingRequest:
        request = self._requests.get_by_id(request_id)
        if requested_by is not None:
            self._require_child_access(requested_by, request.child_id)
        return request

    def get_pending_for_family(
        self, family_id: str, *, requested_by: str | None = None
    ) -> Sequence[SpendingRequest]:
        if requested_by is not None:
            self._require_parent(requested_by, family_id)
        return self._requests.get_pending_by_family(family_id)

    def get_for_child(
        self,
        child_id: str,
        status: RequestStatus | None = None,
        *,
        requested_by: str | None = None,
    ) -> Sequence[SpendingRequest]:
        if requested_by is not None:
            self._require_child_access(requested_by, child_id)
        return self._requests.get_by_child(child_id, status)

    def pending_count(self, *, family_id: str | None = None, child_id: str | None = None) -> int:
        if (family_id is None) == (child_id is None):
            raise ValueError("Provide exactly one of family_id or child_id.")
        if family_id is not None:
            return len(self._requests.get_pending_by_family(family_id))
        return len(self._requests.get_by_child(child_id, RequestStatus.PENDING))

    def get_statistics(
        self,
        child_id: str,
        since: datetime | None = None,
        *,
        requested_by: str | None = None,
    ) -> RequestStatistics:
        """Counts, amounts, approval rate and mean decision time for one child."""

        if requested_by is not None:
            self._require_child_access(requested_by, child_id)
        if since is not None and since.tzinfo is not None:
            # Stored timestamps are naive UTC.
            since = since.astimezone(timezone.utc).replace(tzinfo=None)
        requests = [
            request
            for request in self._requests.get_by_child(child_id)
            if since is None or request.requested_at >= since
        ]
        counts = Counter(request.status for request in requests)
        approved_amount = sum(
            (request.amount for request in requests if request.status is RequestStatus.APPROVED), ZERO
        )
        rejected_amount = sum(
            (request.amount for request in requests if request.status is RequestStatus.REJECTED), ZERO
        )
        durations = [
            Decimal(str((request.reviewed_at - request.requested_at).total_seconds()))
            for request in requests
            if request.reviewed_at is not None
        ]
        average_hours: Decimal | None = None
        if durations:
            average_hours = (statistics.mean(durations) / Decimal(3600)).quantize(
                Decimal("0.01"), rounding=ROUND_HALF_UP
            )
        return RequestStatistics(
            child_id=child_id,
            since=since,
            total=len(requests),
            counts=dict(counts),
            approved_amount=approved_amount,
            rejected_amount=rejected_amount,
            auto_approved_count=sum(1 for request in requests if request.auto_approved),
            average_decision_hours=average_hours,
        )

    # ------------------------------------------------------------------
    # Auto-approval rules
    # ------------------------------------------------------------------
    def save_rule(self, rule: ApprovalRule, parent_id: str) -> ApprovalRule:
        """Create ``rule`` or, when its id is already stored, replace it in place."""

        self._require_parent(parent_id, rule.family_id)
        if rule.child_id is not None and self._family.family_of_child(rule.child_id) != rule.family_id:
            raise UnauthorizedError("Rules can only target children in the same family.")
        try:
            existing = self._rules.get(rule.rule_id)
        except NotFoundError:
            existing = None
        if existing is not None:
            if existing.family_id != rule.family_id:
                raise ValidationError("A rule cannot move to another family.")
            rule.created_by = existing.created_by
            rule.created_at = existing.created_at
        if rule.created_by is None:
            rule.created_by = parent_id
        saved = self._rules.save(rule)
        action = "update_rule" if existing is not None else "save_rule"
        self._audit_log.record(parent_id, action, saved.rule_id, details={"summary": describe_rule(saved)})
        self._logger.log("rule_saved", rule=saved.rule_id, family=saved.family_id, summary=describe_rule(saved))
        return saved

    def get_rule(self, rule_id: str, *, requested_by: str | None = None) -> ApprovalRule:
        rule = self._rules.get(rule_id)
        if requested_by is not None:
            self._require_parent(requested_by, rule.family_id)
        return rule

    def delete_rule(self, rule_id: str, parent_id: str) -> None:
        rule = self._rules.get(rule_id)
        self._require_parent(parent_id, rule.family_id)
        self._rules.delete(rule_id)
        self._audit_log.record(parent_id, "delete_rule", rule_id)
        self._logger.log("rule_deleted", rule=rule_id, family=rule.family_id)

    def list_rules(self, family_id: str, *, requested_by: str | None = None) -> Sequence[ApprovalRule]:
        if requested_by is not None:
            self._require_parent(requested_by, family_id)
        return self._rules.list_for_family(family_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _attempt_auto_approval(self, request: SpendingRequest, now: datetime) -> SpendingRequest:
        # The child lock keeps two same-day creates from both fitting under one daily cap.
        child_lock = self._requests.lock(child_lock_key(request.child_id))
        with child_lock as atomic, self._requests.lock(request.request_id):
            # A parent may have decided the request between the insert and this lock.
            current = self._requests.get_by_id(request.request_id)
            if not current.is_pending:
                return current
            result = self._matcher.try_auto_approve(current, now)
            if result.approved:
                committed = self._commit_debited(current, result.ledger_entry_id, atomic=atomic)
        if result.approved:
            self._audit_log.record(
                SYSTEM_ACTOR,
                "auto_approve_request",
                committed.request_id,
                details={"rule": result.rule.rule_id},
            )
            self._logger.log(
                "request_auto_approved",
                request=committed.request_id,
                rule=result.rule.rule_id,
                amount=str(committed.amount),
            )
            return committed
        if result.rule is not None:
            self._logger.log(
                "auto_approval_debit_failed",
                request=current.request_id,
                rule=result.rule.rule_id,
                reason=result.failure,
            )
        return current

    def _transition(
        self,
        request_id: str,
        authorize: Callable[[SpendingRequest], None],
        apply: Callable[[SpendingRequest, datetime, bool], SpendingRequest],
    ) -> SpendingRequest:
        with self._requests.lock(request_id) as atomic:
            request = self._requests.get_by_id(request_id)
            authorize(request)
            now = self._clock()
            if not request.is_overdue(now):
                return apply(request, now, atomic)
            request.expire(when=now)
            expired = self._requests.save(request)
        self._after_expiry(expired)
        raise InvalidStateError(f"Request {request_id} expired at {expired.expires_at.isoformat()}.")

    def _commit_debited(self, request: SpendingRequest, ledger_entry_id: str, *, atomic: bool) -> SpendingRequest:
        if atomic:
            # A failed write rolls the debit back with it.
            return self._requests.save(request)
        try:
            return self._requests.save(request)
        except Exception as exc:
            self._logger.log(
                "ledger_inconsistency",
                request=request.request_id,
                ledger_entry=ledger_entry_id,
                error=str(exc),
            )
            raise LedgerInconsistencyError(
                f"Debit {ledger_entry_id} was posted but request {request.request_id} could not be saved.",
                request_id=request.request_id,
                ledger_entry_id=ledger_entry_id,
            ) from exc

    def _parent_guard(self, parent_id: str) -> Callable[[SpendingRequest], None]:
        def authorize(request: SpendingRequest) -> None:
            self._require_parent(parent_id, request.family_id)

        return authorize

    def _require_parent(self, parent_id: str, family_id: str) -> None:
        if not self._family.is_parent(parent_id, family_id):
            raise UnauthorizedError(f"'{parent_id}' is not a parent in this family.")

    def _require_child_access(self, user_id: str, child_id: str) -> None:
        if user_id == child_id:
            return
        self._require_parent(user_id, self._family.family_of_child(child_id))

    def _after_expiry(self, request: SpendingRequest) -> None:
        self._audit_log.record(SYSTEM_ACTOR, "expire_request", request.request_id)
        self._logger.log("request_expired", request=request.request_id, child=request.child_id)
        self._notify(request.child_id, NotificationEvent.REQUEST_EXPIRED, request, message=(
            f"Your request for {format_currency(request.amount)} expired before a decision."
        ))

    def _notify(self, recipient: str, event: NotificationEvent, request: SpendingRequest, *, message: str) -> None:
        payload: Mapping[str, str] = {
            "request_id": request.request_id,
            "child_id": request.child_id,
            "family_id": request.family_id,
            "amount": str(request.amount),
            "status": request.status.value,
            "message": message,
        }
        try:
            self._notifier.send(recipient, event, payload)
        except Exception as exc:  # delivery is best-effort
            self._logger.log(
                "notification_failed",
                recipient=recipient,
                notification=event.value,
                request=request.request_id,
                error=str(exc),
            )


__all__ = ["RequestService", "SYSTEM_ACTOR"]
