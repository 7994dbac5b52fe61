import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from kidspend.exceptions import (
    InsufficientFundsError,
    InvalidStateError,
    LedgerInconsistencyError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from kidspend.family import InMemoryFamilyDirectory
from kidspend.ledger import EntryType, InMemoryLedger
from kidspend.models import ApprovalRule, NewSpendingRequest, RequestStatus, SpendingCategory, Weekday
from kidspend.money import to_decimal
from kidspend.notifications import NotificationCenter, NotificationEvent
from kidspend.rules import InMemoryRuleStore
from kidspend.service import RequestService
from kidspend.store import InMemoryRequestStore

MONDAY_MORNING = datetime(2024, 1, 15, 9, 30)


class Clock:
    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **kwargs) -> None:
        self.moment += timedelta(**kwargs)


class FlakyLedger(InMemoryLedger):
    """Ledger whose next debit fails as if the balance dropped in between."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.fail_next_debit = False

    def debit(self, child_id, amount, memo):
        if self.fail_next_debit:
            self.fail_next_debit = False
            raise InsufficientFundsError(balance=Decimal("0.00"), requested=to_decimal(amount))
        return super().debit(child_id, amount, memo)


class BrokenStore(InMemoryRequestStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_updates = False

    def save(self, request):
        if self.fail_updates and request.version > 0:
            raise RuntimeError("disk full")
        return super().save(request)


class InterruptingStore(InMemoryRequestStore):
    """Runs ``before_child_lock`` once, right before a child lock is taken."""

    def __init__(self) -> None:
        super().__init__()
        self.before_child_lock = None

    def lock(self, key):
        if key.startswith("child:") and self.before_child_lock is not None:
            hook, self.before_child_lock = self.before_child_lock, None
            hook()
        return super().lock(key)


class ExplodingNotifier:
    def send(self, recipient, event, payload):
        raise RuntimeError("push gateway offline")


def make_bank(*, ledger=None, store=None, notifier=None, **service_kwargs):
    family = InMemoryFamilyDirectory()
    family.add_parent("smiths", "mom")
    family.add_parent("smiths", "dad")
    family.add_child("smiths", "ava")
    family.add_child("smiths", "ben")
    family.add_parent("joneses", "pat")
    family.add_child("joneses", "cy")
    ledger = ledger or InMemoryLedger()
    for child, balance in (("ava", 100), ("ben", 20), ("cy", 50)):
        ledger.open_account(child, starting_balance=balance)
    store = store or InMemoryRequestStore()
    rules = InMemoryRuleStore()
    notifications = NotificationCenter()
    clock = Clock(MONDAY_MORNING)
    service = RequestService(
        requests=store,
        rules=rules,
        ledger=ledger,
        family=family,
        notifier=notifier or notifications,
        clock=clock,
        **service_kwargs,
    )
    return SimpleNamespace(
        service=service,
        ledger=ledger,
        store=store,
        rules=rules,
        notifications=notifications,
        clock=clock,
    )


@pytest.fixture()
def bank():
    return make_bank()


def ask(amount, description="New game", category=SpendingCategory.GAMES, **kwargs) -> NewSpendingRequest:
    return NewSpendingRequest(amount=amount, description=description, category=category, **kwargs)


def assert_consistent(request) -> None:
    assert (request.ledger_entry_id is not None) == (request.status is RequestStatus.APPROVED)
    reviewed = request.status in (RequestStatus.APPROVED, RequestStatus.REJECTED) and not request.auto_approved
    assert (request.reviewed_at is not None) == reviewed
    assert (request.reviewed_by is not None) == reviewed


def debits(ledger, child_id):
    return [entry for entry in ledger.entries(child_id) if entry.type is EntryType.DEBIT]


def test_create_leaves_request_pending_and_notifies_parents(bank) -> None:
    request = bank.service.create(ask("30.00"), "ava")

    assert request.status is RequestStatus.PENDING
    assert request.ledger_entry_id is None
    assert request.family_id == "smiths"
    assert request.requested_at == MONDAY_MORNING
    assert request.expires_at == MONDAY_MORNING + timedelta(days=7)
    assert bank.ledger.get_balance("ava") == Decimal("100.00")
    created = bank.notifications.pending(event=NotificationEvent.REQUEST_CREATED)
    assert sorted(item.recipient for item in created) == ["dad", "mom"]
    assert created[0].metadata["request_id"] == request.request_id
    assert bank.service.pending_count(family_id="smiths") == 1
    assert_consistent(request)


def test_parent_approval_debits_ledger(bank) -> None:
    request = bank.service.create(ask("30.00"), "ava")
    bank.clock.advance(hours=1)

    approved = bank.service.approve(request.request_id, "mom", review_notes="Good choice!")

    assert approved.status is RequestStatus.APPROVED
    assert approved.reviewed_by == "mom"
    assert approved.reviewed_at == MONDAY_MORNING + timedelta(hours=1)
    assert approved.review_notes == "Good choice!"
    assert approved.ledger_entry_id is not None
    assert approved.auto_approved is False
    assert bank.ledger.get_balance("ava") == Decimal("70.00")
    entry = bank.ledger.get_entry(approved.ledger_entry_id)
    assert "mom" in entry.memo
    assert bank.service.pending_count(child_id="ava") == 0
    assert bank.notifications.pending(event=NotificationEvent.REQUEST_APPROVED, recipient="ava")
    assert bank.service.get_request(request.request_id).status is RequestStatus.APPROVED
    assert_consistent(approved)


@pytest.mark.parametrize("amount", [0, "-5", "0.001"])
def test_create_rejects_non_positive_amounts(bank, amount) -> None:
    with pytest.raises(ValidationError):
        bank.service.create(ask(amount), "ava")


def test_create_validation_and_funds(bank) -> None:
    with pytest.raises(ValidationError):
        bank.service.create(ask(5, description="   "), "ava")
    with pytest.raises(ValidationError):
        bank.service.create(ask(5, description="x" * 201), "ava")
    with pytest.raises(NotFoundError):
        bank.service.create(ask(5), "ghost")
    with pytest.raises(InsufficientFundsError) as excinfo:
        bank.service.create(ask(150), "ava")

    assert excinfo.value.balance == Decimal("100.00")
    assert excinfo.value.requested == Decimal("150.00")
    assert bank.service.get_for_child("ava") == ()


def test_rule_auto_approves_small_snack(bank) -> None:
    bank.service.save_rule(
        ApprovalRule(family_id="smiths", max_amount=10, category=SpendingCategory.SNACKS, max_per_day=3),
        "mom",
    )

    request = bank.service.create(ask(5, description="Chips", category=SpendingCategory.SNACKS), "ava")

    assert request.status is RequestStatus.APPROVED
    assert request.auto_approved is True
    assert request.reviewed_by is None
    assert request.ledger_entry_id is not None
    assert bank.ledger.get_balance("ava") == Decimal("95.00")
    assert bank.notifications.pending(event=NotificationEvent.REQUEST_CREATED) == ()
    assert bank.notifications.pending(recipient="mom") == ()
    assert bank.service.audit_log.entries(action="auto_approve_request")
    assert_consistent(request)


def test_rule_stops_after_max_per_day(bank) -> None:
    bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=10, max_per_day=2), "mom")

    first = bank.service.create(ask(1, description="Gum"), "ava")
    second = bank.service.create(ask(1, description="Gum"), "ava")
    third = bank.service.create(ask(1, description="Gum"), "ava")

    assert [first.status, second.status, third.status] == [
        RequestStatus.APPROVED,
        RequestStatus.APPROVED,
        RequestStatus.PENDING,
    ]
    assert len(bank.notifications.pending(event=NotificationEvent.REQUEST_CREATED)) == 2

    bank.clock.advance(days=1)
    tomorrow = bank.service.create(ask(1, description="Gum"), "ava")
    assert tomorrow.auto_approved is True


def test_rule_enforces_daily_total(bank) -> None:
    bank.service.save_rule(
        ApprovalRule(family_id="smiths", max_amount=20, max_per_day=10, max_daily_total=30),
        "mom",
    )
    assert bank.service.create(ask(15), "ava").auto_approved
    assert bank.service.create(ask(10), "ava").auto_approved

    over_cap = bank.service.create(ask(10), "ava")
    within_cap = bank.service.create(ask(5), "ava")

    assert over_cap.status is RequestStatus.PENDING
    assert within_cap.status is RequestStatus.APPROVED
    assert bank.ledger.get_balance("ava") == Decimal("70.00")


def test_amount_above_every_ceiling_stays_pending(bank) -> None:
    bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=10, max_per_day=5), "mom")
    bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount="7.50", max_per_day=5), "dad")

    request = bank.service.create(ask("10.01"), "ava")

    assert request.status is RequestStatus.PENDING
    assert bank.service.create(ask("10.00"), "ava").auto_approved


def test_rule_scope_filters(bank) -> None:
    bank.service.save_rule(ApprovalRule(family_id="smiths", child_id="ben", max_amount=10), "mom")
    bank.service.save_rule(
        ApprovalRule(family_id="smiths", max_amount=10, category=SpendingCategory.BOOKS), "mom"
    )
    bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=10, is_active=False), "mom")
    bank.service.save_rule(
        ApprovalRule(family_id="smiths", max_amount=10, days_of_week={Weekday.SATURDAY, Weekday.SUNDAY}),
        "mom",
    )
    bank.service.save_rule(ApprovalRule(family_id="joneses", max_amount=10), "pat")

    assert bank.service.create(ask(5), "ava").status is RequestStatus.PENDING
    assert bank.service.create(ask(5), "ben").auto_approved
    assert bank.service.create(ask(5, category=SpendingCategory.BOOKS), "ava").auto_approved

    bank.clock.advance(days=5)  # Saturday
    assert bank.service.create(ask(5), "ava").auto_approved


def test_first_rule_in_store_order_wins(bank) -> None:
    strict = bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=10, max_per_day=1), "mom")
    loose = bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=10, max_per_day=3), "mom")

    first = bank.service.create(ask(2), "ava")
    second = bank.service.create(ask(2), "ava")

    assert first.auto_approval_rule_id == strict.rule_id
    assert second.auto_approval_rule_id == loose.rule_id


def test_failed_auto_approval_debit_falls_back_to_parents() -> None:
    bank = make_bank(ledger=FlakyLedger())
    bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=10), "mom")
    bank.ledger.fail_next_debit = True

    request = bank.service.create(ask(5), "ava")

    assert request.status is RequestStatus.PENDING
    assert request.auto_approved is False
    assert_consistent(request)
    assert len(bank.notifications.pending(event=NotificationEvent.REQUEST_CREATED)) == 2
    assert bank.service.logger.events("auto_approval_debit_failed")
    assert bank.service.approve(request.request_id, "dad").status is RequestStatus.APPROVED


def test_approval_rechecks_balance(bank) -> None:
    request = bank.service.create(ask(50), "ava")
    bank.ledger.set_balance("ava", 40)

    with pytest.raises(InsufficientFundsError) as excinfo:
        bank.service.approve(request.request_id, "mom")

    assert excinfo.value.balance == Decimal("40.00")
    assert excinfo.value.requested == Decimal("50.00")
    assert "$40.00" in str(excinfo.value) and "$50.00" in str(excinfo.value)
    assert bank.service.get_request(request.request_id).status is RequestStatus.PENDING
    assert debits(bank.ledger, "ava") == []

    rejected = bank.service.reject(request.request_id, "mom", "Too expensive right now")
    assert rejected.status is RequestStatus.REJECTED


@pytest.mark.parametrize("notes", ["", "   ", None])
def test_reject_requires_notes(bank, notes) -> None:
    request = bank.service.create(ask(10), "ava")

    with pytest.raises(ValidationError):
        bank.service.reject(request.request_id, "mom", notes)

    assert bank.service.get_request(request.request_id).is_pending


def test_reject_records_reason_without_moving_money(bank) -> None:
    request = bank.service.create(ask(10), "ava")

    rejected = bank.service.reject(request.request_id, "dad", "Save it for the bike")

    assert rejected.status is RequestStatus.REJECTED
    assert rejected.review_notes == "Save it for the bike"
    assert rejected.reviewed_by == "dad"
    assert bank.ledger.get_balance("ava") == Decimal("100.00")
    declined = bank.notifications.pending(event=NotificationEvent.REQUEST_REJECTED)
    assert [item.recipient for item in declined] == ["ava"]
    assert "Save it for the bike" in declined[0].body
    assert_consistent(rejected)


def test_terminal_requests_reject_further_transitions(bank) -> None:
    request = bank.service.create(ask(10), "ava")
    bank.service.approve(request.request_id, "mom")

    with pytest.raises(InvalidStateError):
        bank.service.approve(request.request_id, "dad")
    with pytest.raises(InvalidStateError):
        bank.service.reject(request.request_id, "dad", "Changed my mind")
    with pytest.raises(InvalidStateError):
        bank.service.cancel(request.request_id, "ava")

    assert len(debits(bank.ledger, "ava")) == 1
    assert bank.ledger.get_balance("ava") == Decimal("90.00")


def test_parents_of_other_families_are_unauthorized(bank) -> None:
    request = bank.service.create(ask(10), "ava")

    with pytest.raises(UnauthorizedError):
        bank.service.approve(request.request_id, "pat")
    with pytest.raises(UnauthorizedError):
        bank.service.reject(request.request_id, "pat", "No")
    with pytest.raises(UnauthorizedError):
        bank.service.get_pending_for_family("smiths", requested_by="pat")
    with pytest.raises(UnauthorizedError):
        bank.service.get_for_child("ava", requested_by="ben")
    with pytest.raises(NotFoundError):
        bank.service.approve("missing", "mom")

    assert bank.service.get_pending_for_family("smiths", requested_by="mom")[0].request_id == request.request_id
    assert bank.service.get_for_child("ava", requested_by="ava")


def test_cancel_is_owner_only_and_not_repeatable(bank) -> None:
    request = bank.service.create(ask(10), "ava")

    with pytest.raises(UnauthorizedError):
        bank.service.cancel(request.request_id, "ben")

    cancelled = bank.service.cancel(request.request_id, "ava")
    assert cancelled.status is RequestStatus.CANCELLED
    assert_consistent(cancelled)

    for _ in range(2):
        with pytest.raises(InvalidStateError):
            bank.service.cancel(request.request_id, "ava")

    assert len(bank.service.audit_log.entries(action="cancel_request")) == 1
    assert bank.service.pending_count(child_id="ava") == 0
    assert bank.notifications.pending(recipient="mom", event=NotificationEvent.REQUEST_APPROVED) == ()


def test_concurrent_approvals_debit_once(bank) -> None:
    request = bank.service.create(ask(30), "ava")
    workers = 8
    barrier = threading.Barrier(workers)

    def attempt(parent_id: str):
        barrier.wait()
        try:
            return bank.service.approve(request.request_id, parent_id)
        except InvalidStateError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(attempt, ["mom", "dad"] * (workers // 2)))

    losers = [item for item in outcomes if isinstance(item, InvalidStateError)]
    assert len(losers) == workers - 1
    assert len(debits(bank.ledger, "ava")) == 1
    assert bank.ledger.get_balance("ava") == Decimal("70.00")


def test_approve_racing_cancel_has_one_winner(bank) -> None:
    request = bank.service.create(ask(30), "ava")
    barrier = threading.Barrier(2)

    def approve():
        barrier.wait()
        return bank.service.approve(request.request_id, "mom")

    def cancel():
        barrier.wait()
        return bank.service.cancel(request.request_id, "ava")

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(approve), pool.submit(cancel)]
        errors = [future.exception() for future in futures]

    assert sum(error is None for error in errors) == 1
    assert all(isinstance(error, InvalidStateError) for error in errors if error is not None)
    final = bank.service.get_request(request.request_id)
    assert_consistent(final)
    expected_balance = Decimal("70.00") if final.status is RequestStatus.APPROVED else Decimal("100.00")
    assert bank.ledger.get_balance("ava") == expected_balance


@pytest.mark.parametrize("decision", ["approve", "cancel"])
def test_decision_before_auto_approval_lock_wins(decision) -> None:
    bank = make_bank(store=InterruptingStore())
    bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=50), "mom")

    def decide() -> None:
        (waiting,) = bank.store.get_by_child("ava", RequestStatus.PENDING)
        if decision == "approve":
            bank.service.approve(waiting.request_id, "mom")
        else:
            bank.service.cancel(waiting.request_id, "ava")

    bank.store.before_child_lock = decide
    created = bank.service.create(ask(30), "ava")

    final = bank.service.get_request(created.request_id)
    assert created.status is final.status
    assert final.auto_approved is False
    assert_consistent(final)
    if decision == "approve":
        assert final.status is RequestStatus.APPROVED
        assert final.reviewed_by == "mom"
        assert len(debits(bank.ledger, "ava")) == 1
        assert bank.ledger.get_balance("ava") == Decimal("70.00")
    else:
        assert final.status is RequestStatus.CANCELLED
        assert debits(bank.ledger, "ava") == []
        assert bank.ledger.get_balance("ava") == Decimal("100.00")
    assert bank.notifications.pending(event=NotificationEvent.REQUEST_CREATED) == ()
    assert not bank.service.logger.events("ledger_inconsistency")


def test_concurrent_creates_respect_max_per_day(bank) -> None:
    bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=10, max_per_day=2), "mom")
    workers = 8
    barrier = threading.Barrier(workers)

    def attempt(_):
        barrier.wait()
        return bank.service.create(ask(1, description="Gum"), "ava")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        created = list(pool.map(attempt, range(workers)))

    assert sum(request.auto_approved for request in created) == 2
    assert sum(request.is_pending for request in created) == workers - 2
    assert len(debits(bank.ledger, "ava")) == 2
    assert bank.ledger.get_balance("ava") == Decimal("98.00")


def test_concurrent_creates_respect_daily_total(bank) -> None:
    bank.service.save_rule(
        ApprovalRule(family_id="smiths", max_amount=20, max_per_day=10, max_daily_total=30),
        "mom",
    )
    workers = 6
    barrier = threading.Barrier(workers)

    def attempt(_):
        barrier.wait()
        return bank.service.create(ask(7, description="Stickers"), "ava")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        created = list(pool.map(attempt, range(workers)))

    approved = [request for request in created if request.auto_approved]
    assert len(approved) == 4
    assert sum(request.amount for request in approved) <= Decimal("30")
    assert bank.ledger.get_balance("ava") == Decimal("72.00")


def test_notification_failures_are_logged_not_raised() -> None:
    bank = make_bank(notifier=ExplodingNotifier())

    request = bank.service.create(ask(10), "ava")
    approved = bank.service.approve(request.request_id, "mom")

    assert approved.status is RequestStatus.APPROVED
    failures = bank.service.logger.events("notification_failed")
    assert {entry["recipient"] for entry in failures} == {"mom", "dad", "ava"}


def test_failed_status_write_after_debit_is_fatal() -> None:
    bank = make_bank(store=BrokenStore())
    request = bank.service.create(ask(25), "ava")
    bank.store.fail_updates = True

    with pytest.raises(LedgerInconsistencyError) as excinfo:
        bank.service.approve(request.request_id, "mom")

    assert excinfo.value.request_id == request.request_id
    assert bank.ledger.get_entry(excinfo.value.ledger_entry_id).amount == Decimal("25.00")
    assert bank.service.logger.events("ledger_inconsistency")


def test_sweep_expires_overdue_requests(bank) -> None:
    stale = bank.service.create(ask(10), "ava")
    bank.clock.advance(days=6)
    fresh = bank.service.create(ask(10), "ben")
    bank.clock.advance(days=1, seconds=1)

    expired = bank.service.expire_stale()

    assert [item.request_id for item in expired] == [stale.request_id]
    assert bank.service.get_request(stale.request_id).status is RequestStatus.EXPIRED
    assert bank.service.get_request(fresh.request_id).is_pending
    assert bank.notifications.pending(event=NotificationEvent.REQUEST_EXPIRED, recipient="ava")
    assert bank.service.expire_stale() == ()


def test_decision_on_overdue_request_expires_it(bank) -> None:
    request = bank.service.create(ask(10), "ava")
    bank.clock.advance(days=8)

    with pytest.raises(InvalidStateError):
        bank.service.approve(request.request_id, "mom")

    stored = bank.service.get_request(request.request_id)
    assert stored.status is RequestStatus.EXPIRED
    assert_consistent(stored)
    assert bank.ledger.get_balance("ava") == Decimal("100.00")


def test_expiry_is_configurable() -> None:
    bank = make_bank(expiry=timedelta(days=1))
    request = bank.service.create(ask(10), "ava")
    assert request.expires_at == MONDAY_MORNING + timedelta(days=1)

    explicit = bank.service.create(ask(10, expires_at=MONDAY_MORNING + timedelta(hours=3)), "ava")
    assert explicit.expires_at == MONDAY_MORNING + timedelta(hours=3)


def test_statistics_summarise_child_history(bank) -> None:
    bank.service.save_rule(
        ApprovalRule(family_id="smiths", max_amount=5, category=SpendingCategory.SNACKS), "mom"
    )
    book = bank.service.create(ask(10, description="Book", category=SpendingCategory.BOOKS), "ava")
    toy = bank.service.create(ask(20, description="Toy", category=SpendingCategory.TOYS), "ava")
    bank.clock.advance(hours=2)
    bank.service.approve(book.request_id, "mom")
    bank.clock.advance(hours=2)
    bank.service.reject(toy.request_id, "dad", "Not this week")
    bank.service.create(ask(3, description="Juice", category=SpendingCategory.SNACKS), "ava")
    stickers = bank.service.create(ask(4, description="Stickers", category=SpendingCategory.CRAFTS), "ava")
    bank.service.cancel(stickers.request_id, "ava")
    bank.service.create(ask(6, description="Comic", category=SpendingCategory.BOOKS), "ava")

    stats = bank.service.get_statistics("ava")

    assert stats.total == 5
    assert stats.count(RequestStatus.APPROVED) == 2
    assert stats.count(RequestStatus.REJECTED) == 1
    assert stats.count(RequestStatus.CANCELLED) == 1
    assert stats.count(RequestStatus.PENDING) == 1
    assert stats.approved_amount == Decimal("13.00")
    assert stats.rejected_amount == Decimal("20.00")
    assert stats.approval_rate == Decimal("0.4000")
    assert stats.average_decision_hours == Decimal("3.00")
    assert stats.auto_approved_count == 1

    recent = bank.service.get_statistics("ava", since=MONDAY_MORNING + timedelta(hours=3))
    assert recent.total == 3
    assert recent.average_decision_hours is None
    aware = datetime(2024, 1, 15, 13, 30, tzinfo=timezone(timedelta(hours=1)))
    assert bank.service.get_statistics("ava", since=aware).total == 3
    assert bank.service.get_statistics("ava", since=aware.replace(minute=31, tzinfo=timezone.utc)).total == 0


def test_statistics_for_child_without_requests(bank) -> None:
    stats = bank.service.get_statistics("ben")

    assert stats.total == 0
    assert stats.approval_rate == Decimal("0")
    assert stats.as_dict()["counts"]["pending"] == 0


def test_rule_administration_is_family_scoped(bank) -> None:
    with pytest.raises(UnauthorizedError):
        bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=5), "pat")
    with pytest.raises(UnauthorizedError):
        bank.service.save_rule(ApprovalRule(family_id="smiths", child_id="cy", max_amount=5), "mom")

    rule = bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=5), "mom")
    assert rule.created_by == "mom"
    approved = bank.service.create(ask(5), "ava")

    with pytest.raises(UnauthorizedError):
        bank.service.delete_rule(rule.rule_id, "pat")
    bank.service.delete_rule(rule.rule_id, "dad")

    assert bank.service.list_rules("smiths", requested_by="mom") == ()
    assert bank.service.get_request(approved.request_id).status is RequestStatus.APPROVED
    assert bank.service.create(ask(5), "ava").status is RequestStatus.PENDING
    assert [entry.action for entry in bank.service.audit_log.entries(target=rule.rule_id)] == [
        "save_rule",
        "delete_rule",
    ]


def test_rule_edit_keeps_author_and_position(bank) -> None:
    first = bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=5), "mom")
    second = bank.service.save_rule(ApprovalRule(family_id="smiths", max_amount=8), "mom")

    edited = bank.service.save_rule(
        ApprovalRule(family_id="smiths", max_amount=2, is_active=False, rule_id=first.rule_id), "dad"
    )

    assert edited.created_by == "mom"
    assert edited.created_at == first.created_at
    assert [rule.rule_id for rule in bank.service.list_rules("smiths")] == [first.rule_id, second.rule_id]
    stored = bank.service.get_rule(first.rule_id, requested_by="dad")
    assert stored.max_amount == Decimal("2.00")
    assert stored.is_active is False
    with pytest.raises(UnauthorizedError):
        bank.service.get_rule(first.rule_id, requested_by="pat")
    with pytest.raises(ValidationError):
        bank.service.save_rule(ApprovalRule(family_id="joneses", max_amount=2, rule_id=first.rule_id), "pat")
    assert [entry.action for entry in bank.service.audit_log.entries(target=first.rule_id)] == [
        "save_rule",
        "update_rule",
    ]


def test_pending_count_requires_one_scope(bank) -> None:
    bank.service.create(ask(5), "ava")
    bank.service.create(ask(5), "ben")

    assert bank.service.pending_count(family_id="smiths") == 2
    assert bank.service.pending_count(child_id="ben") == 1
    with pytest.raises(ValueError):
        bank.service.pending_count()
