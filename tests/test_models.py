from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from kidspend.exceptions import InvalidStateError, ValidationError
from kidspend.models import (
    ApprovalRule,
    RequestStatistics,
    RequestStatus,
    SpendingCategory,
    SpendingRequest,
    Weekday,
)

NOON = datetime(2024, 1, 17, 12, 0)  # Wednesday


def make_request(**overrides) -> SpendingRequest:
    fields = dict(
        child_id="ava",
        family_id="smiths",
        amount="12.5",
        description="  Paint set  ",
        category=SpendingCategory.CRAFTS,
        requested_at=NOON,
    )
    fields.update(overrides)
    return SpendingRequest(**fields)


def test_request_normalises_fields() -> None:
    request = make_request(merchant="   ", reason="For art class")

    assert request.amount == Decimal("12.50")
    assert request.description == "Paint set"
    assert request.merchant is None
    assert request.reason == "For art class"
    assert request.status is RequestStatus.PENDING
    assert request.expires_at == NOON + timedelta(days=7)


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": 0},
        {"amount": "-1"},
        {"amount": True},
        {"amount": "lots"},
        {"description": ""},
        {"description": "x" * 201},
        {"merchant": "m" * 101},
        {"reason": "r" * 501},
        {"expires_at": NOON},
    ],
)
def test_request_rejects_bad_input(overrides) -> None:
    with pytest.raises(ValidationError):
        make_request(**overrides)


def test_approve_sets_review_and_ledger_fields() -> None:
    request = make_request()

    request.approve("mom", ledger_entry_id="entry-1", notes="  Enjoy ", when=NOON)

    assert request.status is RequestStatus.APPROVED
    assert request.reviewed_by == "mom"
    assert request.reviewed_at == NOON
    assert request.review_notes == "Enjoy"
    assert request.ledger_entry_id == "entry-1"
    assert request.decided_at == NOON


def test_auto_approve_leaves_reviewer_empty() -> None:
    request = make_request()

    request.auto_approve("rule-9", ledger_entry_id="entry-2", when=NOON)

    assert request.auto_approved is True
    assert request.auto_approval_rule_id == "rule-9"
    assert request.reviewed_by is None
    assert request.reviewed_at is None


def test_reject_needs_notes() -> None:
    request = make_request()

    with pytest.raises(ValidationError):
        request.reject("dad", notes=" ")
    assert request.is_pending

    request.reject("dad", notes="Maybe next month", when=NOON)
    assert request.status is RequestStatus.REJECTED
    assert request.ledger_entry_id is None


@pytest.mark.parametrize("finish", ["cancel", "expire", "reject", "approve"])
def test_terminal_states_are_final(finish) -> None:
    request = make_request()
    actions = {
        "cancel": lambda: request.cancel(when=NOON),
        "expire": lambda: request.expire(when=NOON),
        "reject": lambda: request.reject("dad", notes="No", when=NOON),
        "approve": lambda: request.approve("mom", ledger_entry_id="e", when=NOON),
    }
    actions[finish]()
    assert request.status.is_terminal

    for action in actions.values():
        with pytest.raises(InvalidStateError):
            action()


def test_overdue_only_while_pending() -> None:
    request = make_request(expires_at=NOON + timedelta(hours=1))

    assert not request.is_overdue(NOON + timedelta(hours=1))
    assert request.is_overdue(NOON + timedelta(hours=1, seconds=1))
    request.cancel(when=NOON)
    assert not request.is_overdue(NOON + timedelta(days=1))


def test_copy_is_independent() -> None:
    request = make_request()
    clone = request.copy()

    clone.cancel()

    assert request.is_pending
    assert clone.request_id == request.request_id


def test_rule_defaults_and_scope() -> None:
    rule = ApprovalRule(family_id="smiths", max_amount="10", category="snacks")

    assert rule.max_amount == Decimal("10.00")
    assert rule.max_per_day == 1
    assert rule.max_daily_total == Decimal("0.00")
    assert rule.category is SpendingCategory.SNACKS
    assert rule.applies_on(NOON)
    assert rule.covers(make_request(category=SpendingCategory.SNACKS))
    assert not rule.covers(make_request(category=SpendingCategory.TOYS))
    assert not rule.covers(make_request(category=SpendingCategory.SNACKS, family_id="joneses"))


def test_rule_weekday_and_child_filters() -> None:
    rule = ApprovalRule(family_id="smiths", max_amount=5, child_id="ben", days_of_week=[0, 2])

    assert rule.days_of_week == frozenset({Weekday.MONDAY, Weekday.WEDNESDAY})
    assert rule.applies_on(NOON)
    assert not rule.applies_on(NOON + timedelta(days=1))
    assert not rule.covers(make_request())
    assert rule.covers(make_request(child_id="ben"))


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_amount": 0},
        {"max_amount": "-2"},
        {"max_per_day": 0},
        {"max_per_day": True},
        {"max_daily_total": "-1"},
        {"days_of_week": [7]},
        {"family_id": ""},
    ],
)
def test_rule_validation(overrides) -> None:
    fields = {"family_id": "smiths", "max_amount": 5}
    fields.update(overrides)

    with pytest.raises(ValidationError):
        ApprovalRule(**fields)


def test_statistics_rate_rounding() -> None:
    stats = RequestStatistics(
        child_id="ava",
        since=None,
        total=3,
        counts={RequestStatus.APPROVED: 1, RequestStatus.PENDING: 2},
        approved_amount=Decimal("4.00"),
        rejected_amount=Decimal("0.00"),
        auto_approved_count=0,
        average_decision_hours=None,
    )

    assert stats.approval_rate == Decimal("0.3333")
    assert stats.count(RequestStatus.EXPIRED) == 0
    assert stats.as_dict()["counts"] == {
        "pending": 2,
        "approved": 1,
        "rejected": 0,
        "cancelled": 0,
        "expired": 0,
    }
