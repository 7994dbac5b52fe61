"""Rule evaluation for unattended approval of spending requests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .exceptions import InsufficientFundsError
from .ledger import Ledger
from .models import ApprovalRule, SpendingRequest
from .money import format_currency
from .rules import RuleStore
from .store import RequestStore


@dataclass(slots=True, frozen=True)
class AutoApprovalResult:
    """Outcome of :meth:`RuleMatcher.try_auto_approve`.

    ``rule`` is set whenever a rule matched, even if the debit then failed.
    ``ledger_entry_id`` is only set when money actually moved.
    """

    approved: bool
    rule: Optional[ApprovalRule] = None
    ledger_entry_id: Optional[str] = None
    failure: Optional[str] = None


NO_MATCH = AutoApprovalResult(approved=False)


class RuleMatcher:
    """Pick the first active rule that authorizes a request, then debit for it.

    Rules are evaluated in store order and the first one that passes every
    filter wins.  Daily usage is read from the request store on each attempt,
    so there is no separate counter to keep in sync.
    """

    def __init__(self, rules: RuleStore, requests: RequestStore, ledger: Ledger) -> None:
        self._rules = rules
        self._requests = requests
        self._ledger = ledger

    def find_matching_rule(self, request: SpendingRequest, as_of: datetime) -> Optional[ApprovalRule]:
        candidates = [
            rule
            for rule in self._rules.get_active_rules(request.family_id, request.child_id)
            if rule.covers(request) and rule.applies_on(as_of) and request.amount <= rule.max_amount
        ]
        if not candidates:
            return None
        usage = self._requests.count_and_sum_auto_approved(request.child_id, as_of.date())
        for rule in candidates:
            if usage.count >= rule.max_per_day:
                continue
            if rule.max_daily_total > 0 and usage.total + request.amount > rule.max_daily_total:
                continue
            return rule
        return None

    def try_auto_approve(self, request: SpendingRequest, as_of: datetime) -> AutoApprovalResult:
        """Debit the ledger for ``request`` if a rule allows it.

        ``request`` is only modified when the debit succeeds.  A failed debit
        is reported in the result rather than raised, leaving the request
        pending for a parent.
        """

        if not request.is_pending:
            return NO_MATCH
        rule = self.find_matching_rule(request, as_of)
        if rule is None:
            return NO_MATCH
        memo = f"Auto-approved spending request {request.request_id}: {request.description}"
        try:
            entry_id = self._ledger.debit(request.child_id, request.amount, memo)
        except InsufficientFundsError as exc:
            return AutoApprovalResult(approved=False, rule=rule, failure=str(exc))
        request.auto_approve(rule.rule_id, ledger_entry_id=entry_id, when=as_of)
        return AutoApprovalResult(approved=True, rule=rule, ledger_entry_id=entry_id)


def describe_rule(rule: ApprovalRule) -> str:
    """Short human readable summary used in logs and notifications."""

    scope = rule.category.value if rule.category else "any category"
    parts = [f"up to {format_currency(rule.max_amount)} for {scope}", f"{rule.max_per_day}/day"]
    if rule.max_daily_total > 0:
        parts.append(f"{format_currency(rule.max_daily_total)} daily total")
    return ", ".join(parts)


__all__ = ["AutoApprovalResult", "NO_MATCH", "RuleMatcher", "describe_rule"]
