"""Storage for parent-authored auto-approval rules."""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, Optional, Protocol, Sequence

from .exceptions import NotFoundError
from .models import ApprovalRule


class RuleStore(Protocol):
    """Pure data access for :class:`~kidspend.models.ApprovalRule` records.

    Rules come back in store order (insertion order), which is the order the
    matcher evaluates them in.
    """

    def save(self, rule: ApprovalRule) -> ApprovalRule:
        ...

    def get(self, rule_id: str) -> ApprovalRule:
        ...

    def delete(self, rule_id: str) -> None:
        ...

    def list_for_family(self, family_id: str) -> Sequence[ApprovalRule]:
        ...

    def get_active_rules(self, family_id: str, child_id: Optional[str] = None) -> Sequence[ApprovalRule]:
        ...


class InMemoryRuleStore:
    def __init__(self) -> None:
        self._rules: Dict[str, ApprovalRule] = {}
        self._lock = threading.Lock()

    def save(self, rule: ApprovalRule) -> ApprovalRule:
        # Editing keeps the original position; dicts preserve first insertion.
        with self._lock:
            self._rules[rule.rule_id] = replace(rule)
        return rule

    def get(self, rule_id: str) -> ApprovalRule:
        with self._lock:
            try:
                return replace(self._rules[rule_id])
            except KeyError as exc:
                raise NotFoundError(f"Rule '{rule_id}' does not exist.") from exc

    def delete(self, rule_id: str) -> None:
        with self._lock:
            if self._rules.pop(rule_id, None) is None:
                raise NotFoundError(f"Rule '{rule_id}' does not exist.")

    def list_for_family(self, family_id: str) -> Sequence[ApprovalRule]:
        with self._lock:
            return tuple(replace(rule) for rule in self._rules.values() if rule.family_id == family_id)

    def get_active_rules(self, family_id: str, child_id: Optional[str] = None) -> Sequence[ApprovalRule]:
        return tuple(
            rule
            for rule in self.list_for_family(family_id)
            if rule.is_active and (rule.child_id is None or rule.child_id == child_id)
        )


__all__ = ["InMemoryRuleStore", "RuleStore"]
