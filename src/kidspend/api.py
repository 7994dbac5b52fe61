"""Serialisation helpers for exposing KidSpend objects over an API."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from .models import ApprovalRule, RequestStatistics, SpendingRequest


def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment else None


class ApiExporter:
    """Convert KidSpend data structures to JSON friendly dictionaries."""

    def request_snapshot(self, request: SpendingRequest) -> Dict[str, object]:
        return {
            "id": request.request_id,
            "child_id": request.child_id,
            "family_id": request.family_id,
            "amount": str(request.amount),
            "category": request.category.value,
            "description": request.description,
            "merchant": request.merchant,
            "reason": request.reason,
            "priority": request.priority.value,
            "status": request.status.value,
            "requested_at": _iso(request.requested_at),
            "expires_at": _iso(request.expires_at),
            "reviewed_at": _iso(request.reviewed_at),
            "reviewed_by": request.reviewed_by,
            "review_notes": request.review_notes,
            "ledger_entry_id": request.ledger_entry_id,
            "auto_approved": request.auto_approved,
        }

    def rule_snapshot(self, rule: ApprovalRule) -> Dict[str, object]:
        return {
            "id": rule.rule_id,
            "family_id": rule.family_id,
            "child_id": rule.child_id,
            "max_amount": str(rule.max_amount),
            "category": rule.category.value if rule.category else None,
            "max_per_day": rule.max_per_day,
            "max_daily_total": str(rule.max_daily_total),
            "days_of_week": sorted(int(day) for day in rule.days_of_week),
            "is_active": rule.is_active,
        }

    def statistics_snapshot(self, stats: RequestStatistics) -> Dict[str, object]:
        return stats.as_dict()


__all__ = ["ApiExporter"]
