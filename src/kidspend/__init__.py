"""KidSpend package: spending requests, parent approvals and auto-approval rules."""

from .exceptions import (
    ConcurrencyError,
    InsufficientFundsError,
    InvalidStateError,
    KidSpendError,
    LedgerInconsistencyError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from .family import FamilyDirectory, InMemoryFamilyDirectory
from .ledger import InMemoryLedger, Ledger, LedgerEntry
from .matcher import AutoApprovalResult, RuleMatcher
from .models import (
    ApprovalRule,
    AutoApprovalUsage,
    NewSpendingRequest,
    RequestPriority,
    RequestStatistics,
    RequestStatus,
    SpendingCategory,
    SpendingRequest,
    Weekday,
)
from .notifications import Notification, NotificationCenter, NotificationEvent, Notifier
from .ops import AuditLog, StructuredLogger
from .rules import InMemoryRuleStore, RuleStore
from .service import RequestService
from .store import InMemoryRequestStore, RequestStore

__all__ = [
    "ApprovalRule",
    "AuditLog",
    "AutoApprovalResult",
    "AutoApprovalUsage",
    "ConcurrencyError",
    "FamilyDirectory",
    "InMemoryFamilyDirectory",
    "InMemoryLedger",
    "InMemoryRequestStore",
    "InMemoryRuleStore",
    "InsufficientFundsError",
    "InvalidStateError",
    "KidSpendError",
    "Ledger",
    "LedgerEntry",
    "LedgerInconsistencyError",
    "NewSpendingRequest",
    "NotFoundError",
    "Notification",
    "NotificationCenter",
    "NotificationEvent",
    "Notifier",
    "RequestPriority",
    "RequestService",
    "RequestStatistics",
    "RequestStatus",
    "RequestStore",
    "RuleMatcher",
    "RuleStore",
    "SpendingCategory",
    "SpendingRequest",
    "StructuredLogger",
    "UnauthorizedError",
    "ValidationError",
    "Weekday",
]
