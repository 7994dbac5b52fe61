"""KidSpend web application package (FastAPI transport over SQLModel storage)."""
from __future__ import annotations

from . import persistence
from .application import app, current_user, error_response, get_service, notifications
from .persistence import (
    ApprovalRuleRecord,
    ChildAccount,
    FamilyParent,
    LedgerEvent,
    SpendingRequestRecord,
    SqlFamilyDirectory,
    SqlLedger,
    SqlRequestStore,
    SqlRuleStore,
    create_db_and_tables,
    engine,
)

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
    "app",
    "create_db_and_tables",
    "current_user",
    "engine",
    "error_response",
    "get_service",
    "notifications",
    "persistence",
]
