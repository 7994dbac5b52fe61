"""FastAPI frontend for the KidSpend request workflow.

Children submit spending requests, parents approve or reject them and manage
auto-approval rules.  Callers are identified by ``request.session["user_id"]``,
which an upstream sign-in flow is expected to populate.  The module is
import-compatible with ``uvicorn kidspend.webapp:app`` deployments.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Type

from fastapi import FastAPI, Form, Query, Request
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from ..api import ApiExporter
from ..exceptions import (
    InsufficientFundsError,
    InvalidStateError,
    KidSpendError,
    LedgerInconsistencyError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from ..models import ApprovalRule, NewSpendingRequest, RequestPriority, RequestStatus, SpendingCategory
from ..notifications import NotificationCenter
from ..ops import StructuredLogger
from ..service import RequestService
from .config import LOG_FILE, REQUEST_EXPIRY, SESSION_SECRET
from .persistence import SqlFamilyDirectory, SqlLedger, SqlRequestStore, SqlRuleStore

# ---------------------------------------------------------------------------
# FastAPI application setup
# ---------------------------------------------------------------------------
app = FastAPI(title="KidSpend")
app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET,
    same_site="lax",
    max_age=None,
)

notifications = NotificationCenter()
exporter = ApiExporter()
_service: Optional[RequestService] = None


def get_service() -> RequestService:
    global _service
    if _service is None:
        _service = RequestService(
            requests=SqlRequestStore(),
            rules=SqlRuleStore(),
            ledger=SqlLedger(),
            family=SqlFamilyDirectory(),
            notifier=notifications,
            logger=StructuredLogger(path=LOG_FILE),
            expiry=REQUEST_EXPIRY,
        )
    return _service


def current_user(request: Request) -> str:
    user_id = request.session.get("user_id")
    if not user_id:
        raise UnauthorizedError("Sign in first.")
    return str(user_id)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
_STATUS_CODES: Dict[Type[KidSpendError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    UnauthorizedError: 403,
    InvalidStateError: 409,
    InsufficientFundsError: 409,
    LedgerInconsistencyError: 500,
}


def error_response(exc: KidSpendError) -> JSONResponse:
    status_code = 400
    for klass in type(exc).__mro__:
        if klass in _STATUS_CODES:
            status_code = _STATUS_CODES[klass]
            break
    payload: Dict[str, object] = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, InsufficientFundsError):
        payload["balance"] = str(exc.balance) if exc.balance is not None else None
        payload["requested"] = str(exc.requested) if exc.requested is not None else None
    return JSONResponse(payload, status_code=status_code)


@app.exception_handler(KidSpendError)
async def kidspend_error_handler(request: Request, exc: KidSpendError) -> JSONResponse:
    return error_response(exc)


def _parse_enum(enum_type, value: str, field_name: str):
    try:
        return enum_type(value.strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown {field_name} '{value}'.") from exc


def _parse_days(value: str) -> frozenset[int]:
    try:
        return frozenset(int(part) for part in value.split(",") if part.strip())
    except ValueError as exc:
        raise ValidationError("days_of_week must be comma separated numbers.") from exc


def _parse_since(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        # fromisoformat only accepts a trailing "Z" from Python 3.11 on.
        if value.endswith(("Z", "z")):
            value = value[:-1] + "+00:00"
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError("since must be an ISO-8601 timestamp.") from exc


# ---------------------------------------------------------------------------
# Child routes
# ---------------------------------------------------------------------------
@app.post("/requests")
def create_request(
    request: Request,
    amount: str = Form(...),
    description: str = Form(...),
    category: str = Form(SpendingCategory.OTHER.value),
    merchant: str = Form(""),
    reason: str = Form(""),
    priority: str = Form(RequestPriority.NORMAL.value),
) -> JSONResponse:
    child_id = current_user(request)
    dto = NewSpendingRequest(
        amount=amount,
        description=description,
        category=_parse_enum(SpendingCategory, category, "category"),
        merchant=merchant or None,
        reason=reason or None,
        priority=_parse_enum(RequestPriority, priority, "priority"),
    )
    created = get_service().create(dto, child_id)
    return JSONResponse(exporter.request_snapshot(created), status_code=201)


@app.post("/requests/{request_id}/cancel")
def cancel_request(request: Request, request_id: str) -> JSONResponse:
    cancelled = get_service().cancel(request_id, current_user(request))
    return JSONResponse(exporter.request_snapshot(cancelled))


@app.get("/requests/{request_id}")
def get_request(request: Request, request_id: str) -> JSONResponse:
    found = get_service().get_request(request_id, requested_by=current_user(request))
    return JSONResponse(exporter.request_snapshot(found))


@app.get("/children/{child_id}/requests")
def child_requests(request: Request, child_id: str, status: Optional[str] = Query(None)) -> JSONResponse:
    status_filter = _parse_enum(RequestStatus, status, "status") if status else None
    items = get_service().get_for_child(child_id, status_filter, requested_by=current_user(request))
    return JSONResponse([exporter.request_snapshot(item) for item in items])


@app.get("/children/{child_id}/requests/statistics")
def child_statistics(request: Request, child_id: str, since: Optional[str] = Query(None)) -> JSONResponse:
    stats = get_service().get_statistics(child_id, _parse_since(since), requested_by=current_user(request))
    return JSONResponse(exporter.statistics_snapshot(stats))


# ---------------------------------------------------------------------------
# Parent routes
# ---------------------------------------------------------------------------
@app.get("/families/{family_id}/requests/pending")
def family_pending(request: Request, family_id: str) -> JSONResponse:
    items = get_service().get_pending_for_family(family_id, requested_by=current_user(request))
    return JSONResponse([exporter.request_snapshot(item) for item in items])


@app.post("/requests/{request_id}/approve")
def approve_request(request: Request, request_id: str, review_notes: str = Form("")) -> JSONResponse:
    approved = get_service().approve(request_id, current_user(request), review_notes or None)
    return JSONResponse(exporter.request_snapshot(approved))


@app.post("/requests/{request_id}/reject")
def reject_request(request: Request, request_id: str, review_notes: str = Form("")) -> JSONResponse:
    rejected = get_service().reject(request_id, current_user(request), review_notes)
    return JSONResponse(exporter.request_snapshot(rejected))


@app.get("/families/{family_id}/rules")
def family_rules(request: Request, family_id: str) -> JSONResponse:
    rules = get_service().list_rules(family_id, requested_by=current_user(request))
    return JSONResponse([exporter.rule_snapshot(rule) for rule in rules])


def _rule_from_form(
    family_id: str,
    *,
    max_amount: str,
    child_id: str,
    category: str,
    max_per_day: int,
    max_daily_total: str,
    days_of_week: str,
    is_active: bool,
    rule_id: Optional[str] = None,
) -> ApprovalRule:
    fields = dict(
        family_id=family_id,
        max_amount=max_amount,
        child_id=child_id or None,
        category=_parse_enum(SpendingCategory, category, "category") if category else None,
        max_per_day=max_per_day,
        max_daily_total=max_daily_total,
        days_of_week=_parse_days(days_of_week),
        is_active=is_active,
    )
    if rule_id is not None:
        fields["rule_id"] = rule_id
    return ApprovalRule(**fields)


@app.post("/families/{family_id}/rules")
def create_rule(
    request: Request,
    family_id: str,
    max_amount: str = Form(...),
    child_id: str = Form(""),
    category: str = Form(""),
    max_per_day: int = Form(1),
    max_daily_total: str = Form("0"),
    days_of_week: str = Form(""),
    is_active: bool = Form(True),
) -> JSONResponse:
    parent_id = current_user(request)
    rule = _rule_from_form(
        family_id,
        max_amount=max_amount,
        child_id=child_id,
        category=category,
        max_per_day=max_per_day,
        max_daily_total=max_daily_total,
        days_of_week=days_of_week,
        is_active=is_active,
    )
    saved = get_service().save_rule(rule, parent_id)
    return JSONResponse(exporter.rule_snapshot(saved), status_code=201)


@app.post("/rules/{rule_id}")
def update_rule(
    request: Request,
    rule_id: str,
    max_amount: str = Form(...),
    child_id: str = Form(""),
    category: str = Form(""),
    max_per_day: int = Form(1),
    max_daily_total: str = Form("0"),
    days_of_week: str = Form(""),
    is_active: bool = Form(True),
) -> JSONResponse:
    parent_id = current_user(request)
    service = get_service()
    existing = service.get_rule(rule_id, requested_by=parent_id)
    rule = _rule_from_form(
        existing.family_id,
        rule_id=existing.rule_id,
        max_amount=max_amount,
        child_id=child_id,
        category=category,
        max_per_day=max_per_day,
        max_daily_total=max_daily_total,
        days_of_week=days_of_week,
        is_active=is_active,
    )
    saved = service.save_rule(rule, parent_id)
    return JSONResponse(exporter.rule_snapshot(saved))


@app.delete("/rules/{rule_id}")
def delete_rule(request: Request, rule_id: str) -> JSONResponse:
    get_service().delete_rule(rule_id, current_user(request))
    return JSONResponse({"deleted": rule_id})


@app.get("/notifications")
def my_notifications(request: Request) -> JSONResponse:
    user_id = current_user(request)
    return JSONResponse([item.as_dict() for item in notifications.pop_for(user_id)])


# ---------------------------------------------------------------------------
# Scheduler hook
# ---------------------------------------------------------------------------
@app.post("/maintenance/expire")
def expire_requests() -> JSONResponse:
    expired = get_service().expire_stale()
    return JSONResponse({"expired": [item.request_id for item in expired]})


__all__ = [
    "app",
    "current_user",
    "error_response",
    "get_service",
    "notifications",
]
