from __future__ import annotations

import logging
import os
import tempfile
from datetime import date
from decimal import Decimal
from functools import lru_cache
import sqlite3
from pathlib import Path
from typing import Iterator, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from backend.services.settlement_export import SettlementExportService
from expense_workflow.db import apply_sqlite_migration, connect_sqlite
from expense_workflow.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
)
from expense_workflow.models import ExpenseItem, RequestDraft, RequestKind, Status
from expense_workflow.notifications import LoggingNotifier, Notifier
from expense_workflow.reports import ReportService
from expense_workflow.services import (
    AccountabilityService,
    CategoryService,
    CostCenterService,
    DirectorateService,
    NameRegistryService,
    RequestLifecycleService,
)
from expense_workflow.settings import WorkflowSettings, load_settings
from expense_workflow.ui import render_settlement_summary, render_validation_errors

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[2]
MIGRATION_PATH = ROOT / "migrations" / "sqlite" / "001_initial_schema.sql"
DEFAULT_CONFIG_PATH = ROOT / "backend" / "config" / "workflow.yaml"

app = FastAPI(title="Expense Workflow API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class RequestUpdate(BaseModel):
    purpose: Optional[str] = None
    amount: Optional[Decimal] = None
    destination: Optional[str] = None
    origin: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    directorate: Optional[str] = None
    cost_center: Optional[str] = None
    justification: Optional[str] = None
    notes: Optional[str] = None


class RequestCreate(RequestUpdate):
    kind: str
    requester: Optional[str] = None


class FinanceApproval(BaseModel):
    payment_method: Optional[str] = None
    payment_date: Optional[date] = None


class Rejection(BaseModel):
    reason: Optional[str] = None


class ExpenseItemIn(BaseModel):
    category: Optional[str] = None
    amount: Optional[Decimal] = None
    expense_date: Optional[date] = None
    description: Optional[str] = None
    receipt_ref: Optional[str] = None


class AccountabilityCreate(BaseModel):
    items: list[ExpenseItemIn] = Field(default_factory=list)
    notes: Optional[str] = None


class NameCreate(BaseModel):
    name: str


@lru_cache(maxsize=None)
def _settings_for(path: str) -> WorkflowSettings:
    return load_settings(path)


def get_settings() -> WorkflowSettings:
    return _settings_for(os.environ.get("EXPENSE_WORKFLOW_CONFIG", str(DEFAULT_CONFIG_PATH)))


def get_connection() -> Iterator[sqlite3.Connection]:
    db_path = Path(os.environ.get("EXPENSE_WORKFLOW_DB", "data/expense_workflow.db"))
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # Sync dependencies and endpoints may run on different worker threads.
    conn = connect_sqlite(db_path, check_same_thread=False)
    try:
        apply_sqlite_migration(conn, MIGRATION_PATH)
        yield conn
    finally:
        conn.close()


def get_notifier() -> Notifier:
    return LoggingNotifier()


def get_lifecycle(
    conn: sqlite3.Connection = Depends(get_connection),
    settings: WorkflowSettings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
) -> RequestLifecycleService:
    return RequestLifecycleService(conn, settings, notifier)


def get_accountability(
    conn: sqlite3.Connection = Depends(get_connection),
    settings: WorkflowSettings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
) -> AccountabilityService:
    return AccountabilityService(conn, settings, notifier)


@app.exception_handler(ValidationError)
def handle_validation_error(request: Request, exc: ValidationError):
    if "text/html" in request.headers.get("accept", ""):
        return HTMLResponse(render_validation_errors(exc), status_code=400)
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "details": [error.to_dict() for error in exc.errors]},
    )


@app.exception_handler(NotFoundError)
def handle_not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
def handle_invalid_transition(request: Request, exc: InvalidTransitionError):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "status": exc.status, "action": exc.action},
    )


@app.exception_handler(ConflictError)
def handle_conflict(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(PermissionDeniedError)
def handle_permission_denied(request: Request, exc: PermissionDeniedError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(StorageError)
def handle_storage_error(request: Request, exc: StorageError):
    logger.exception("Storage failure while handling %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Storage failure"})


@app.post("/requests", status_code=201)
def submit_request(
    payload: RequestCreate,
    service: RequestLifecycleService = Depends(get_lifecycle),
    x_actor: Optional[str] = Header(default=None),
):
    draft = RequestDraft(**payload.model_dump())
    return service.submit(draft, actor=x_actor)


@app.get("/requests")
def list_requests(
    kind: Optional[RequestKind] = None,
    status: Optional[Status] = None,
    requester: Optional[str] = None,
    directorate: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    service: RequestLifecycleService = Depends(get_lifecycle),
):
    return service.list_requests(
        kind=kind, status=status, requester=requester, directorate=directorate, start=start, end=end
    )


@app.get("/requests/{request_id}")
def get_request(request_id: int, service: RequestLifecycleService = Depends(get_lifecycle)):
    return service.get(request_id)


@app.post("/requests/{request_id}/approve-directorate")
def approve_directorate(
    request_id: int,
    service: RequestLifecycleService = Depends(get_lifecycle),
    x_actor: Optional[str] = Header(default=None),
):
    return service.approve_by_directorate(request_id, actor=x_actor)


@app.post("/requests/{request_id}/approve-finance")
def approve_finance(
    request_id: int,
    payload: Optional[FinanceApproval] = None,
    service: RequestLifecycleService = Depends(get_lifecycle),
    x_actor: Optional[str] = Header(default=None),
):
    payload = payload or FinanceApproval()
    return service.approve_by_finance(
        request_id, payment_method=payload.payment_method, payment_date=payload.payment_date, actor=x_actor
    )


@app.post("/requests/{request_id}/reject")
def reject_request(
    request_id: int,
    payload: Optional[Rejection] = None,
    service: RequestLifecycleService = Depends(get_lifecycle),
    x_actor: Optional[str] = Header(default=None),
):
    reason = payload.reason if payload else None
    return service.reject(request_id, reason=reason, actor=x_actor)


@app.post("/requests/{request_id}/conclude")
def conclude_request(
    request_id: int,
    service: RequestLifecycleService = Depends(get_lifecycle),
    x_actor: Optional[str] = Header(default=None),
):
    return service.conclude(request_id, actor=x_actor)


@app.put("/requests/{request_id}")
def update_request(
    request_id: int,
    payload: RequestUpdate,
    x_actor: str = Header(),
    service: RequestLifecycleService = Depends(get_lifecycle),
):
    current = service.get(request_id)
    draft = RequestDraft(kind=current.kind, requester=current.requester, **payload.model_dump())
    return service.update(request_id, draft, actor=x_actor)


@app.delete("/requests/{request_id}")
def withdraw_request(
    request_id: int,
    x_actor: str = Header(),
    service: RequestLifecycleService = Depends(get_lifecycle),
):
    return service.withdraw(request_id, actor=x_actor)


@app.post("/requests/{request_id}/accountability", status_code=201)
def report_accountability(
    request_id: int,
    payload: AccountabilityCreate,
    service: AccountabilityService = Depends(get_accountability),
    x_actor: Optional[str] = Header(default=None),
):
    items = [ExpenseItem(**item.model_dump()) for item in payload.items]
    return service.reconcile(request_id, items, notes=payload.notes, actor=x_actor)


@app.get("/requests/{request_id}/accountability")
def get_accountability_report(request_id: int, service: AccountabilityService = Depends(get_accountability)):
    return service.get_report(request_id)


@app.get("/requests/{request_id}/accountability/summary", response_class=HTMLResponse)
def accountability_summary(
    request_id: int,
    lifecycle: RequestLifecycleService = Depends(get_lifecycle),
    service: AccountabilityService = Depends(get_accountability),
):
    expense_request = lifecycle.get(request_id)
    report = service.get_report(request_id)
    policy = lifecycle.settings.policy(expense_request.kind)
    return HTMLResponse(render_settlement_summary(expense_request, report, policy))


@app.get("/requests/{request_id}/accountability/export.xlsx")
def export_accountability(
    request_id: int,
    background_tasks: BackgroundTasks,
    lifecycle: RequestLifecycleService = Depends(get_lifecycle),
    service: AccountabilityService = Depends(get_accountability),
):
    expense_request = lifecycle.get(request_id)
    report = service.get_report(request_id)
    policy = lifecycle.settings.policy(expense_request.kind)

    exporter = SettlementExportService()
    payload = exporter.build_payload(expense_request, report, policy)
    handle, name = tempfile.mkstemp(prefix=f"settlement-{request_id}-", suffix=".xlsx")
    os.close(handle)
    export_path = exporter.generate_export(payload, name)
    background_tasks.add_task(os.remove, export_path)

    return FileResponse(
        export_path,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        filename=f"settlement-{request_id}.xlsx",
    )


def _add_name_routes(path: str, service_class: type[NameRegistryService]) -> None:
    def list_names(
        conn: sqlite3.Connection = Depends(get_connection),
        settings: WorkflowSettings = Depends(get_settings),
    ):
        return service_class(conn, settings).list_names()

    def add_name(
        payload: NameCreate,
        conn: sqlite3.Connection = Depends(get_connection),
        settings: WorkflowSettings = Depends(get_settings),
    ):
        return {"name": service_class(conn, settings).add(payload.name)}

    app.add_api_route(path, list_names, methods=["GET"], name=f"list_{service_class.settings_key}")
    app.add_api_route(path, add_name, methods=["POST"], status_code=201, name=f"add_{service_class.settings_key}")


_add_name_routes("/categories", CategoryService)
_add_name_routes("/cost-centers", CostCenterService)
_add_name_routes("/directorates", DirectorateService)


@app.get("/dashboard/stats")
def dashboard_stats(
    requester: Optional[str] = None,
    conn: sqlite3.Connection = Depends(get_connection),
    settings: WorkflowSettings = Depends(get_settings),
):
    stats = ReportService(conn, settings).dashboard_stats(requester=requester)
    return {kind.value: totals for kind, totals in stats.items()}


@app.get("/reports")
def reports(
    kind: Optional[RequestKind] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    directorate: Optional[str] = None,
    conn: sqlite3.Connection = Depends(get_connection),
    settings: WorkflowSettings = Depends(get_settings),
):
    service = ReportService(conn, settings)
    kinds = [kind] if kind else list(RequestKind)
    return {
        "by_status": {
            k.value: service.totals_by_status(k, start=start, end=end, directorate=directorate) for k in kinds
        },
        "by_category": service.totals_by_category(start=start, end=end),
        "monthly": service.monthly_totals(start=start, end=end),
    }


@app.get("/health")
def health():
    return {"status": "ok"}
