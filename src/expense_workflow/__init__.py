from .core import Action, KindPolicy, Settlement, compute_settlement
from .errors import (
    ConflictError,
    FieldError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
    WorkflowError,
)
from .models import AccountabilityReport, ExpenseItem, ExpenseRequest, RequestDraft, RequestKind, Status
from .services import (
    AccountabilityService,
    CategoryService,
    CostCenterService,
    DirectorateService,
    RequestLifecycleService,
)
from .settings import WorkflowSettings, load_settings
from .ui import render_settlement_summary, render_validation_errors

__all__ = [
    "AccountabilityReport",
    "AccountabilityService",
    "Action",
    "CategoryService",
    "ConflictError",
    "CostCenterService",
    "DirectorateService",
    "ExpenseItem",
    "ExpenseRequest",
    "FieldError",
    "InvalidTransitionError",
    "KindPolicy",
    "NotFoundError",
    "PermissionDeniedError",
    "RequestDraft",
    "RequestKind",
    "RequestLifecycleService",
    "Settlement",
    "Status",
    "StorageError",
    "ValidationError",
    "WorkflowError",
    "WorkflowSettings",
    "compute_settlement",
    "load_settings",
    "render_settlement_summary",
    "render_validation_errors",
]
