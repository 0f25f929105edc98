from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class RequestKind(str, Enum):
    ADVANCE = "advance"
    REIMBURSEMENT = "reimbursement"
    AIRFARE = "airfare"
    LODGING = "lodging"


class Status(str, Enum):
    REQUESTED = "requested"
    DIRECTORATE_APPROVED = "directorate_approved"
    PAID = "paid"
    ACCOUNTABILITY_REPORTED = "accountability_reported"
    CONCLUDED = "concluded"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RequestDraft:
    kind: RequestKind
    requester: str
    purpose: Optional[str] = None
    amount: Any = None
    destination: Optional[str] = None
    origin: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    directorate: Optional[str] = None
    cost_center: Optional[str] = None
    justification: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class ExpenseRequest:
    id: int
    kind: RequestKind
    requester: str
    status: Status
    purpose: Optional[str]
    amount: Optional[Decimal]
    destination: Optional[str] = None
    origin: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    directorate: Optional[str] = None
    cost_center: Optional[str] = None
    justification: Optional[str] = None
    notes: Optional[str] = None
    approved_by_directorate: bool = False
    approved_by_finance: bool = False
    payment_method: Optional[str] = None
    payment_date: Optional[date] = None
    rejection_reason: Optional[str] = None
    last_updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


@dataclass(frozen=True)
class ExpenseItem:
    category: Optional[str]
    amount: Any
    expense_date: Any
    description: Optional[str] = None
    receipt_ref: Optional[str] = None
    position: int = 0
    id: Optional[int] = None
    report_id: Optional[int] = None


@dataclass(frozen=True)
class AccountabilityReport:
    id: int
    request_id: int
    total_spent: Decimal
    amount_to_return: Decimal
    amount_to_bill: Decimal
    notes: Optional[str] = None
    items: tuple[ExpenseItem, ...] = field(default_factory=tuple)
    submitted_at: Optional[datetime] = None
