from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from .errors import FieldError, InvalidTransitionError, ValidationError
from .models import ExpenseItem, RequestDraft, RequestKind, Status


ZERO = Decimal("0.00")

DEFAULT_CATEGORIES = (
    "Alimentação",
    "Business Center",
    "Combustível",
    "Estacionamento",
    "Fotocópias",
    "Hospedagem",
    "Passagem Internacional",
    "Táxi",
    "Telefone",
    "Outros",
)

DEFAULT_LABELS: dict[Status, str] = {
    Status.REQUESTED: "Solicitado",
    Status.DIRECTORATE_APPROVED: "AprovadoDiretoria",
    Status.PAID: "Pago",
    Status.ACCOUNTABILITY_REPORTED: "PrestacaoEnviada",
    Status.CONCLUDED: "Concluído",
    Status.REJECTED: "Rejeitado",
}


class Action(str, Enum):
    APPROVE_DIRECTORATE = "approve_directorate"
    APPROVE_FINANCE = "approve_finance"
    REJECT = "reject"
    REPORT_ACCOUNTABILITY = "report_accountability"
    CONCLUDE = "conclude"


# action -> (allowed source statuses, target status)
TRANSITIONS: dict[Action, tuple[frozenset[Status], Status]] = {
    Action.APPROVE_DIRECTORATE: (frozenset({Status.REQUESTED}), Status.DIRECTORATE_APPROVED),
    Action.APPROVE_FINANCE: (frozenset({Status.DIRECTORATE_APPROVED}), Status.PAID),
    Action.REJECT: (frozenset({Status.REQUESTED, Status.DIRECTORATE_APPROVED}), Status.REJECTED),
    Action.REPORT_ACCOUNTABILITY: (frozenset({Status.PAID}), Status.ACCOUNTABILITY_REPORTED),
    Action.CONCLUDE: (frozenset({Status.ACCOUNTABILITY_REPORTED}), Status.CONCLUDED),
}

# Statuses in which the requester may still correct or withdraw a request.
EDITABLE = frozenset({Status.REQUESTED, Status.REJECTED})

MAX_AMOUNT = Decimal("999999999999.99")


@dataclass(frozen=True)
class KindPolicy:
    """Everything that differs between request kinds."""

    kind: RequestKind
    required_fields: tuple[str, ...]
    amount_required: bool
    accountable: bool
    receipt_required: bool = False
    labels: Mapping[Status, str] = field(default_factory=dict)

    def label(self, status: Status) -> str:
        return self.labels.get(status, DEFAULT_LABELS[status])

    def sources(self, action: Action) -> frozenset[Status]:
        sources, _ = TRANSITIONS[action]
        if not self.accountable:
            # Airfare and lodging have no accountability stage and close straight from paid.
            if action is Action.REPORT_ACCOUNTABILITY:
                return frozenset()
            if action is Action.CONCLUDE:
                return frozenset({Status.PAID})
        return sources

    def next_status(self, action: Action, current: Status, request_id: int) -> Status:
        if current not in self.sources(action):
            raise InvalidTransitionError(request_id, current.value, action.value)
        return TRANSITIONS[action][1]


DEFAULT_POLICIES: dict[RequestKind, KindPolicy] = {
    RequestKind.ADVANCE: KindPolicy(
        kind=RequestKind.ADVANCE,
        required_fields=("purpose", "destination", "start_date", "end_date", "directorate"),
        amount_required=True,
        accountable=True,
        receipt_required=False,
    ),
    RequestKind.REIMBURSEMENT: KindPolicy(
        kind=RequestKind.REIMBURSEMENT,
        required_fields=("purpose", "cost_center", "justification"),
        amount_required=True,
        accountable=True,
        receipt_required=True,
    ),
    RequestKind.AIRFARE: KindPolicy(
        kind=RequestKind.AIRFARE,
        required_fields=("purpose", "origin", "destination", "start_date"),
        amount_required=False,
        accountable=False,
        labels={Status.PAID: "Emitido", Status.CONCLUDED: "Finalizado"},
    ),
    RequestKind.LODGING: KindPolicy(
        kind=RequestKind.LODGING,
        required_fields=("purpose", "destination", "start_date", "end_date"),
        amount_required=False,
        accountable=False,
        labels={Status.PAID: "Confirmado", Status.CONCLUDED: "Finalizado"},
    ),
}


@dataclass(frozen=True)
class Settlement:
    requested_amount: Decimal
    total_spent: Decimal
    amount_to_return: Decimal
    amount_to_bill: Decimal


def compute_settlement(requested_amount: Decimal, amounts: Iterable[Decimal]) -> Settlement:
    requested = money(requested_amount)
    total = money(sum(amounts, ZERO))
    return Settlement(
        requested_amount=requested,
        total_spent=total,
        amount_to_return=max(ZERO, requested - total),
        amount_to_bill=max(ZERO, total - requested),
    )


def clean_draft(draft: RequestDraft, policy: KindPolicy) -> RequestDraft:
    """Return a normalized copy of ``draft`` or raise with every invalid field."""
    errors: list[FieldError] = []
    changes: dict[str, Any] = {}

    if is_blank(draft.requester):
        errors.append(FieldError("requester", "is required"))

    for name in ("purpose", "destination", "origin", "directorate", "cost_center", "justification", "notes"):
        value = getattr(draft, name)
        if isinstance(value, str):
            changes[name] = value.strip() or None

    for name in ("start_date", "end_date"):
        raw = getattr(draft, name)
        if is_blank(raw):
            changes[name] = None
            continue
        parsed = parse_date(raw)
        if parsed is None:
            errors.append(FieldError(name, "must be a valid date"))
        changes[name] = parsed

    for name in policy.required_fields:
        if changes.get(name, getattr(draft, name)) is None and not _reported(errors, name):
            errors.append(FieldError(name, "is required"))

    if is_blank(draft.amount):
        changes["amount"] = None
        if policy.amount_required:
            errors.append(FieldError("amount", "is required"))
    else:
        amount = parse_amount(draft.amount)
        problem = amount_problem(amount)
        if problem:
            errors.append(FieldError("amount", problem))
        changes["amount"] = amount

    start, end = changes.get("start_date"), changes.get("end_date")
    if start is not None and end is not None and end < start:
        errors.append(FieldError("end_date", "must not be before start_date"))

    if errors:
        raise ValidationError(errors)
    return replace(draft, requester=draft.requester.strip(), **changes)


def clean_items(items: Sequence[ExpenseItem], receipt_required: bool) -> tuple[ExpenseItem, ...]:
    if not items:
        raise ValidationError([FieldError("items", "at least one expense item is required")])

    errors: list[FieldError] = []
    cleaned: list[ExpenseItem] = []
    for index, item in enumerate(items):
        category = item.category.strip() if isinstance(item.category, str) else None
        if not category:
            errors.append(FieldError("category", "is required", index))

        amount = None if is_blank(item.amount) else parse_amount(item.amount)
        problem = amount_problem(amount)
        if problem:
            errors.append(FieldError("amount", problem, index))

        expense_date = None if is_blank(item.expense_date) else parse_date(item.expense_date)
        if expense_date is None:
            errors.append(FieldError("expense_date", "must be a valid date", index))

        receipt_ref = item.receipt_ref.strip() if isinstance(item.receipt_ref, str) else None
        if receipt_required and not receipt_ref:
            errors.append(FieldError("receipt_ref", "is required", index))

        description = item.description.strip() if isinstance(item.description, str) else None
        cleaned.append(
            replace(
                item,
                category=category,
                amount=amount,
                expense_date=expense_date,
                description=description or None,
                receipt_ref=receipt_ref or None,
                position=index,
            )
        )

    if errors:
        raise ValidationError(errors)
    return tuple(cleaned)


def money(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def parse_amount(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        value = str(value)
    try:
        parsed = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not parsed.is_finite():
        return None
    if abs(parsed) > MAX_AMOUNT:
        # Left unrounded: quantizing this many digits overflows the decimal context.
        return parsed
    try:
        return money(parsed)
    except InvalidOperation:
        return None


def amount_problem(amount: Decimal | None) -> str | None:
    if amount is None:
        return "must be a decimal number"
    if amount <= 0:
        return "must be greater than zero"
    if amount > MAX_AMOUNT:
        return "is too large"
    return None


def parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _reported(errors: list[FieldError], name: str) -> bool:
    return any(error.field == name for error in errors)
