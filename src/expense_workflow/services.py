from __future__ import annotations

import logging
import sqlite3
from dataclasses import replace
from datetime import date
from typing import Any, Optional, Sequence

from expense_workflow.core import (
    EDITABLE,
    Action,
    clean_draft,
    clean_items,
    compute_settlement,
    is_blank,
    parse_date,
    utc_now,
)
from expense_workflow.db import transaction
from expense_workflow.errors import (
    ConflictError,
    FieldError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from expense_workflow.models import (
    AccountabilityReport,
    ExpenseItem,
    ExpenseRequest,
    RequestDraft,
    RequestKind,
    Status,
)
from expense_workflow.notifications import (
    DIRECTORATE,
    FINANCE,
    REQUESTER,
    LoggingNotifier,
    Notifier,
    WorkflowEvent,
    dispatch,
)
from expense_workflow.repositories import (
    AccountabilityRepository,
    CategoryRepository,
    CostCenterRepository,
    DirectorateRepository,
    NameRepository,
    RequestRepository,
)
from expense_workflow.settings import WorkflowSettings

logger = logging.getLogger(__name__)


class RequestLifecycleService:
    """Submits requests and moves them through directorate and finance approval."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        settings: Optional[WorkflowSettings] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.conn = conn
        self.settings = settings or WorkflowSettings()
        self.notifier = notifier or LoggingNotifier()
        self.requests = RequestRepository(conn)
        self.cost_centers = CostCenterRepository(conn)
        self.directorates = DirectorateRepository(conn)

    def submit(self, draft: RequestDraft, actor: str | None = None) -> ExpenseRequest:
        try:
            kind = RequestKind(draft.kind)
        except ValueError:
            allowed = ", ".join(k.value for k in RequestKind)
            raise ValidationError([FieldError("kind", f"must be one of: {allowed}")]) from None

        cleaned = clean_draft(replace(draft, kind=kind), self.settings.policy(kind))
        with transaction(self.conn):
            request_id = self.requests.create(cleaned, utc_now(), actor or cleaned.requester)
            self._register_names(cleaned)

        request = self.get(request_id)
        logger.info("Submitted %s request %s for %s", kind.value, request.id, request.requester)
        dispatch(self.notifier, WorkflowEvent("submitted", request, (DIRECTORATE,)))
        return request

    def get(self, request_id: int) -> ExpenseRequest:
        request = self.requests.get_by_id(request_id)
        if request is None:
            raise NotFoundError("Request", request_id)
        return request

    def list_requests(
        self,
        kind: RequestKind | str | None = None,
        status: Status | str | None = None,
        requester: str | None = None,
        directorate: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[ExpenseRequest]:
        return self.requests.search(
            kind=RequestKind(kind) if kind else None,
            status=Status(status) if status else None,
            requester=requester,
            directorate=directorate,
            start=start,
            end=end,
        )

    def approve_by_directorate(self, request_id: int, actor: str | None = None) -> ExpenseRequest:
        _, updated = self._transition(
            request_id, Action.APPROVE_DIRECTORATE, {"approved_by_directorate": True}, actor
        )
        dispatch(self.notifier, WorkflowEvent("directorate_approved", updated, (FINANCE, REQUESTER)))
        return updated

    def approve_by_finance(
        self,
        request_id: int,
        payment_method: str | None = None,
        payment_date: Any = None,
        actor: str | None = None,
    ) -> ExpenseRequest:
        self.get(request_id)
        paid_on = date.today()
        if not is_blank(payment_date):
            paid_on = parse_date(payment_date)
            if paid_on is None:
                raise ValidationError([FieldError("payment_date", "must be a valid date")])

        fields = {
            "approved_by_finance": True,
            "payment_method": payment_method.strip() or None if isinstance(payment_method, str) else None,
            "payment_date": paid_on,
        }
        _, updated = self._transition(request_id, Action.APPROVE_FINANCE, fields, actor)
        dispatch(self.notifier, WorkflowEvent("finance_approved", updated, (REQUESTER,)))
        return updated

    def reject(self, request_id: int, reason: str | None = None, actor: str | None = None) -> ExpenseRequest:
        current = self.get(request_id)
        if current.status is Status.REJECTED:
            logger.info("Request %s is already rejected; nothing to do", request_id)
            return current

        reason = reason.strip() or None if isinstance(reason, str) else None
        before, updated = self._transition(request_id, Action.REJECT, {"rejection_reason": reason}, actor)
        rejected_by = DIRECTORATE if before.status is Status.REQUESTED else FINANCE
        dispatch(
            self.notifier,
            WorkflowEvent("rejected", updated, (REQUESTER,), {"rejected_by": rejected_by, "reason": reason}),
        )
        return updated

    def conclude(self, request_id: int, actor: str | None = None) -> ExpenseRequest:
        _, updated = self._transition(request_id, Action.CONCLUDE, {}, actor)
        dispatch(self.notifier, WorkflowEvent("concluded", updated, (REQUESTER,)))
        return updated

    def update(self, request_id: int, draft: RequestDraft, actor: str | None = None) -> ExpenseRequest:
        """Correct the details of a request that is still requested or was rejected.

        Kind and requester are fixed at submission; the values in ``draft`` for
        those two fields are ignored. The status is left as it is.
        """
        current = self.get(request_id)
        self._ensure_owner(current, actor)
        if current.status not in EDITABLE:
            logger.warning("Refused to update request %s in status %s", request_id, current.status.value)
            raise InvalidTransitionError(request_id, current.status.value, "update")
        cleaned = clean_draft(
            replace(draft, kind=current.kind, requester=current.requester), self.settings.policy(current.kind)
        )

        with transaction(self.conn):
            if not self.requests.update_details(request_id, cleaned, EDITABLE, utc_now(), actor):
                status = self.get(request_id).status.value
                logger.warning("Refused to update request %s in status %s", request_id, status)
                raise InvalidTransitionError(request_id, status, "update")
            self._register_names(cleaned)

        logger.info("Updated request %s", request_id)
        return self.get(request_id)

    def withdraw(self, request_id: int, actor: str | None = None) -> ExpenseRequest:
        """Soft-delete a request that never got past the first approval."""
        with transaction(self.conn):
            current = self.get(request_id)
            self._ensure_owner(current, actor)
            if current.status not in EDITABLE or not self.requests.mark_deleted(
                request_id, EDITABLE, utc_now(), actor
            ):
                logger.warning("Refused to withdraw request %s in status %s", request_id, current.status.value)
                raise InvalidTransitionError(request_id, current.status.value, "withdraw")

        logger.info("Withdrew request %s", request_id)
        return self.requests.get_by_id(request_id, include_deleted=True)

    def _ensure_owner(self, request: ExpenseRequest, actor: str | None) -> None:
        # No actor means an in-process caller with no identity to check.
        if actor is None or actor == request.requester or actor in self.settings.administrators:
            return
        logger.warning("%s tried to change request %s owned by %s", actor, request.id, request.requester)
        raise PermissionDeniedError(request.id, actor)

    def _register_names(self, draft: RequestDraft) -> None:
        if draft.directorate:
            self.directorates.add(draft.directorate)
        if draft.cost_center:
            self.cost_centers.add(draft.cost_center)

    def _transition(
        self,
        request_id: int,
        action: Action,
        fields: dict[str, Any],
        actor: str | None,
    ) -> tuple[ExpenseRequest, ExpenseRequest]:
        try:
            with transaction(self.conn):
                current = self.get(request_id)
                policy = self.settings.policy(current.kind)
                target = policy.next_status(action, current.status, current.id)
                changed = self.requests.update_status(
                    request_id, current.status, target, {**fields, "last_updated_by": actor}, utc_now()
                )
                if not changed:
                    raise InvalidTransitionError(request_id, current.status.value, action.value)
        except InvalidTransitionError as exc:
            logger.warning("%s", exc)
            raise

        updated = self.get(request_id)
        logger.info(
            "Request %s moved %s -> %s (%s)",
            request_id,
            policy.label(current.status),
            policy.label(updated.status),
            action.value,
        )
        return current, updated


class AccountabilityService:
    """Settles a paid advance or reimbursement against the expenses actually incurred."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        settings: Optional[WorkflowSettings] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.conn = conn
        self.settings = settings or WorkflowSettings()
        self.notifier = notifier or LoggingNotifier()
        self.requests = RequestRepository(conn)
        self.reports = AccountabilityRepository(conn)
        self.categories = CategoryRepository(conn)

    def reconcile(
        self,
        request_id: int,
        items: Sequence[ExpenseItem],
        notes: str | None = None,
        actor: str | None = None,
    ) -> AccountabilityReport:
        with transaction(self.conn):
            request = self.requests.get_by_id(request_id)
            if request is None:
                raise NotFoundError("Request", request_id)
            if self.reports.exists_for_request(request_id):
                raise ConflictError(f"Request {request_id} already has an accountability report")

            policy = self.settings.policy(request.kind)
            target = policy.next_status(Action.REPORT_ACCOUNTABILITY, request.status, request.id)
            if self.settings.conclude_on_reconcile:
                target = Status.CONCLUDED

            cleaned = clean_items(items, policy.receipt_required)
            settlement = compute_settlement(request.amount, [item.amount for item in cleaned])
            now = utc_now()

            report_id = self.reports.create_report(
                request_id, settlement, notes.strip() or None if isinstance(notes, str) else None, now
            )
            for item in cleaned:
                self.reports.create_item(report_id, item)
            for category in dict.fromkeys(item.category for item in cleaned):
                self.categories.add(category)

            if not self.requests.update_status(
                request_id, request.status, target, {"last_updated_by": actor}, now
            ):
                raise InvalidTransitionError(request_id, request.status.value, Action.REPORT_ACCOUNTABILITY.value)

        report = self.get_report(request_id)
        logger.info(
            "Reconciled request %s: spent %s, to return %s, to bill %s",
            request_id,
            report.total_spent,
            report.amount_to_return,
            report.amount_to_bill,
        )
        updated = self.requests.get_by_id(request_id)
        dispatch(
            self.notifier,
            WorkflowEvent(
                "accountability_reported",
                updated,
                (FINANCE,),
                {
                    "total_spent": str(report.total_spent),
                    "amount_to_return": str(report.amount_to_return),
                    "amount_to_bill": str(report.amount_to_bill),
                },
            ),
        )
        return report

    def get_report(self, request_id: int) -> AccountabilityReport:
        report = self.reports.get_by_request(request_id)
        if report is None:
            raise NotFoundError("Accountability report for request", request_id)
        return report


class NameRegistryService:
    """Configured names merged with the ones stored so far, deduplicated ignoring case."""

    repository_class: type[NameRepository] = NameRepository
    settings_key = ""
    label = ""

    def __init__(self, conn: sqlite3.Connection, settings: Optional[WorkflowSettings] = None):
        self.conn = conn
        self.settings = settings or WorkflowSettings()
        self.names = self.repository_class(conn)

    def list_names(self) -> list[str]:
        merged: dict[str, str] = {}
        for name in [*getattr(self.settings, self.settings_key), *self.names.list_names()]:
            merged.setdefault(name.casefold(), name)
        return sorted(merged.values(), key=str.casefold)

    def add(self, name: str) -> str:
        if is_blank(name):
            raise ValidationError([FieldError("name", "is required")])
        name = name.strip()
        with transaction(self.conn):
            if self.names.add(name):
                logger.info("Added %s %s", self.label, name)
        return name


class CategoryService(NameRegistryService):
    repository_class = CategoryRepository
    settings_key = "categories"
    label = "expense category"


class CostCenterService(NameRegistryService):
    repository_class = CostCenterRepository
    settings_key = "cost_centers"
    label = "cost center"


class DirectorateService(NameRegistryService):
    repository_class = DirectorateRepository
    settings_key = "directorates"
    label = "directorate"
