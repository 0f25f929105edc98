from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from expense_workflow.db import apply_sqlite_migration, connect_sqlite
from expense_workflow.models import RequestDraft, RequestKind
from expense_workflow.notifications import RecordingNotifier
from expense_workflow.services import AccountabilityService, RequestLifecycleService

MIGRATION_PATH = Path(__file__).resolve().parents[1] / "migrations" / "sqlite" / "001_initial_schema.sql"

DRAFT_FIELDS = {
    RequestKind.ADVANCE: dict(
        purpose="Workshop in Recife",
        destination="Recife",
        start_date=date(2026, 3, 2),
        end_date=date(2026, 3, 5),
        directorate="Operations",
    ),
    RequestKind.REIMBURSEMENT: dict(
        purpose="Client dinner",
        cost_center="CC-100",
        justification="Quarterly review with the client",
    ),
    RequestKind.AIRFARE: dict(
        purpose="Conference",
        origin="Brasília",
        destination="São Paulo",
        start_date=date(2026, 4, 10),
    ),
    RequestKind.LODGING: dict(
        purpose="Conference",
        destination="São Paulo",
        start_date=date(2026, 4, 10),
        end_date=date(2026, 4, 12),
    ),
}


@pytest.fixture
def conn():
    connection = connect_sqlite()
    apply_sqlite_migration(connection, MIGRATION_PATH)
    yield connection
    connection.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def lifecycle(conn, notifier):
    return RequestLifecycleService(conn, notifier=notifier)


@pytest.fixture
def accountability(conn, notifier):
    return AccountabilityService(conn, notifier=notifier)


@pytest.fixture
def make_draft():
    def _make(kind=RequestKind.ADVANCE, requester="maria.silva", amount=Decimal("1000.00"), **overrides):
        fields = {**DRAFT_FIELDS[RequestKind(kind)], **overrides}
        return RequestDraft(kind=kind, requester=requester, amount=amount, **fields)

    return _make


@pytest.fixture
def paid_request(lifecycle, make_draft):
    def _paid(kind=RequestKind.ADVANCE, **kwargs):
        request = lifecycle.submit(make_draft(kind, **kwargs))
        lifecycle.approve_by_directorate(request.id, actor="director")
        return lifecycle.approve_by_finance(request.id, payment_method="transfer", actor="finance")

    return _paid
