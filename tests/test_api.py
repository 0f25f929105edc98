import sqlite3
import tempfile

import pytest
from fastapi.testclient import TestClient

from backend.app.main import app, get_notifier
from expense_workflow.notifications import RecordingNotifier

ADVANCE = {
    "kind": "advance",
    "requester": "maria.silva",
    "purpose": "Workshop in Recife",
    "amount": "1000.00",
    "destination": "Recife",
    "start_date": "2026-03-02",
    "end_date": "2026-03-05",
    "directorate": "Operations",
}


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(tmp_path, monkeypatch, notifier):
    monkeypatch.setenv("EXPENSE_WORKFLOW_DB", str(tmp_path / "workflow.db"))
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def _paid_advance(client):
    created = client.post("/requests", json=ADVANCE, headers={"X-Actor": "maria.silva"}).json()
    client.post(f"/requests/{created['id']}/approve-directorate", headers={"X-Actor": "director"})
    client.post(f"/requests/{created['id']}/approve-finance", json={"payment_method": "pix"})
    return created["id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_full_advance_flow(client, notifier):
    response = client.post("/requests", json=ADVANCE, headers={"X-Actor": "maria.silva"})
    assert response.status_code == 201
    request_id = response.json()["id"]
    assert response.json()["status"] == "requested"

    approved = client.post(f"/requests/{request_id}/approve-directorate", headers={"X-Actor": "director"})
    assert approved.status_code == 200
    assert approved.json()["last_updated_by"] == "director"

    paid = client.post(
        f"/requests/{request_id}/approve-finance", json={"payment_method": "pix", "payment_date": "2026-02-27"}
    )
    assert paid.json()["status"] == "paid"
    assert paid.json()["payment_date"] == "2026-02-27"

    reported = client.post(
        f"/requests/{request_id}/accountability",
        json={
            "items": [
                {"category": "Hospedagem", "amount": "600", "expense_date": "2026-03-02"},
                {"category": "Táxi", "amount": 250, "expense_date": "2026-03-03"},
            ]
        },
    )
    assert reported.status_code == 201
    body = reported.json()
    assert body["total_spent"] == 850
    assert body["amount_to_return"] == 150
    assert body["amount_to_bill"] == 0
    assert len(body["items"]) == 2

    assert client.get(f"/requests/{request_id}").json()["status"] == "accountability_reported"
    assert client.get(f"/requests/{request_id}/accountability").json()["id"] == body["id"]
    assert client.post(f"/requests/{request_id}/conclude").json()["status"] == "concluded"
    assert notifier.names() == [
        "submitted",
        "directorate_approved",
        "finance_approved",
        "accountability_reported",
        "concluded",
    ]


def test_validation_errors_are_listed(client):
    response = client.post("/requests", json={"kind": "advance", "requester": "", "amount": "-1"})

    assert response.status_code == 400
    fields = {detail["field"] for detail in response.json()["details"]}
    assert {"requester", "amount", "purpose", "destination"} <= fields


def test_validation_errors_render_html_for_browsers(client):
    response = client.post(
        "/requests", json={"kind": "reimbursement", "requester": "ana"}, headers={"Accept": "text/html"}
    )

    assert response.status_code == 400
    assert "Validation Summary" in response.text


def test_item_errors_include_index(client):
    request_id = _paid_advance(client)

    response = client.post(
        f"/requests/{request_id}/accountability",
        json={"items": [{"category": "Táxi", "amount": "10", "expense_date": "2026-03-02"}, {"amount": "5"}]},
    )

    assert response.status_code == 400
    details = response.json()["details"]
    assert {"field": "category", "message": "is required", "index": 1} in details
    assert {"field": "expense_date", "message": "must be a valid date", "index": 1} in details


def test_invalid_transition_and_conflict_map_to_409(client):
    request_id = _paid_advance(client)

    rejected = client.post(f"/requests/{request_id}/reject", json={"reason": "too late"})
    assert rejected.status_code == 409
    assert rejected.json()["status"] == "paid"

    items = {"items": [{"category": "Hospedagem", "amount": "1000", "expense_date": "2026-03-02"}]}
    assert client.post(f"/requests/{request_id}/accountability", json=items).status_code == 201
    assert client.post(f"/requests/{request_id}/accountability", json=items).status_code == 409


def test_unknown_request_is_404(client):
    assert client.get("/requests/999").status_code == 404
    assert client.get("/requests/999/accountability").status_code == 404


def test_reject_then_withdraw(client):
    request_id = client.post("/requests", json=ADVANCE).json()["id"]

    first = client.post(f"/requests/{request_id}/reject", json={"reason": "No agenda"})
    again = client.post(f"/requests/{request_id}/reject")
    assert first.json()["status"] == "rejected"
    assert again.status_code == 200
    assert again.json()["rejection_reason"] == "No agenda"

    assert client.delete(f"/requests/{request_id}").status_code == 422
    assert client.delete(f"/requests/{request_id}", headers={"X-Actor": "ana.lima"}).status_code == 403
    withdrawn = client.delete(f"/requests/{request_id}", headers={"X-Actor": "maria.silva"})
    assert withdrawn.status_code == 200
    assert withdrawn.json()["deleted_at"] is not None
    assert client.get(f"/requests/{request_id}").status_code == 404
    assert client.get("/requests").json() == []


def test_list_filters_by_kind(client):
    client.post("/requests", json=ADVANCE)
    client.post(
        "/requests",
        json={
            "kind": "lodging",
            "requester": "ana.lima",
            "purpose": "Conference",
            "destination": "São Paulo",
            "start_date": "2026-04-10",
            "end_date": "2026-04-12",
        },
    )

    lodging = client.get("/requests", params={"kind": "lodging"}).json()
    assert [r["requester"] for r in lodging] == ["ana.lima"]
    assert client.get("/requests", params={"kind": "per_diem"}).status_code == 422


def test_summary_and_export(client, tmp_path, monkeypatch):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    request_id = _paid_advance(client)
    client.post(
        f"/requests/{request_id}/accountability",
        json={"items": [{"category": "Hospedagem", "amount": "1200", "expense_date": "2026-03-02"}]},
    )

    summary = client.get(f"/requests/{request_id}/accountability/summary")
    assert summary.status_code == 200
    assert "Amount to bill: 200.00" in summary.text

    export = client.get(f"/requests/{request_id}/accountability/export.xlsx")
    assert export.status_code == 200
    assert export.headers["content-type"].startswith(
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    )
    assert export.content[:2] == b"PK"
    assert list(scratch.iterdir()) == []


def test_categories_and_reports(client):
    assert client.post("/categories", json={"name": "Pedágio"}).status_code == 201
    assert client.post("/categories", json={"name": " "}).status_code == 400
    assert "Pedágio" in client.get("/categories").json()

    _paid_advance(client)
    stats = client.get("/dashboard/stats").json()
    assert stats["advance"]["count"] == 1
    assert stats["airfare"]["count"] == 0

    reports = client.get("/reports", params={"kind": "advance"}).json()
    assert reports["by_status"]["advance"][0]["label"] == "Pago"
    assert reports["by_category"] == []
    assert reports["monthly"][0]["total_amount"] == 1000


def test_owner_updates_request_details(client):
    request_id = client.post("/requests", json=ADVANCE).json()["id"]
    changes = {**ADVANCE, "purpose": "Workshop in Olinda", "amount": "1200", "kind": "airfare"}

    updated = client.put(f"/requests/{request_id}", json=changes, headers={"X-Actor": "maria.silva"})

    assert updated.status_code == 200
    assert updated.json()["purpose"] == "Workshop in Olinda"
    assert updated.json()["amount"] == 1200
    assert updated.json()["kind"] == "advance"
    assert updated.json()["status"] == "requested"


def test_update_requires_owner_or_administrator(client):
    request_id = client.post("/requests", json=ADVANCE).json()["id"]
    changes = {**ADVANCE, "purpose": "Changed"}

    assert client.put(f"/requests/{request_id}", json=changes).status_code == 422
    denied = client.put(f"/requests/{request_id}", json=changes, headers={"X-Actor": "ana.lima"})
    assert denied.status_code == 403
    assert client.get(f"/requests/{request_id}").json()["purpose"] == "Workshop in Recife"

    by_admin = client.put(f"/requests/{request_id}", json=changes, headers={"X-Actor": "admin"})
    assert by_admin.status_code == 200
    assert by_admin.json()["last_updated_by"] == "admin"


def test_update_after_approval_is_409(client):
    request_id = client.post("/requests", json=ADVANCE).json()["id"]
    client.post(f"/requests/{request_id}/approve-directorate")

    response = client.put(f"/requests/{request_id}", json=ADVANCE, headers={"X-Actor": "maria.silva"})

    assert response.status_code == 409
    assert response.json()["status"] == "directorate_approved"


def test_oversized_amount_is_400(client):
    response = client.post("/requests", json={**ADVANCE, "amount": "1e30"})

    assert response.status_code == 400
    assert {"field": "amount", "message": "is too large", "index": None} in response.json()["details"]


def test_cost_center_and_directorate_registries(client):
    assert "Comercial" in client.get("/cost-centers").json()
    assert client.post("/cost-centers", json={"name": "Jurídico"}).json() == {"name": "Jurídico"}
    assert "Jurídico" in client.get("/cost-centers").json()
    assert client.post("/directorates", json={"name": ""}).status_code == 400

    client.post("/requests", json=ADVANCE)

    assert "Operations" in client.get("/directorates").json()
    assert "Diretoria Executiva" in client.get("/directorates").json()


def test_storage_failure_is_500(client, tmp_path):
    assert client.get("/requests").status_code == 200
    conn = sqlite3.connect(tmp_path / "workflow.db")
    conn.execute(
        "CREATE TRIGGER refuse_requests BEFORE INSERT ON expense_request "
        "BEGIN SELECT RAISE(ABORT, 'database disk image is malformed'); END"
    )
    conn.commit()
    conn.close()

    response = client.post("/requests", json=ADVANCE)

    assert response.status_code == 500
    assert response.json() == {"detail": "Storage failure"}
    assert client.get("/requests").json() == []
