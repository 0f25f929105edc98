from __future__ import annotations

import sys
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

from backend.services.settlement_export import SettlementExportService, read_cells
from expense_workflow.core import DEFAULT_POLICIES, compute_settlement
from expense_workflow.models import AccountabilityReport, ExpenseItem, ExpenseRequest, RequestKind, Status


def sample_payload(service: SettlementExportService) -> dict:
    """Build an export payload for a demo advance that was partly spent."""
    request = ExpenseRequest(
        id=1,
        kind=RequestKind.ADVANCE,
        requester="maria.silva",
        status=Status.ACCOUNTABILITY_REPORTED,
        purpose="Workshop in Recife",
        amount=Decimal("1000.00"),
        destination="Recife",
        start_date=date(2026, 3, 2),
        end_date=date(2026, 3, 5),
        directorate="Operations",
        payment_date=date(2026, 2, 25),
    )
    items = (
        ExpenseItem(category="Hospedagem", amount=Decimal("600.00"), expense_date=date(2026, 3, 2), receipt_ref="NF-1"),
        ExpenseItem(category="Táxi", amount=Decimal("250.00"), expense_date=date(2026, 3, 3), position=1),
    )
    settlement = compute_settlement(request.amount, [item.amount for item in items])
    report = AccountabilityReport(
        id=1,
        request_id=request.id,
        total_spent=settlement.total_spent,
        amount_to_return=settlement.amount_to_return,
        amount_to_bill=settlement.amount_to_bill,
        items=items,
        submitted_at=datetime.now(timezone.utc),
    )
    return service.build_payload(request, report, DEFAULT_POLICIES[RequestKind.ADVANCE])


def main(output_path: Path | str = "artifacts/sample_settlement_export.xlsx") -> int:
    service = SettlementExportService()
    output_path = service.generate_export(sample_payload(service), output_path)

    values = read_cells(output_path, service.get_mandatory_cells(), service.sheet_name)
    missing = [cell for cell, value in values.items() if value in (None, "")]

    if missing:
        print("Verification failed. Missing mandatory values in:", ", ".join(missing))
        return 1

    print(f"Verification passed. Export generated at {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(*sys.argv[1:2]))
