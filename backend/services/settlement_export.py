from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import yaml
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet

from expense_workflow.core import KindPolicy
from expense_workflow.models import AccountabilityReport, ExpenseRequest

logger = logging.getLogger(__name__)

DEFAULT_MAPPING_PATH = Path(__file__).resolve().parents[1] / "config" / "settlement_mapping.yaml"


@dataclass
class SettlementExportService:
    """Export an accountability report into a workbook laid out by a YAML cell mapping."""

    mapping_path: Path = DEFAULT_MAPPING_PATH
    template_path: Optional[Path] = None
    mapping: dict[str, Any] = field(init=False)

    def __post_init__(self) -> None:
        self.mapping = self._load_mapping(Path(self.mapping_path))

    @staticmethod
    def _load_mapping(mapping_path: Path) -> dict[str, Any]:
        with mapping_path.open("r", encoding="utf-8") as mapping_file:
            loaded = yaml.safe_load(mapping_file)

        if not isinstance(loaded, dict):
            msg = f"Mapping file must contain a dictionary at root: {mapping_path}"
            raise ValueError(msg)

        return loaded

    @property
    def sheet_name(self) -> str:
        return self.mapping["workbook"]["sheet_name"]

    @staticmethod
    def build_payload(request: ExpenseRequest, report: AccountabilityReport, policy: KindPolicy) -> dict[str, Any]:
        return {
            "meta": {
                "request_id": request.id,
                "requester": request.requester,
                "kind": request.kind.value,
                "purpose": request.purpose,
                "requested_amount": request.amount,
                "payment_date": request.payment_date.isoformat() if request.payment_date else None,
                "status": policy.label(request.status),
            },
            "items": [
                {
                    "category": item.category,
                    "description": item.description,
                    "expense_date": item.expense_date.isoformat() if item.expense_date else None,
                    "amount": item.amount,
                    "receipt_ref": item.receipt_ref,
                }
                for item in report.items
            ],
            "totals": {
                "total_spent": report.total_spent,
                "amount_to_return": report.amount_to_return,
                "amount_to_bill": report.amount_to_bill,
            },
        }

    def generate_export(self, payload: dict[str, Any], output_path: Path | str) -> Path:
        """Fill the workbook cells from ``payload`` and save the result to ``output_path``."""
        workbook = self._open_workbook()
        worksheet = workbook[self.sheet_name]

        self._map_section(worksheet, "meta", payload.get("meta", {}))
        self._map_section(worksheet, "totals", payload.get("totals", {}))
        self._map_items(worksheet, payload.get("items", []))

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(output_path)
        logger.info("Wrote settlement export %s", output_path)

        return output_path

    def _open_workbook(self) -> Workbook:
        if self.template_path is not None and Path(self.template_path).exists():
            return load_workbook(self.template_path)

        workbook = Workbook()
        worksheet = workbook.active
        worksheet.title = self.sheet_name
        for cell, label in self.mapping.get("labels", {}).items():
            worksheet[cell] = label
            worksheet[cell].font = Font(bold=True)
        return workbook

    def _map_section(self, sheet: Worksheet, section: str, values: dict[str, Any]) -> None:
        for key, cell in self.mapping[section].items():
            self._write(sheet, cell, values.get(key))

    def _map_items(self, sheet: Worksheet, values: list[dict[str, Any]]) -> None:
        section = self.mapping["items"]
        start_row = int(section["start_row"])
        columns = section["columns"]

        for offset, item in enumerate(values):
            row = start_row + offset
            for key, column in columns.items():
                self._write(sheet, f"{column}{row}", item.get(key))

    def _write(self, sheet: Worksheet, cell: str, value: Any) -> None:
        sheet[cell] = value
        if isinstance(value, Decimal):
            sheet[cell].number_format = self.mapping["workbook"].get("money_format", "#,##0.00")

    def get_mandatory_cells(self) -> list[str]:
        verification = self.mapping.get("verification", {})
        mandatory_cells = verification.get("mandatory_cells", [])
        if not isinstance(mandatory_cells, list):
            msg = "verification.mandatory_cells must be a list of cell references"
            raise ValueError(msg)
        return mandatory_cells


def read_cells(path: Path | str, cells: list[str], sheet_name: str) -> dict[str, Any]:
    """Utility for validation/testing: read exact cell values from an exported workbook."""
    workbook = load_workbook(path, data_only=False)
    sheet = workbook[sheet_name]
    return {cell: sheet[cell].value for cell in cells}
