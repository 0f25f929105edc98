from __future__ import annotations

import sqlite3
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from expense_workflow.core import Settlement
from expense_workflow.errors import ConflictError
from expense_workflow.models import (
    AccountabilityReport,
    ExpenseItem,
    ExpenseRequest,
    RequestDraft,
    RequestKind,
    Status,
)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, (RequestKind, Status)):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class RequestRepository:
    UPDATABLE_FIELDS = {
        "approved_by_directorate",
        "approved_by_finance",
        "payment_method",
        "payment_date",
        "rejection_reason",
        "last_updated_by",
    }

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def create(self, draft: RequestDraft, now: datetime, actor: str | None = None) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO expense_request(
                kind, requester, purpose, amount, destination, origin, start_date, end_date,
                directorate, cost_center, justification, notes, status, last_updated_by,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                _normalize_value(draft.kind),
                draft.requester,
                draft.purpose,
                _normalize_value(draft.amount),
                draft.destination,
                draft.origin,
                _normalize_value(draft.start_date),
                _normalize_value(draft.end_date),
                draft.directorate,
                draft.cost_center,
                draft.justification,
                draft.notes,
                Status.REQUESTED.value,
                actor,
                now.isoformat(),
                now.isoformat(),
            ),
        )
        return int(cursor.lastrowid)

    def get_by_id(self, request_id: int, include_deleted: bool = False) -> Optional[ExpenseRequest]:
        sql = "SELECT * FROM expense_request WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        row = self.conn.execute(sql, (request_id,)).fetchone()
        return self._to_request(row) if row else None

    def update_status(
        self,
        request_id: int,
        expected: Status,
        new_status: Status,
        fields: dict[str, Any],
        now: datetime,
    ) -> bool:
        """Move the request from ``expected`` to ``new_status``; False if it was not in ``expected``."""
        invalid = set(fields) - self.UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Invalid request fields: {sorted(invalid)}")

        assignments = "".join(f", {field} = ?" for field in fields)
        values = [new_status.value]
        values.extend(_normalize_value(fields[field]) for field in fields)
        values.extend([now.isoformat(), request_id, expected.value])
        cursor = self.conn.execute(
            f"""
            UPDATE expense_request SET status = ?{assignments}, updated_at = ?
            WHERE id = ? AND status = ? AND deleted_at IS NULL
            """,
            values,
        )
        return cursor.rowcount == 1

    DETAIL_FIELDS = (
        "purpose",
        "amount",
        "destination",
        "origin",
        "start_date",
        "end_date",
        "directorate",
        "cost_center",
        "justification",
        "notes",
    )

    def update_details(
        self,
        request_id: int,
        draft: RequestDraft,
        allowed: Iterable[Status],
        now: datetime,
        actor: str | None,
    ) -> bool:
        """Overwrite the editable fields; False if the request left ``allowed`` meanwhile."""
        statuses = [status.value for status in allowed]
        assignments = ", ".join(f"{field} = ?" for field in self.DETAIL_FIELDS)
        placeholders = ", ".join("?" for _ in statuses)
        cursor = self.conn.execute(
            f"""
            UPDATE expense_request SET {assignments}, last_updated_by = ?, updated_at = ?
            WHERE id = ? AND deleted_at IS NULL AND status IN ({placeholders})
            """,
            (
                *(_normalize_value(getattr(draft, field)) for field in self.DETAIL_FIELDS),
                actor,
                now.isoformat(),
                request_id,
                *statuses,
            ),
        )
        return cursor.rowcount == 1

    def mark_deleted(self, request_id: int, allowed: Iterable[Status], now: datetime, actor: str | None) -> bool:
        statuses = [status.value for status in allowed]
        placeholders = ", ".join("?" for _ in statuses)
        cursor = self.conn.execute(
            f"""
            UPDATE expense_request SET deleted_at = ?, updated_at = ?, last_updated_by = ?
            WHERE id = ? AND deleted_at IS NULL AND status IN ({placeholders})
            """,
            (now.isoformat(), now.isoformat(), actor, request_id, *statuses),
        )
        return cursor.rowcount == 1

    def search(
        self,
        kind: RequestKind | None = None,
        status: Status | None = None,
        requester: str | None = None,
        directorate: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[ExpenseRequest]:
        conditions = ["deleted_at IS NULL"]
        params: list[Any] = []
        if kind is not None:
            conditions.append("kind = ?")
            params.append(_normalize_value(kind))
        if status is not None:
            conditions.append("status = ?")
            params.append(_normalize_value(status))
        if requester:
            conditions.append("requester = ?")
            params.append(requester)
        if directorate:
            conditions.append("directorate LIKE ?")
            params.append(f"%{directorate}%")
        if start is not None:
            conditions.append("start_date >= ?")
            params.append(start.isoformat())
        if end is not None:
            conditions.append("COALESCE(end_date, start_date) <= ?")
            params.append(end.isoformat())

        rows = self.conn.execute(
            f"SELECT * FROM expense_request WHERE {' AND '.join(conditions)} ORDER BY created_at DESC, id DESC",
            params,
        ).fetchall()
        return [self._to_request(row) for row in rows]

    @staticmethod
    def _to_request(row: sqlite3.Row) -> ExpenseRequest:
        return ExpenseRequest(
            id=row["id"],
            kind=RequestKind(row["kind"]),
            requester=row["requester"],
            status=Status(row["status"]),
            purpose=row["purpose"],
            amount=_decimal(row["amount"]),
            destination=row["destination"],
            origin=row["origin"],
            start_date=_date(row["start_date"]),
            end_date=_date(row["end_date"]),
            directorate=row["directorate"],
            cost_center=row["cost_center"],
            justification=row["justification"],
            notes=row["notes"],
            approved_by_directorate=bool(row["approved_by_directorate"]),
            approved_by_finance=bool(row["approved_by_finance"]),
            payment_method=row["payment_method"],
            payment_date=_date(row["payment_date"]),
            rejection_reason=row["rejection_reason"],
            last_updated_by=row["last_updated_by"],
            created_at=_datetime(row["created_at"]),
            updated_at=_datetime(row["updated_at"]),
            deleted_at=_datetime(row["deleted_at"]),
        )


class AccountabilityRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def exists_for_request(self, request_id: int) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM accountability_report WHERE request_id = ?", (request_id,)
        ).fetchone()
        return row is not None

    def create_report(self, request_id: int, settlement: Settlement, notes: str | None, now: datetime) -> int:
        try:
            cursor = self.conn.execute(
                """
                INSERT INTO accountability_report(
                    request_id, total_spent, amount_to_return, amount_to_bill, notes, submitted_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    request_id,
                    _normalize_value(settlement.total_spent),
                    _normalize_value(settlement.amount_to_return),
                    _normalize_value(settlement.amount_to_bill),
                    notes,
                    now.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" not in str(exc):
                raise
            raise ConflictError(f"Request {request_id} already has an accountability report") from exc
        return int(cursor.lastrowid)

    def create_item(self, report_id: int, item: ExpenseItem) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO accountability_item(
                report_id, position, category, description, amount, expense_date, receipt_ref
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                report_id,
                item.position,
                item.category,
                item.description,
                _normalize_value(item.amount),
                _normalize_value(item.expense_date),
                item.receipt_ref,
            ),
        )
        return int(cursor.lastrowid)

    def get_by_request(self, request_id: int) -> Optional[AccountabilityReport]:
        row = self.conn.execute(
            "SELECT * FROM accountability_report WHERE request_id = ?", (request_id,)
        ).fetchone()
        if row is None:
            return None
        return AccountabilityReport(
            id=row["id"],
            request_id=row["request_id"],
            total_spent=Decimal(row["total_spent"]),
            amount_to_return=Decimal(row["amount_to_return"]),
            amount_to_bill=Decimal(row["amount_to_bill"]),
            notes=row["notes"],
            items=tuple(self.list_items(row["id"])),
            submitted_at=_datetime(row["submitted_at"]),
        )

    def list_items(self, report_id: int) -> list[ExpenseItem]:
        rows = self.conn.execute(
            "SELECT * FROM accountability_item WHERE report_id = ? ORDER BY position",
            (report_id,),
        ).fetchall()
        return [
            ExpenseItem(
                id=row["id"],
                report_id=row["report_id"],
                position=row["position"],
                category=row["category"],
                description=row["description"],
                amount=Decimal(row["amount"]),
                expense_date=_date(row["expense_date"]),
                receipt_ref=row["receipt_ref"],
            )
            for row in rows
        ]


class NameRepository:
    """Case-insensitive set of names kept in a single-column table."""

    table = ""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def add(self, name: str) -> bool:
        cursor = self.conn.execute(f"INSERT OR IGNORE INTO {self.table}(name) VALUES (?)", (name,))
        return cursor.rowcount == 1

    def list_names(self) -> list[str]:
        rows = self.conn.execute(f"SELECT name FROM {self.table} ORDER BY name COLLATE NOCASE").fetchall()
        return [row[0] for row in rows]


class CategoryRepository(NameRepository):
    table = "expense_category"


class CostCenterRepository(NameRepository):
    table = "cost_center"


class DirectorateRepository(NameRepository):
    table = "directorate"
