from __future__ import annotations

import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from expense_workflow.core import ZERO, money
from expense_workflow.models import RequestKind, Status
from expense_workflow.settings import WorkflowSettings


@dataclass(frozen=True)
class KindTotals:
    kind: RequestKind
    count: int
    total_amount: Decimal


@dataclass(frozen=True)
class StatusTotals:
    status: Status
    label: str
    count: int
    total_amount: Decimal


@dataclass(frozen=True)
class CategoryTotals:
    category: str
    item_count: int
    report_count: int
    total_amount: Decimal


@dataclass(frozen=True)
class MonthlyTotals:
    month: str
    kind: RequestKind
    total_amount: Decimal


class ReportService:
    """Read-only aggregates for the dashboards. Withdrawn requests are never counted."""

    def __init__(self, conn: sqlite3.Connection, settings: Optional[WorkflowSettings] = None):
        self.conn = conn
        self.settings = settings or WorkflowSettings()

    def dashboard_stats(self, requester: str | None = None) -> dict[RequestKind, KindTotals]:
        conditions, params = self._filters(requester=requester)
        rows = self.conn.execute(
            f"SELECT kind, amount FROM expense_request WHERE {conditions}", params
        ).fetchall()

        counts: dict[RequestKind, int] = {kind: 0 for kind in RequestKind}
        totals: dict[RequestKind, Decimal] = {kind: ZERO for kind in RequestKind}
        for row in rows:
            kind = RequestKind(row["kind"])
            counts[kind] += 1
            totals[kind] += _amount(row["amount"])
        return {kind: KindTotals(kind, counts[kind], money(totals[kind])) for kind in RequestKind}

    def totals_by_status(
        self,
        kind: RequestKind | str,
        start: date | None = None,
        end: date | None = None,
        directorate: str | None = None,
    ) -> list[StatusTotals]:
        kind = RequestKind(kind)
        conditions, params = self._filters(kind=kind, start=start, end=end, directorate=directorate)
        rows = self.conn.execute(
            f"SELECT status, amount FROM expense_request WHERE {conditions}", params
        ).fetchall()

        grouped: dict[Status, list[Decimal]] = defaultdict(list)
        for row in rows:
            grouped[Status(row["status"])].append(_amount(row["amount"]))

        policy = self.settings.policy(kind)
        return [
            StatusTotals(status, policy.label(status), len(grouped[status]), money(sum(grouped[status], ZERO)))
            for status in Status
            if status in grouped
        ]

    def totals_by_category(self, start: date | None = None, end: date | None = None) -> list[CategoryTotals]:
        conditions, params = self._filters(start=start, end=end, alias="r")
        rows = self.conn.execute(
            f"""
            SELECT i.category, i.amount, i.report_id
            FROM accountability_item i
            INNER JOIN accountability_report p ON p.id = i.report_id
            INNER JOIN expense_request r ON r.id = p.request_id
            WHERE {conditions}
            """,
            params,
        ).fetchall()

        amounts: dict[str, Decimal] = defaultdict(lambda: ZERO)
        items: dict[str, int] = defaultdict(int)
        reports: dict[str, set[int]] = defaultdict(set)
        for row in rows:
            category = row["category"]
            amounts[category] += Decimal(row["amount"])
            items[category] += 1
            reports[category].add(row["report_id"])

        result = [
            CategoryTotals(category, items[category], len(reports[category]), money(total))
            for category, total in amounts.items()
        ]
        return sorted(result, key=lambda entry: entry.total_amount, reverse=True)

    def monthly_totals(self, start: date | None = None, end: date | None = None) -> list[MonthlyTotals]:
        conditions, params = self._filters(start=start, end=end)
        rows = self.conn.execute(
            f"SELECT substr(created_at, 1, 7) AS month, kind, amount FROM expense_request WHERE {conditions}",
            params,
        ).fetchall()

        grouped: dict[tuple[str, RequestKind], Decimal] = defaultdict(lambda: ZERO)
        for row in rows:
            grouped[(row["month"], RequestKind(row["kind"]))] += _amount(row["amount"])

        return [
            MonthlyTotals(month, kind, money(total))
            for (month, kind), total in sorted(grouped.items(), key=lambda entry: (entry[0][0], entry[0][1].value))
        ]

    @staticmethod
    def _filters(
        kind: RequestKind | None = None,
        requester: str | None = None,
        start: date | None = None,
        end: date | None = None,
        directorate: str | None = None,
        alias: str | None = None,
    ) -> tuple[str, list[Any]]:
        prefix = f"{alias}." if alias else ""
        conditions = [f"{prefix}deleted_at IS NULL"]
        params: list[Any] = []
        if kind is not None:
            conditions.append(f"{prefix}kind = ?")
            params.append(kind.value)
        if requester:
            conditions.append(f"{prefix}requester = ?")
            params.append(requester)
        if directorate:
            conditions.append(f"{prefix}directorate = ?")
            params.append(directorate)
        # created_at is an ISO timestamp, so the date prefix compares correctly
        if start is not None:
            conditions.append(f"substr({prefix}created_at, 1, 10) >= ?")
            params.append(start.isoformat())
        if end is not None:
            conditions.append(f"substr({prefix}created_at, 1, 10) <= ?")
            params.append(end.isoformat())
        return " AND ".join(conditions), params


def _amount(value: Optional[str]) -> Decimal:
    return Decimal(value) if value is not None else ZERO
