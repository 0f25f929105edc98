from __future__ import annotations

from html import escape

from .core import KindPolicy
from .errors import ValidationError
from .models import AccountabilityReport, ExpenseRequest


def render_settlement_summary(request: ExpenseRequest, report: AccountabilityReport, policy: KindPolicy) -> str:
    if report.amount_to_return > 0:
        outcome = f"<p>Amount to return: {report.amount_to_return}</p>"
    elif report.amount_to_bill > 0:
        outcome = f"<p>Amount to bill: {report.amount_to_bill}</p>"
    else:
        outcome = "<p>Fully reconciled ✅</p>"

    rows = "".join(
        "<tr>"
        f"<td>{escape(item.category or '')}</td>"
        f"<td>{escape(item.description or '')}</td>"
        f"<td>{item.expense_date.isoformat() if item.expense_date else ''}</td>"
        f"<td>{item.amount}</td>"
        "</tr>"
        for item in report.items
    )
    return (
        '<section class="settlement-summary">'
        f"<h2>Request {request.id} · {escape(policy.label(request.status))}</h2>"
        f"<p>Requested: {request.amount}</p>"
        f"<p>Total spent: {report.total_spent}</p>"
        f"{outcome}"
        f"<table><tbody>{rows}</tbody></table>"
        "</section>"
    )


def render_validation_errors(error: ValidationError) -> str:
    items = "".join(f"<li>{escape(str(field_error))}</li>" for field_error in error.errors)
    return (
        '<section class="validation-summary error">'
        "<h2>Validation Summary</h2>"
        "<p>Correct the fields below and submit again.</p>"
        f"<ul>{items}</ul>"
        "</section>"
    )
