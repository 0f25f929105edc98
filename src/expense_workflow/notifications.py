from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from .models import ExpenseRequest

logger = logging.getLogger(__name__)

DIRECTORATE = "directorate"
FINANCE = "finance"
REQUESTER = "requester"


@dataclass(frozen=True)
class WorkflowEvent:
    name: str
    request: ExpenseRequest
    recipients: tuple[str, ...]
    details: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    """Delivers workflow events (email, chat, ...) to the roles involved."""

    def notify(self, event: WorkflowEvent) -> None:
        ...


class LoggingNotifier:
    def notify(self, event: WorkflowEvent) -> None:
        logger.info(
            "Workflow event %s for %s request %s -> %s %s",
            event.name,
            event.request.kind.value,
            event.request.id,
            ", ".join(event.recipients),
            event.details or "",
        )


class RecordingNotifier:
    """Keeps every event in memory; useful for tests and local development."""

    def __init__(self) -> None:
        self.events: list[WorkflowEvent] = []

    def notify(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.events]


def dispatch(notifier: Notifier, event: WorkflowEvent) -> None:
    """Deliver ``event`` after the transition has been committed.

    Delivery failures are logged and never propagate to the caller.
    """
    try:
        notifier.notify(event)
    except Exception:
        logger.exception("Failed to deliver %s notification for request %s", event.name, event.request.id)
