from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence


class WorkflowError(Exception):
    """Base class for errors the caller can act on."""


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str
    index: int | None = None

    def __str__(self) -> str:
        if self.index is None:
            return f"{self.field}: {self.message}"
        return f"items[{self.index}].{self.field}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "message": self.message, "index": self.index}


class ValidationError(WorkflowError):
    """Raised when submitted data is malformed or incomplete."""

    def __init__(self, errors: Sequence[FieldError]):
        self.errors = list(errors)
        super().__init__("; ".join(str(error) for error in self.errors))


class NotFoundError(WorkflowError):
    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidTransitionError(WorkflowError):
    """Raised when the current status does not allow the requested action."""

    def __init__(self, request_id: int, status: str, action: str):
        self.request_id = request_id
        self.status = status
        self.action = action
        super().__init__(f"Request {request_id} in status '{status}' does not allow '{action}'")


class ConflictError(WorkflowError):
    """Raised when a write would violate a uniqueness rule."""


class PermissionDeniedError(WorkflowError):
    """Raised when the actor may not change someone else's request."""

    def __init__(self, request_id: int, actor: str):
        self.request_id = request_id
        self.actor = actor
        super().__init__(f"{actor} may not change request {request_id}")


class StorageError(Exception):
    """Infrastructure failure while reading or writing persistent state."""
