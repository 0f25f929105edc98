from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from .core import DEFAULT_CATEGORIES, DEFAULT_POLICIES, KindPolicy
from .models import RequestKind, Status

logger = logging.getLogger(__name__)


@dataclass
class WorkflowSettings:
    """Per-kind policies plus the switches shared by every kind."""

    policies: dict[RequestKind, KindPolicy] = field(default_factory=lambda: dict(DEFAULT_POLICIES))
    conclude_on_reconcile: bool = False
    categories: tuple[str, ...] = DEFAULT_CATEGORIES
    cost_centers: tuple[str, ...] = ()
    directorates: tuple[str, ...] = ()
    administrators: tuple[str, ...] = ()

    def policy(self, kind: RequestKind | str) -> KindPolicy:
        return self.policies[RequestKind(kind)]


def load_settings(path: Path | str | None = None) -> WorkflowSettings:
    """Overlay the YAML file at ``path`` on the built-in defaults."""
    settings = WorkflowSettings()
    if path is None:
        return settings

    path = Path(path)
    with path.open("r", encoding="utf-8") as config_file:
        loaded = yaml.safe_load(config_file) or {}

    if not isinstance(loaded, dict):
        msg = f"Workflow config must contain a dictionary at root: {path}"
        raise ValueError(msg)

    if "conclude_on_reconcile" in loaded:
        settings.conclude_on_reconcile = bool(loaded["conclude_on_reconcile"])

    for key in ("categories", "cost_centers", "directorates", "administrators"):
        if loaded.get(key) is not None:
            setattr(settings, key, _name_list(loaded[key], key))

    kinds = loaded.get("kinds") or {}
    if not isinstance(kinds, dict):
        raise ValueError("kinds must be a mapping of request kind to overrides")
    for raw_kind, overrides in kinds.items():
        kind = _parse_enum(RequestKind, raw_kind, "kinds")
        settings.policies[kind] = _apply_overrides(settings.policies[kind], overrides or {})

    logger.info("Loaded workflow settings from %s", path)
    return settings


def _apply_overrides(policy: KindPolicy, overrides: dict[str, Any]) -> KindPolicy:
    unknown = set(overrides) - {"labels", "receipt_required"}
    if unknown:
        raise ValueError(f"Unsupported overrides for kind {policy.kind.value}: {sorted(unknown)}")

    changes: dict[str, Any] = {}
    if "receipt_required" in overrides:
        changes["receipt_required"] = bool(overrides["receipt_required"])
    if "labels" in overrides:
        raw_labels = overrides["labels"] or {}
        if not isinstance(raw_labels, dict):
            raise ValueError(f"kinds.{policy.kind.value}.labels must be a mapping")
        labels = dict(policy.labels)
        for raw_status, label in raw_labels.items():
            labels[_parse_enum(Status, raw_status, f"kinds.{policy.kind.value}.labels")] = str(label)
        changes["labels"] = labels
    return replace(policy, **changes)


def _name_list(values: Any, key: str) -> tuple[str, ...]:
    if not isinstance(values, list) or not all(isinstance(v, str) and v.strip() for v in values):
        raise ValueError(f"{key} must be a list of non-empty strings")
    return tuple(v.strip() for v in values)


def _parse_enum(enum_type: Any, value: Any, section: str) -> Any:
    try:
        return enum_type(value)
    except ValueError as exc:
        raise ValueError(f"Unknown value '{value}' in {section}") from exc
