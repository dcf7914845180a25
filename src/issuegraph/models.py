from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

from .errors import ValidationError


ISSUE_TYPES = (
    "goal",
    "task",
    "assumption",
    "risk",
    "contingency",
    "question",
    "constraint",
    "bug",
    "feature",
)
ISSUE_STATUSES = (
    "open",
    "in_progress",
    "closed",
    "failed",
)
ACTIVE_STATUSES = {"open", "in_progress"}
TERMINAL_STATUSES = {"closed", "failed"}
DECOMPOSITION_TYPES = (
    "and",
    "or_fallback",
    "or_race",
    "choice",
)
EXECUTION_TYPES = (
    "automated",
    "human",
    "ai_assisted",
    "human_assisted",
)
CONSTRAINT_TYPES = (
    "scope",
    "budget",
    "timeline",
    "quality",
    "must_have",
    "must_not",
    "boundary",
)
CONSTRAINT_SOURCES = ("user", "ai_suggested", "discovered")
CONCERN_TYPES = (
    "assumption",
    "risk",
    "gap",
    "dependency",
    "scope_expansion",
    "hidden_work",
)
CONCERN_STATUSES = (
    "open",
    "addressed",
    "deferred",
    "accepted",
)
CONCERN_TIER_LABELS = {
    1: "Blocker",
    2: "Critical",
    3: "Consideration",
    4: "Background",
}
PRIORITY_LABELS = {
    0: "P0 - Critical",
    1: "P1 - High",
    2: "P2 - Medium",
    3: "P3 - Low",
    4: "P4 - Backlog",
}
DEFAULT_PRIORITY = 2


def now_ms() -> int:
    return int(time.time() * 1000)


def new_issue_id(prefix: str = "issue") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _normalize_choice(value: object, choices: tuple[str, ...], field_name: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")
    text = value.strip().lower()
    if text not in choices:
        raise ValidationError(f"invalid {field_name}: {value}")
    return text


def normalize_status(status: object) -> str:
    return _normalize_choice(status, ISSUE_STATUSES, "status")


def normalize_issue_type(issue_type: object) -> str:
    return _normalize_choice(issue_type, ISSUE_TYPES, "issue type")


def normalize_decomposition_type(decomposition_type: object) -> str:
    return _normalize_choice(
        decomposition_type, DECOMPOSITION_TYPES, "decomposition type"
    )


def normalize_execution_type(execution_type: object) -> str | None:
    if execution_type is None:
        return None
    return _normalize_choice(execution_type, EXECUTION_TYPES, "execution type")


def normalize_priority(priority: object) -> int:
    if isinstance(priority, bool):
        raise ValidationError("priority must be between 0 and 4")
    try:
        value = int(priority)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValidationError("priority must be between 0 and 4") from exc
    if value < 0 or value > 4:
        raise ValidationError("priority must be between 0 and 4")
    return value


def _normalize_level(value: object, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be 1, 2 or 3")
    try:
        level = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} must be 1, 2 or 3") from exc
    if level not in (1, 2, 3):
        raise ValidationError(f"{field_name} must be 1, 2 or 3")
    return level


def require_title(title: object) -> str:
    if not isinstance(title, str):
        raise ValidationError("title must be a string")
    text = title.strip()
    if not text:
        raise ValidationError("title cannot be empty")
    return text


def _str_list(value: object, field_name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, (list, tuple, set)):
        raise ValidationError(f"{field_name} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValidationError(f"{field_name} must be a list of strings")
        text = item.strip()
        if text and text not in out:
            out.append(text)
    return out


def _index_list(value: object) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError("depends_on_index must be a list of integers")
    return list(value)


def concern_tier(impact: int, probability: int, urgency: int) -> int:
    severity = impact * probability
    if severity >= 6 and urgency == 3:
        return 1
    if severity >= 6:
        return 2
    if severity >= 3:
        return 3
    return 4


@dataclass(frozen=True)
class Edge:
    """Blocking edge: ``from_id`` depends on ``to_id``."""

    from_id: str
    to_id: str

    def to_dict(self) -> dict[str, str]:
        return {"from": self.from_id, "to": self.to_id}


@dataclass
class ScopeBoundary:
    description: str = ""
    includes: list[str] = field(default_factory=list)
    excludes: list[str] = field(default_factory=list)
    boundary_conditions: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ScopeBoundary:
        if not isinstance(payload, Mapping):
            raise ValidationError("scope boundary must be an object")
        description = payload.get("description") or ""
        if not isinstance(description, str):
            raise ValidationError("scope boundary description must be a string")
        return cls(
            description=description.strip(),
            includes=_str_list(payload.get("includes"), "includes"),
            excludes=_str_list(payload.get("excludes"), "excludes"),
            boundary_conditions=_str_list(
                payload.get("boundary_conditions"), "boundary_conditions"
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "includes": list(self.includes),
            "excludes": list(self.excludes),
            "boundary_conditions": list(self.boundary_conditions),
        }


@dataclass
class Constraint:
    type: str
    description: str
    id: str = field(default_factory=lambda: f"constraint-{uuid.uuid4().hex[:8]}")
    rationale: str = ""
    value: str | int | float | None = None
    unit: str | None = None
    negotiable: bool = False
    source: str = "user"
    created_at: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        self.type = _normalize_choice(self.type, CONSTRAINT_TYPES, "constraint type")
        self.source = _normalize_choice(
            self.source, CONSTRAINT_SOURCES, "constraint source"
        )
        if not isinstance(self.description, str) or not self.description.strip():
            raise ValidationError("constraint description cannot be empty")
        self.description = self.description.strip()

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Constraint:
        if not isinstance(payload, Mapping):
            raise ValidationError("constraint must be an object")
        kwargs: dict[str, Any] = {
            "type": payload.get("type"),
            "description": payload.get("description"),
            "rationale": str(payload.get("rationale") or ""),
            "value": payload.get("value"),
            "unit": payload.get("unit"),
            "negotiable": bool(payload.get("negotiable", False)),
            "source": payload.get("source") or "user",
        }
        if payload.get("id"):
            kwargs["id"] = str(payload["id"])
        if payload.get("created_at") is not None:
            kwargs["created_at"] = int(payload["created_at"])
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "rationale": self.rationale,
            "value": self.value,
            "unit": self.unit,
            "negotiable": self.negotiable,
            "source": self.source,
            "created_at": self.created_at,
        }


@dataclass
class Concern:
    type: str
    title: str
    description: str = ""
    impact: int = 2
    probability: int = 2
    urgency: int = 2
    related_issue_ids: list[str] = field(default_factory=list)
    status: str = "open"
    user_aware: bool = False
    resolution: str | None = None
    id: str = field(default_factory=lambda: f"concern-{uuid.uuid4().hex[:8]}")
    surfaced_at: int = field(default_factory=now_ms)
    addressed_at: int | None = None

    def __post_init__(self) -> None:
        self.type = _normalize_choice(self.type, CONCERN_TYPES, "concern type")
        self.status = _normalize_choice(
            self.status, CONCERN_STATUSES, "concern status"
        )
        self.title = require_title(self.title)
        self.impact = _normalize_level(self.impact, "impact")
        self.probability = _normalize_level(self.probability, "probability")
        self.urgency = _normalize_level(self.urgency, "urgency")
        self.related_issue_ids = _str_list(self.related_issue_ids, "related_issue_ids")

    @property
    def tier(self) -> int:
        return concern_tier(self.impact, self.probability, self.urgency)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Concern:
        if not isinstance(payload, Mapping):
            raise ValidationError("concern must be an object")
        kwargs: dict[str, Any] = {
            "type": payload.get("type"),
            "title": payload.get("title"),
            "description": str(payload.get("description") or ""),
            "impact": payload.get("impact", 2),
            "probability": payload.get("probability", 2),
            "urgency": payload.get("urgency", 2),
            "related_issue_ids": payload.get("related_issue_ids") or [],
            "status": payload.get("status") or "open",
            "user_aware": bool(payload.get("user_aware", False)),
            "resolution": payload.get("resolution"),
        }
        if payload.get("id"):
            kwargs["id"] = str(payload["id"])
        if payload.get("surfaced_at") is not None:
            kwargs["surfaced_at"] = int(payload["surfaced_at"])
        if payload.get("addressed_at") is not None:
            kwargs["addressed_at"] = int(payload["addressed_at"])
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "impact": self.impact,
            "probability": self.probability,
            "urgency": self.urgency,
            "tier": self.tier,
            "related_issue_ids": list(self.related_issue_ids),
            "status": self.status,
            "user_aware": self.user_aware,
            "resolution": self.resolution,
            "surfaced_at": self.surfaced_at,
            "addressed_at": self.addressed_at,
        }


@dataclass
class Issue:
    id: str
    title: str
    description: str = ""
    type: str = "task"
    priority: int = DEFAULT_PRIORITY
    status: str = "open"
    created_at: int = 0
    updated_at: int = 0
    dependencies: list[str] = field(default_factory=list)
    parent_id: str | None = None
    decomposition_type: str | None = None
    chosen_child_id: str | None = None
    scope_boundary: ScopeBoundary | None = None
    constraints: list[Constraint] = field(default_factory=list)
    concerns: list[Concern] = field(default_factory=list)
    success_criteria: list[str] = field(default_factory=list)
    is_well_specified: bool = False
    failure_reason: str | None = None
    execution_type: str | None = None
    validation_required: bool = False

    def copy(self) -> Issue:
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Issue:
        if not isinstance(payload, Mapping):
            raise ValidationError("issue must be an object")
        issue_id = str(payload.get("id") or "").strip()
        if not issue_id:
            raise ValidationError("issue id cannot be empty")
        scope = payload.get("scope_boundary")
        deps = payload.get("dependencies") or []
        if isinstance(deps, str) or not isinstance(deps, (list, tuple)):
            raise ValidationError(f"dependencies of {issue_id} must be a list")
        return cls(
            id=issue_id,
            title=require_title(payload.get("title")),
            description=str(payload.get("description") or ""),
            type=normalize_issue_type(payload.get("type") or "task"),
            priority=normalize_priority(payload.get("priority", DEFAULT_PRIORITY)),
            status=normalize_status(payload.get("status") or "open"),
            created_at=int(payload.get("created_at") or 0),
            updated_at=int(payload.get("updated_at") or 0),
            dependencies=list(dict.fromkeys(str(dep) for dep in deps)),
            parent_id=(str(payload["parent_id"]) if payload.get("parent_id") else None),
            decomposition_type=(
                normalize_decomposition_type(payload["decomposition_type"])
                if payload.get("decomposition_type")
                else None
            ),
            chosen_child_id=(
                str(payload["chosen_child_id"])
                if payload.get("chosen_child_id")
                else None
            ),
            scope_boundary=(ScopeBoundary.from_dict(scope) if scope else None),
            constraints=[
                Constraint.from_dict(item) for item in payload.get("constraints") or []
            ],
            concerns=[Concern.from_dict(item) for item in payload.get("concerns") or []],
            success_criteria=_str_list(
                payload.get("success_criteria"), "success_criteria"
            ),
            is_well_specified=bool(payload.get("is_well_specified", False)),
            failure_reason=payload.get("failure_reason"),
            execution_type=normalize_execution_type(payload.get("execution_type")),
            validation_required=bool(payload.get("validation_required", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "priority": self.priority,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "dependencies": list(self.dependencies),
            "parent_id": self.parent_id,
            "decomposition_type": self.decomposition_type,
            "chosen_child_id": self.chosen_child_id,
            "scope_boundary": (
                self.scope_boundary.to_dict() if self.scope_boundary else None
            ),
            "constraints": [item.to_dict() for item in self.constraints],
            "concerns": [item.to_dict() for item in self.concerns],
            "success_criteria": list(self.success_criteria),
            "is_well_specified": self.is_well_specified,
            "failure_reason": self.failure_reason,
            "execution_type": self.execution_type,
            "validation_required": self.validation_required,
        }


@dataclass
class ChildSpec:
    """One proposed child in a decompose batch.

    ``depends_on_index`` refers to siblings by their position in the batch;
    ``dependencies`` refers to issues that already exist.
    """

    title: str
    description: str = ""
    type: str = "task"
    priority: int = DEFAULT_PRIORITY
    success_criteria: list[str] = field(default_factory=list)
    execution_type: str | None = None
    validation_required: bool = False
    dependencies: list[str] = field(default_factory=list)
    depends_on_index: list[int] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ChildSpec:
        if not isinstance(payload, Mapping):
            raise ValidationError("child must be an object")
        return cls(
            title=payload.get("title"),  # type: ignore[arg-type]
            description=str(payload.get("description") or ""),
            type=payload.get("type") or "task",
            priority=payload.get("priority", DEFAULT_PRIORITY),  # type: ignore[arg-type]
            success_criteria=_str_list(payload.get("success_criteria"), "success_criteria"),
            execution_type=payload.get("execution_type"),
            validation_required=bool(payload.get("validation_required", False)),
            dependencies=_str_list(payload.get("dependencies"), "dependencies"),
            depends_on_index=_index_list(payload.get("depends_on_index")),
        )
