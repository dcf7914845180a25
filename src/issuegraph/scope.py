from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping

from .errors import ValidationError
from .models import (
    CONCERN_STATUSES,
    Concern,
    Constraint,
    Issue,
    ScopeBoundary,
    _normalize_choice,
)

if TYPE_CHECKING:
    from .store import GraphStore


_TOKEN_RE = re.compile(r"[a-z0-9]+")
_WS_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    return _WS_RE.sub(" ", (text or "").lower()).strip()


def significant_tokens(text: str) -> set[str]:
    return {token for token in _TOKEN_RE.findall(normalize_text(text)) if len(token) > 3}


def boundary_violation(issue: Issue, boundary: ScopeBoundary) -> str | None:
    """Why ``issue`` falls outside ``boundary``, or None when it does not."""
    text = normalize_text(f"{issue.title} {issue.description}")
    if not text:
        return None
    for exclude in boundary.excludes:
        needle = normalize_text(exclude)
        if needle and (needle in text or text in needle):
            return f'matches excluded scope "{exclude}"'
    tokens = significant_tokens(text)
    for condition in boundary.boundary_conditions:
        shared = sorted(tokens & significant_tokens(condition))
        if shared:
            return f'touches boundary condition "{condition}" ({", ".join(shared)})'
    return None


@dataclass(frozen=True)
class ScopeExpansion:
    issue: Issue
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"issue": self.issue.to_dict(), "reason": self.reason}


@dataclass(frozen=True)
class ScopeExpansionResult:
    has_expanded: bool
    expansions: list[ScopeExpansion] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_expanded": self.has_expanded,
            "expansions": [item.to_dict() for item in self.expansions],
        }


class ScopeEngine:
    """Scope boundaries, inherited constraints and concerns."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    # -- constraints --------------------------------------------------------

    def get_effective_constraints(self, issue_id: str) -> list[Constraint]:
        """Constraints in force on ``issue_id``: the root's first, its own last."""
        store = self.store
        with store.reading():
            issue = store.node(issue_id)
            chain = [*reversed(store.ancestor_ids(issue.id)), issue.id]
            return [
                Constraint.from_dict(item.to_dict())
                for node_id in chain
                for item in store.node(node_id).constraints
            ]

    def add_constraint(
        self, issue_id: str, constraint: Constraint | Mapping[str, Any]
    ) -> Constraint:
        item = (
            constraint
            if isinstance(constraint, Constraint)
            else Constraint.from_dict(constraint)
        )
        store = self.store
        with store.transaction():
            issue = store.node(issue_id)
            if any(existing.id == item.id for existing in issue.constraints):
                raise ValidationError(f"duplicate constraint id: {item.id}")
            issue.constraints.append(item)
            store.touch(issue)
            store.record("add_constraint", [issue.id])
        return Constraint.from_dict(item.to_dict())

    def remove_constraint(self, issue_id: str, constraint_id: str) -> bool:
        store = self.store
        with store.transaction():
            issue = store.node(issue_id)
            kept = [item for item in issue.constraints if item.id != constraint_id]
            if len(kept) == len(issue.constraints):
                return False
            issue.constraints = kept
            store.touch(issue)
            store.record("remove_constraint", [issue.id])
            return True

    def set_scope_boundary(
        self,
        issue_id: str,
        boundary: ScopeBoundary | Mapping[str, Any] | None,
    ) -> Issue:
        return self.store.update(issue_id, scope_boundary=boundary)

    # -- concerns -----------------------------------------------------------

    def add_concern(self, issue_id: str, concern: Concern | Mapping[str, Any]) -> Concern:
        item = concern if isinstance(concern, Concern) else Concern.from_dict(concern)
        store = self.store
        with store.transaction():
            issue = store.node(issue_id)
            for related in item.related_issue_ids:
                store.node(related)
            if any(existing.id == item.id for existing in issue.concerns):
                raise ValidationError(f"duplicate concern id: {item.id}")
            issue.concerns.append(item)
            store.touch(issue)
            item.surfaced_at = issue.updated_at
            store.record("add_concern", [issue.id])
            return Concern.from_dict(item.to_dict())

    def resolve_concern(
        self,
        issue_id: str,
        concern_id: str,
        status: str = "addressed",
        resolution: str | None = None,
    ) -> Concern:
        target = _normalize_choice(status, CONCERN_STATUSES, "concern status")
        store = self.store
        with store.transaction():
            issue = store.node(issue_id)
            item = next((c for c in issue.concerns if c.id == concern_id), None)
            if item is None:
                raise ValidationError(f"unknown concern: {concern_id}")
            item.status = target
            item.resolution = (resolution or "").strip() or None
            store.touch(issue)
            item.addressed_at = None if target == "open" else issue.updated_at
            store.record("resolve_concern", [issue.id])
            return Concern.from_dict(item.to_dict())

    def get_concerns(self, issue_id: str, *, status: str | None = None) -> list[Concern]:
        wanted = (
            _normalize_choice(status, CONCERN_STATUSES, "concern status")
            if status
            else None
        )
        with self.store.reading():
            issue = self.store.node(issue_id)
            return [
                Concern.from_dict(item.to_dict())
                for item in issue.concerns
                if wanted is None or item.status == wanted
            ]

    # -- scope expansion ----------------------------------------------------

    def _covered(self, goal: Issue, candidate_ids: list[str]) -> set[str]:
        covered: set[str] = set()
        for item in goal.concerns:
            if item.type == "scope_expansion":
                covered.update(item.related_issue_ids)
        for node_id in candidate_ids:
            node = self.store.node(node_id)
            if node.id != goal.id and any(
                item.type == "scope_expansion" for item in node.concerns
            ):
                covered.add(node_id)
        return covered

    def detect_scope_expansion(self, goal_id: str) -> ScopeExpansionResult:
        """Find issues under ``goal_id`` that stray outside its scope boundary.

        Issues already flagged by a ``scope_expansion`` concern are skipped.
        """
        store = self.store
        with store.reading():
            goal = store.node(goal_id)
            boundary = goal.scope_boundary
            if boundary is None:
                return ScopeExpansionResult(has_expanded=False)
            candidates = [goal.id, *store.descendant_ids(goal.id)]
            covered = self._covered(goal, candidates)
            expansions: list[ScopeExpansion] = []
            for node_id in candidates:
                if node_id in covered:
                    continue
                reason = boundary_violation(store.node(node_id), boundary)
                if reason is not None:
                    expansions.append(
                        ScopeExpansion(issue=store.require(node_id), reason=reason)
                    )
            return ScopeExpansionResult(
                has_expanded=bool(expansions), expansions=expansions
            )

    def record_scope_expansions(self, goal_id: str) -> list[Concern]:
        """File one ``scope_expansion`` concern on the goal per flagged issue."""
        with self.store.transaction():
            result = self.detect_scope_expansion(goal_id)
            return [
                self.add_concern(
                    goal_id,
                    Concern(
                        type="scope_expansion",
                        title=f"Possible scope expansion: {item.issue.title}",
                        description=item.reason,
                        related_issue_ids=[item.issue.id],
                    ),
                )
                for item in result.expansions
            ]
