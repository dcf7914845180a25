from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Mapping

from .dependencies import DependencyManager
from .hierarchy import HierarchyManager
from .models import ChildSpec, Concern, Constraint, Edge, Issue, ScopeBoundary
from .ranking import NextTask, RankedIssue, RankingEngine, RankingWeights
from .scope import ScopeEngine, ScopeExpansionResult
from .status import StatusEngine
from .store import GraphStore
from .validation import GraphHealth, PlanReport, graph_health, validate_plan


class TaskGraph:
    """Every graph operation over one project's store."""

    def __init__(
        self,
        store: GraphStore | None = None,
        *,
        weights: RankingWeights | None = None,
    ) -> None:
        self.store = store if store is not None else GraphStore()
        self.dependencies = DependencyManager(self.store)
        self.hierarchy = HierarchyManager(self.store)
        self.status = StatusEngine(self.store)
        self.scope = ScopeEngine(self.store)
        self.ranking = RankingEngine(self.store, weights)

    @classmethod
    def from_workdir(
        cls,
        cwd: Path | None = None,
        *,
        create: bool = True,
        autosave: bool = True,
    ) -> TaskGraph:
        """Open the graph persisted in the state dir above ``cwd``."""
        from .config import load_config
        from .persistence import (
            SnapshotWriter,
            load_snapshot,
            resolve_state_dir,
            snapshot_path,
        )

        state_dir = resolve_state_dir(cwd, create=create)
        config = load_config(cwd, state_dir=state_dir)
        path = snapshot_path(state_dir)
        store = load_snapshot(path, id_prefix=config.id_prefix)
        if autosave:
            store.subscribe(SnapshotWriter(path, store))
        return cls(store, weights=config.ranking)

    # -- store --------------------------------------------------------------

    def create(self, title: str, **fields: Any) -> Issue:
        return self.store.create(title, **fields)

    def get_by_id(self, issue_id: str) -> Issue | None:
        return self.store.get_by_id(issue_id)

    def require(self, issue_id: str) -> Issue:
        return self.store.require(issue_id)

    def update(self, issue_id: str, **fields: Any) -> Issue:
        return self.store.update(issue_id, **fields)

    def delete(self, issue_id: str) -> list[str]:
        return self.store.delete(issue_id)

    def list(self, **filters: Any) -> list[Issue]:
        return self.store.list(**filters)

    def snapshot(self) -> list[Issue]:
        return self.store.snapshot()

    def load(self, issues: Iterable[Issue | Mapping[str, Any]], *, repair: bool = False) -> None:
        self.store.load(issues, repair=repair)

    def subscribe(self, listener: Any) -> Any:
        return self.store.subscribe(listener)

    # -- dependencies -------------------------------------------------------

    def add_dependency(self, issue_id: str, depends_on_id: str) -> Issue:
        return self.dependencies.add_dependency(issue_id, depends_on_id)

    def remove_dependency(self, issue_id: str, depends_on_id: str) -> Issue:
        return self.dependencies.remove_dependency(issue_id, depends_on_id)

    def reverse_dependency(self, issue_id: str, depends_on_id: str) -> Issue:
        return self.dependencies.reverse_dependency(issue_id, depends_on_id)

    def add_dependency_breaking_cycle(
        self, issue_id: str, depends_on_id: str, break_edge: Edge
    ) -> Issue:
        return self.dependencies.add_dependency_breaking_cycle(
            issue_id, depends_on_id, break_edge
        )

    def get_blockers(self, issue_id: str) -> list[Issue]:
        return self.dependencies.get_blockers(issue_id)

    def get_blocking(self, issue_id: str) -> list[Issue]:
        return self.dependencies.get_blocking(issue_id)

    def get_blocked(self) -> list[Issue]:
        return self.dependencies.get_blocked()

    def get_transitive_dependencies(self, issue_id: str) -> list[str]:
        return self.dependencies.get_transitive_dependencies(issue_id)

    # -- hierarchy ----------------------------------------------------------

    def decompose(
        self,
        parent_id: str,
        children: Iterable[ChildSpec | Mapping[str, Any]],
        decomposition_type: str | None = None,
        *,
        merge: bool = False,
        atomic: bool = True,
    ) -> list[Issue]:
        return self.hierarchy.decompose(
            parent_id, children, decomposition_type, merge=merge, atomic=atomic
        )

    def decompose_batch(
        self,
        parent_id: str,
        children: Iterable[ChildSpec | Mapping[str, Any]],
        decomposition_type: str | None = None,
        *,
        merge: bool = False,
        atomic: bool = True,
    ) -> tuple[list[Issue], list[tuple[int, str]]]:
        return self.hierarchy.decompose_batch(
            parent_id, children, decomposition_type, merge=merge, atomic=atomic
        )

    def set_decomposition_type(self, issue_id: str, decomposition_type: str) -> Issue:
        return self.hierarchy.set_decomposition_type(issue_id, decomposition_type)

    def get_children(self, issue_id: str) -> list[Issue]:
        return self.hierarchy.get_children(issue_id)

    def get_descendants(self, issue_id: str) -> list[Issue]:
        return self.hierarchy.get_descendants(issue_id)

    def get_parent(self, issue_id: str) -> Issue | None:
        return self.hierarchy.get_parent(issue_id)

    def get_ancestors(self, issue_id: str) -> list[Issue]:
        return self.hierarchy.get_ancestors(issue_id)

    def get_roots(self) -> list[Issue]:
        return self.hierarchy.get_roots()

    def is_container(self, issue_id: str) -> bool:
        return self.hierarchy.is_container(issue_id)

    def is_leaf(self, issue_id: str) -> bool:
        return self.hierarchy.is_leaf(issue_id)

    # -- status -------------------------------------------------------------

    def get_derived_status(self, issue_id: str) -> str:
        return self.status.get_derived_status(issue_id)

    def set_status(self, issue_id: str, status: str) -> Issue:
        return self.status.set_status(issue_id, status)

    def mark_failed(self, issue_id: str, reason: str) -> Issue:
        return self.status.mark_failed(issue_id, reason)

    def choose(self, container_id: str, child_id: str) -> Issue:
        return self.status.choose(container_id, child_id)

    # -- scope, constraints, concerns ---------------------------------------

    def get_effective_constraints(self, issue_id: str) -> list[Constraint]:
        return self.scope.get_effective_constraints(issue_id)

    def add_constraint(
        self, issue_id: str, constraint: Constraint | Mapping[str, Any]
    ) -> Constraint:
        return self.scope.add_constraint(issue_id, constraint)

    def remove_constraint(self, issue_id: str, constraint_id: str) -> bool:
        return self.scope.remove_constraint(issue_id, constraint_id)

    def set_scope_boundary(
        self, issue_id: str, boundary: ScopeBoundary | Mapping[str, Any] | None
    ) -> Issue:
        return self.scope.set_scope_boundary(issue_id, boundary)

    def detect_scope_expansion(self, goal_id: str) -> ScopeExpansionResult:
        return self.scope.detect_scope_expansion(goal_id)

    def record_scope_expansions(self, goal_id: str) -> list[Concern]:
        return self.scope.record_scope_expansions(goal_id)

    def add_concern(self, issue_id: str, concern: Concern | Mapping[str, Any]) -> Concern:
        return self.scope.add_concern(issue_id, concern)

    def resolve_concern(
        self,
        issue_id: str,
        concern_id: str,
        status: str = "addressed",
        resolution: str | None = None,
    ) -> Concern:
        return self.scope.resolve_concern(issue_id, concern_id, status, resolution)

    def get_concerns(self, issue_id: str, *, status: str | None = None) -> list[Concern]:
        return self.scope.get_concerns(issue_id, status=status)

    # -- actionability ------------------------------------------------------

    def is_actionable(self, issue_id: str) -> bool:
        return self.ranking.is_actionable(issue_id)

    def get_ready_issues(self, execution_types: Iterable[str] | None = None) -> list[Issue]:
        return self.ranking.get_ready_issues(execution_types)

    def rank_ready_issues(
        self, execution_types: Iterable[str] | None = None
    ) -> list[RankedIssue]:
        return self.ranking.rank_ready_issues(execution_types)

    def next_task(
        self, limit: int = 5, execution_types: Iterable[str] | None = None
    ) -> NextTask:
        return self.ranking.next_task(limit, execution_types)

    # -- validation ---------------------------------------------------------

    def graph_health(self) -> GraphHealth:
        return graph_health(self.store.snapshot())

    def validate_plan(self, root_id: str | None = None) -> PlanReport:
        return validate_plan(self.store.snapshot(), root_id)

    def remove_invalid_dependencies(self) -> int:
        return self.dependencies.remove_invalid_dependencies()

    def remove_redundant_dependencies(self) -> int:
        return self.dependencies.remove_redundant_dependencies()
