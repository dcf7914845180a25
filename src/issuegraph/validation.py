"""Structural checks over an issue snapshot.

Everything here works on plain lists of ``Issue`` records so it can vet an
import before it reaches a store, audit a live store's ``snapshot()``, or
check a proposed plan that was never loaded at all.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from .errors import NotFoundError, ValidationError
from .models import Issue


@dataclass(frozen=True)
class GraphHealth:
    is_healthy: bool
    invalid_deps: list[dict[str, Any]]
    redundant_deps: list[dict[str, Any]]
    cycles: list[list[str]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "invalid_deps": list(self.invalid_deps),
            "redundant_deps": list(self.redundant_deps),
            "cycles": [list(cycle) for cycle in self.cycles],
        }


@dataclass
class PlanReport:
    root_id: str | None
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "root_id": self.root_id,
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


def _by_id(issues: Iterable[Issue]) -> dict[str, Issue]:
    return {issue.id: issue for issue in issues}


def _children_map(by_id: dict[str, Issue]) -> dict[str, list[str]]:
    children: dict[str, list[str]] = {}
    for issue in by_id.values():
        if issue.parent_id is not None and issue.parent_id in by_id:
            children.setdefault(issue.parent_id, []).append(issue.id)
    return children


def _normalize_cycle_nodes(cycle: list[str]) -> tuple[str, ...]:
    path = cycle[:-1]
    if not path:
        return tuple(cycle)
    rotations = [tuple(path[index:] + path[:index]) for index in range(len(path))]
    return min(rotations)


def find_invalid_dependencies(issues: Iterable[Issue]) -> list[dict[str, Any]]:
    by_id = _by_id(issues)
    invalid: list[dict[str, Any]] = []
    for issue in by_id.values():
        for dep_id in issue.dependencies:
            if dep_id not in by_id:
                invalid.append(
                    {
                        "issue_id": issue.id,
                        "issue_title": issue.title,
                        "invalid_dep_id": dep_id,
                    }
                )
    return invalid


def transitive_dependencies(issue_id: str, by_id: dict[str, Issue]) -> set[str]:
    """Every issue reachable from ``issue_id`` along dependencies, excluding it."""
    seen: set[str] = set()
    queue: deque[str] = deque([issue_id])
    while queue:
        current = queue.popleft()
        issue = by_id.get(current)
        if issue is None:
            continue
        for dep_id in issue.dependencies:
            if dep_id not in seen and dep_id != issue_id:
                seen.add(dep_id)
                queue.append(dep_id)
    return seen


def find_redundant_dependencies(issues: Iterable[Issue]) -> list[dict[str, Any]]:
    """Direct dependencies already implied through another direct dependency."""
    by_id = _by_id(issues)
    redundant: list[dict[str, Any]] = []
    for issue in by_id.values():
        if len(issue.dependencies) < 2:
            continue
        reach = {
            dep_id: transitive_dependencies(dep_id, by_id)
            for dep_id in issue.dependencies
        }
        for dep_id in issue.dependencies:
            through = next(
                (
                    other_id
                    for other_id, reachable in reach.items()
                    if other_id != dep_id and dep_id in reachable
                ),
                None,
            )
            if through is None or dep_id not in by_id:
                continue
            redundant.append(
                {
                    "issue_id": issue.id,
                    "issue_title": issue.title,
                    "redundant_dep_id": dep_id,
                    "redundant_dep_title": by_id[dep_id].title,
                    "through_id": through,
                    "through_title": by_id[through].title,
                }
            )
    return redundant


def find_dependency_cycles(issues: Iterable[Issue]) -> list[list[str]]:
    """Distinct dependency cycles, each as a closed path ``[a, b, ..., a]``."""
    by_id = _by_id(issues)
    state: dict[str, int] = {}
    stack: list[str] = []
    index_by_id: dict[str, int] = {}
    seen: set[tuple[str, ...]] = set()
    cycles: list[list[str]] = []

    def walk(issue_id: str) -> None:
        state[issue_id] = 1
        index_by_id[issue_id] = len(stack)
        stack.append(issue_id)
        for dep_id in by_id[issue_id].dependencies:
            if dep_id not in by_id:
                continue
            dep_state = state.get(dep_id, 0)
            if dep_state == 0:
                walk(dep_id)
                continue
            if dep_state != 1:
                continue
            cycle_path = stack[index_by_id[dep_id] :] + [dep_id]
            normalized = _normalize_cycle_nodes(cycle_path)
            if normalized in seen:
                continue
            seen.add(normalized)
            cycles.append(cycle_path)
        stack.pop()
        index_by_id.pop(issue_id, None)
        state[issue_id] = 2

    for issue_id in by_id:
        if state.get(issue_id, 0) == 0:
            walk(issue_id)
    return cycles


def find_parent_cycles(issues: Iterable[Issue]) -> list[list[str]]:
    by_id = _by_id(issues)
    done: set[str] = set()
    seen: set[tuple[str, ...]] = set()
    cycles: list[list[str]] = []
    for start in by_id:
        path: list[str] = []
        position: dict[str, int] = {}
        current: str | None = start
        while current is not None and current in by_id and current not in done:
            if current in position:
                cycle_path = path[position[current] :] + [current]
                normalized = _normalize_cycle_nodes(cycle_path)
                if normalized not in seen:
                    seen.add(normalized)
                    cycles.append(cycle_path)
                break
            position[current] = len(path)
            path.append(current)
            current = by_id[current].parent_id
        done.update(path)
    return cycles


def graph_health(issues: Iterable[Issue]) -> GraphHealth:
    records = list(issues)
    invalid = find_invalid_dependencies(records)
    redundant = find_redundant_dependencies(records)
    cycles = find_dependency_cycles(records)
    return GraphHealth(
        is_healthy=not invalid and not redundant and not cycles,
        invalid_deps=invalid,
        redundant_deps=redundant,
        cycles=cycles,
    )


def _scope_ids(
    root_id: str,
    children: dict[str, list[str]],
) -> list[str]:
    out: list[str] = []
    queue: deque[str] = deque([root_id])
    seen: set[str] = set()
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        out.append(current)
        queue.extend(children.get(current, ()))
    return out


def _ancestors(issue_id: str, by_id: dict[str, Issue]) -> set[str]:
    out: set[str] = set()
    current = by_id[issue_id].parent_id
    while current is not None and current in by_id and current not in out:
        out.add(current)
        current = by_id[current].parent_id
    return out


def validate_plan(issues: Iterable[Issue], root_id: str | None = None) -> PlanReport:
    """Collect structural errors and warnings for a plan.

    With ``root_id`` only that issue and its descendants are examined;
    dependencies may still point outside the subtree.
    """
    by_id = _by_id(issues)
    children = _children_map(by_id)
    if root_id is not None:
        if root_id not in by_id:
            raise NotFoundError(root_id)
        scope = _scope_ids(root_id, children)
    else:
        scope = list(by_id)
    scope_set = set(scope)
    report = PlanReport(root_id=root_id)

    for cycle in find_parent_cycles(by_id[issue_id] for issue_id in scope):
        report.errors.append(
            {
                "code": "parent_cycle",
                "id": cycle[0],
                "cycle": cycle,
                "message": f"parent cycle detected: {' -> '.join(cycle)}",
            }
        )

    for cycle in find_dependency_cycles(by_id.values()):
        if not scope_set.intersection(cycle):
            continue
        report.errors.append(
            {
                "code": "dependency_cycle",
                "id": cycle[0],
                "cycle": cycle,
                "message": f"dependency cycle detected: {' -> '.join(cycle)}",
            }
        )

    for issue_id in scope:
        issue = by_id[issue_id]
        kids = children.get(issue_id, [])

        for dep_id in issue.dependencies:
            if dep_id not in by_id:
                report.errors.append(
                    {
                        "code": "dangling_dependency",
                        "id": issue_id,
                        "target": dep_id,
                        "message": f"dependency on unknown issue: {dep_id}",
                    }
                )

        if issue.parent_id is not None and issue.parent_id not in by_id:
            report.errors.append(
                {
                    "code": "dangling_parent",
                    "id": issue_id,
                    "target": issue.parent_id,
                    "message": f"parent is unknown issue: {issue.parent_id}",
                }
            )

        if kids and issue.decomposition_type is None:
            report.errors.append(
                {
                    "code": "missing_decomposition_type",
                    "id": issue_id,
                    "message": "container has children but no decomposition type",
                }
            )
        if not kids and issue.decomposition_type is not None:
            report.errors.append(
                {
                    "code": "stray_decomposition_type",
                    "id": issue_id,
                    "message": "leaf carries a decomposition type",
                }
            )

        if issue.chosen_child_id is not None and (
            issue.decomposition_type != "choice" or issue.chosen_child_id not in kids
        ):
            report.errors.append(
                {
                    "code": "invalid_choice",
                    "id": issue_id,
                    "target": issue.chosen_child_id,
                    "message": "chosen child is not a child of a choice container",
                }
            )

        related = _ancestors(issue_id, by_id)
        related.update(_scope_ids(issue_id, children)[1:])
        for dep_id in issue.dependencies:
            if dep_id in related:
                report.errors.append(
                    {
                        "code": "ancestor_dependency",
                        "id": issue_id,
                        "target": dep_id,
                        "message": (
                            f"{issue_id} depends on {dep_id} in its own "
                            "decomposition tree and can never become actionable"
                        ),
                    }
                )

        if issue.type == "goal" and not kids:
            report.warnings.append(
                {
                    "code": "empty_goal",
                    "id": issue_id,
                    "message": "goal has not been decomposed",
                }
            )
        wants_criteria = issue.type == "goal" or (issue.type == "task" and not kids)
        if wants_criteria and not issue.is_well_specified and not issue.success_criteria:
            report.warnings.append(
                {
                    "code": "not_well_specified",
                    "id": issue_id,
                    "message": "no success criteria and not marked well specified",
                }
            )

    for row in find_redundant_dependencies(by_id.values()):
        if row["issue_id"] not in scope_set:
            continue
        report.warnings.append(
            {
                "code": "redundant_dependency",
                "id": row["issue_id"],
                "target": row["redundant_dep_id"],
                "through": row["through_id"],
                "message": (
                    f"dependency on {row['redundant_dep_id']} is implied "
                    f"through {row['through_id']}"
                ),
            }
        )

    return report


def prepare_import(records: list[Issue], *, repair: bool = False) -> list[Issue]:
    """Check (and with ``repair`` fix up) an issue set before it is loaded."""
    by_id: dict[str, Issue] = {}
    for issue in records:
        if issue.id in by_id:
            raise ValidationError(f"duplicate issue id: {issue.id}")
        by_id[issue.id] = issue

    dangling = find_invalid_dependencies(records)
    if dangling and not repair:
        first = dangling[0]
        raise ValidationError(
            f"{first['issue_id']} depends on unknown issue: {first['invalid_dep_id']}"
        )
    for issue in records:
        issue.dependencies = [dep for dep in issue.dependencies if dep in by_id]
        if issue.parent_id is not None and issue.parent_id not in by_id:
            if not repair:
                raise ValidationError(
                    f"{issue.id} has unknown parent: {issue.parent_id}"
                )
            issue.parent_id = None

    parent_cycles = find_parent_cycles(records)
    if parent_cycles:
        raise ValidationError(
            f"parent cycle detected: {' -> '.join(parent_cycles[0])}"
        )
    dep_cycles = find_dependency_cycles(records)
    if dep_cycles:
        raise ValidationError(
            f"dependency cycle detected: {' -> '.join(dep_cycles[0])}"
        )

    children = _children_map(by_id)
    for issue in records:
        kids = children.get(issue.id, [])
        if kids and issue.decomposition_type is None:
            if not repair:
                raise ValidationError(
                    f"container has no decomposition type: {issue.id}"
                )
            issue.decomposition_type = "and"
        if not kids and issue.decomposition_type is not None:
            if not repair:
                raise ValidationError(f"leaf carries a decomposition type: {issue.id}")
            issue.decomposition_type = None
        if issue.chosen_child_id is not None and (
            issue.decomposition_type != "choice" or issue.chosen_child_id not in kids
        ):
            if not repair:
                raise ValidationError(f"invalid chosen child on {issue.id}")
            issue.chosen_child_id = None
    return records
