from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

from .errors import CycleError, ValidationError
from .models import Edge, Issue
from .validation import find_invalid_dependencies, find_redundant_dependencies

if TYPE_CHECKING:
    from .store import GraphStore


def _key(issue_id: str) -> str:
    return (issue_id or "").strip()


class DependencyManager:
    """Blocking edges between issues. ``A -> B`` means A is blocked by B."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def _path(
        self,
        start_id: str,
        target_id: str,
        skip: tuple[str, str] | None = None,
    ) -> list[str] | None:
        """Shortest dependency path ``start -> ... -> target``, if any.

        ``skip`` names one edge to treat as already removed.
        """
        store = self.store
        previous: dict[str, str | None] = {start_id: None}
        queue: deque[str] = deque([start_id])
        while queue:
            current = queue.popleft()
            if current == target_id:
                path = [current]
                while previous[path[-1]] is not None:
                    path.append(previous[path[-1]])  # type: ignore[arg-type]
                return list(reversed(path))
            for dep_id in store.node(current).dependencies:
                if (current, dep_id) == skip:
                    continue
                if dep_id not in previous:
                    previous[dep_id] = current
                    queue.append(dep_id)
        return None

    def _ensure_acyclic(
        self,
        issue_id: str,
        depends_on_id: str,
        skip: tuple[str, str] | None = None,
    ) -> None:
        if issue_id == depends_on_id:
            raise ValidationError("issue cannot depend on itself")
        path = self._path(depends_on_id, issue_id, skip)
        if path is not None:
            options = [Edge(a, b) for a, b in zip(path, path[1:])]
            options.append(Edge(issue_id, depends_on_id))
            raise CycleError(issue_id, depends_on_id, options)

    def _check_and_link(self, issue_id: str, depends_on_id: str) -> bool:
        store = self.store
        if issue_id == depends_on_id:
            raise ValidationError("issue cannot depend on itself")
        issue = store.node(issue_id)
        store.node(depends_on_id)
        if depends_on_id in issue.dependencies:
            return False
        self._ensure_acyclic(issue_id, depends_on_id)
        store.link_dependency(issue_id, depends_on_id)
        return True

    def would_create_cycle(self, issue_id: str, depends_on_id: str) -> bool:
        src, dst = _key(issue_id), _key(depends_on_id)
        with self.store.reading():
            self.store.node(src)
            self.store.node(dst)
            return src == dst or self._path(dst, src) is not None

    def add_dependency(self, issue_id: str, depends_on_id: str) -> Issue:
        src, dst = _key(issue_id), _key(depends_on_id)
        if not src or not dst:
            raise ValidationError("source and destination issue ids are required")
        store = self.store
        with store.transaction():
            if self._check_and_link(src, dst):
                store.record("add_dependency", [src])
            return store.require(src)

    def remove_dependency(self, issue_id: str, depends_on_id: str) -> Issue:
        src, dst = _key(issue_id), _key(depends_on_id)
        store = self.store
        with store.transaction():
            store.node(src)
            if store.unlink_dependency(src, dst):
                store.record("remove_dependency", [src])
            return store.require(src)

    def reverse_dependency(self, issue_id: str, depends_on_id: str) -> Issue:
        """Turn ``issue -> depends_on`` into ``depends_on -> issue``."""
        src, dst = _key(issue_id), _key(depends_on_id)
        store = self.store
        with store.transaction():
            issue = store.node(src)
            store.node(dst)
            if dst not in issue.dependencies:
                raise ValidationError(f"{src} does not depend on {dst}")
            self._ensure_acyclic(dst, src, skip=(src, dst))
            store.unlink_dependency(src, dst)
            store.link_dependency(dst, src)
            store.record("reverse_dependency", [src, dst])
            return store.require(dst)

    def add_dependency_breaking_cycle(
        self,
        issue_id: str,
        depends_on_id: str,
        break_edge: Edge,
    ) -> Issue:
        """Drop ``break_edge`` and add ``issue -> depends_on`` as one mutation.

        Nothing changes when the new edge would still close a cycle.
        """
        src, dst = _key(issue_id), _key(depends_on_id)
        skip = (_key(break_edge.from_id), _key(break_edge.to_id))
        store = self.store
        with store.transaction():
            issue = store.node(src)
            store.node(dst)
            if dst not in issue.dependencies:
                self._ensure_acyclic(src, dst, skip=skip)
            removed = store.unlink_dependency(*skip)
            linked = dst not in issue.dependencies
            if linked:
                store.link_dependency(src, dst)
            if removed or linked:
                store.record("add_dependency", [src, skip[0]])
            return store.require(src)

    def _open_ids(self, ids: list[str]) -> list[str]:
        store = self.store
        return [
            node_id for node_id in ids if store.derived_status(node_id) != "closed"
        ]

    def get_blockers(self, issue_id: str) -> list[Issue]:
        """Direct dependencies of ``issue_id`` that are not closed yet."""
        store = self.store
        with store.reading():
            deps = list(store.node(_key(issue_id)).dependencies)
            return [store.require(dep) for dep in self._open_ids(deps)]

    def get_blocking(self, issue_id: str) -> list[Issue]:
        """Open issues that directly wait on ``issue_id``."""
        store = self.store
        with store.reading():
            key = store.node(_key(issue_id)).id
            return [
                store.require(dep) for dep in self._open_ids(store.dependent_ids(key))
            ]

    def get_blocked(self) -> list[Issue]:
        store = self.store
        with store.reading():
            out: list[Issue] = []
            for node_id in store.ids():
                if store.derived_status(node_id) == "closed":
                    continue
                if self._open_ids(list(store.node(node_id).dependencies)):
                    out.append(store.require(node_id))
            return out

    def get_transitive_dependencies(self, issue_id: str) -> list[str]:
        """Every issue ``issue_id`` waits on, directly or not, nearest first."""
        store = self.store
        with store.reading():
            start = store.node(_key(issue_id)).id
            seen: set[str] = {start}
            out: list[str] = []
            queue: deque[str] = deque([start])
            while queue:
                current = queue.popleft()
                for dep_id in store.node(current).dependencies:
                    if dep_id in seen:
                        continue
                    seen.add(dep_id)
                    out.append(dep_id)
                    queue.append(dep_id)
            return out

    def remove_invalid_dependencies(self) -> int:
        store = self.store
        with store.transaction():
            rows = find_invalid_dependencies(store.node(i) for i in store.ids())
            for row in rows:
                store.unlink_dependency(row["issue_id"], row["invalid_dep_id"])
            if rows:
                store.record(
                    "remove_invalid_dependencies",
                    dict.fromkeys(row["issue_id"] for row in rows),
                )
            return len(rows)

    def remove_redundant_dependencies(self) -> int:
        """Drop direct edges already implied through another dependency."""
        store = self.store
        removed: list[str] = []
        with store.transaction():
            # One edge at a time; removing one can make another non-redundant.
            while True:
                rows = find_redundant_dependencies(store.node(i) for i in store.ids())
                if not rows:
                    break
                row = rows[0]
                store.unlink_dependency(row["issue_id"], row["redundant_dep_id"])
                removed.append(row["issue_id"])
            if removed:
                store.record("remove_redundant_dependencies", dict.fromkeys(removed))
        return len(removed)
