"""In-memory authoritative issue graph for one project."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Mapping

from .errors import NotFoundError, ValidationError
from .locking import ReadWriteLock
from .models import (
    Constraint,
    Issue,
    ScopeBoundary,
    _str_list,
    new_issue_id,
    normalize_execution_type,
    normalize_issue_type,
    normalize_priority,
    normalize_status,
    now_ms,
    require_title,
)
from .status import derive_status


_UNSET: Any = object()


@dataclass(frozen=True)
class MutationEvent:
    kind: str
    issue_ids: tuple[str, ...]
    recompute: tuple[str, ...]
    derived: dict[str, str] = field(default_factory=dict)
    revision: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "issue_ids": list(self.issue_ids),
            "recompute": list(self.recompute),
            "derived": dict(self.derived),
            "revision": self.revision,
        }


Listener = Callable[[MutationEvent], None]


class GraphStore:
    """Owns every issue of one project plus the derived reverse indices.

    Public reads return copies. The lower-level accessors (``node``,
    ``child_ids``, ``dependent_ids`` ...) hand out live records and are meant
    for the managers in this package, which call them inside ``reading()`` or
    ``transaction()``.
    """

    def __init__(self, *, project_id: str = "default", id_prefix: str = "issue") -> None:
        self.project_id = project_id
        self.id_prefix = id_prefix
        self._issues: dict[str, Issue] = {}
        self._children: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = {}
        self._lock = ReadWriteLock()
        self._listeners: list[Listener] = []
        self._pending: list[MutationEvent] = []
        self._tx_depth = 0
        self._revision = 0
        self._clock = 0
        self._status_cache: dict[str, str] = {}
        self._status_cache_revision = -1

    # -- sections ---------------------------------------------------------

    @contextmanager
    def reading(self) -> Iterator[None]:
        with self._lock.read():
            yield

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Exclusive mutation section; listeners run after the outermost exit."""
        with self._lock.write():
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                if self._tx_depth == 1:
                    self._pending.clear()
                    self._bump()
                raise
            finally:
                self._tx_depth -= 1
            if self._tx_depth:
                return
            events, self._pending = self._pending, []
        for event in events:
            for listener in list(self._listeners):
                listener(event)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def revision(self) -> int:
        return self._revision

    def _bump(self) -> None:
        self._revision += 1

    def _tick(self) -> int:
        self._clock = max(now_ms(), self._clock)
        return self._clock

    # -- low-level accessors (caller holds a section) ------------------------

    def node(self, issue_id: str) -> Issue:
        key = (issue_id or "").strip()
        issue = self._issues.get(key)
        if issue is None:
            raise NotFoundError(key or issue_id)
        return issue

    def ids(self) -> list[str]:
        return list(self._issues)

    def child_ids(self, issue_id: str) -> list[str]:
        return list(self._children.get(issue_id, ()))

    def dependent_ids(self, issue_id: str) -> list[str]:
        return list(self._dependents.get(issue_id, ()))

    def ancestor_ids(self, issue_id: str) -> list[str]:
        """Ancestors of ``issue_id``, nearest first."""
        out: list[str] = []
        current = self.node(issue_id).parent_id
        while current is not None and current in self._issues:
            out.append(current)
            current = self._issues[current].parent_id
        return out

    def descendant_ids(self, issue_id: str) -> list[str]:
        """Descendants of ``issue_id`` in pre-order, excluding itself."""
        self.node(issue_id)
        out: list[str] = []
        stack = list(reversed(self._children.get(issue_id, ())))
        while stack:
            current = stack.pop()
            out.append(current)
            stack.extend(reversed(self._children.get(current, ())))
        return out

    def is_container(self, issue_id: str) -> bool:
        self.node(issue_id)
        return bool(self._children.get(issue_id))

    def derived_status(self, issue_id: str) -> str:
        self.node(issue_id)
        if self._status_cache_revision != self._revision:
            self._status_cache = {}
            self._status_cache_revision = self._revision
        return derive_status(issue_id, self._issues, self._children, self._status_cache)

    def touch(self, issue: Issue) -> None:
        issue.updated_at = self._tick()
        self._status_cache_revision = -1

    def record(
        self,
        kind: str,
        issue_ids: Iterable[str],
        *,
        recompute_from: str | None = None,
    ) -> MutationEvent:
        """Close out one mutation: bump the revision and queue its event.

        ``recompute_from`` names the lowest issue whose derived status may
        have changed; it and its ancestors are re-derived into the event.
        """
        self._bump()
        chain: list[str] = []
        if recompute_from is not None and recompute_from in self._issues:
            chain = [recompute_from, *self.ancestor_ids(recompute_from)]
        derived = {node_id: self.derived_status(node_id) for node_id in chain}
        event = MutationEvent(
            kind=kind,
            issue_ids=tuple(issue_ids),
            recompute=tuple(chain),
            derived=derived,
            revision=self._revision,
        )
        self._pending.append(event)
        return event

    def insert(self, issue: Issue) -> None:
        """Add a fully validated record and index its forward edges."""
        if issue.id in self._issues:
            raise ValidationError(f"duplicate issue id: {issue.id}")
        self._issues[issue.id] = issue
        self._status_cache_revision = -1
        for target in issue.dependencies:
            self._dependents.setdefault(target, []).append(issue.id)
        if issue.parent_id is not None:
            self._children.setdefault(issue.parent_id, []).append(issue.id)

    def link_dependency(self, issue_id: str, depends_on_id: str) -> None:
        issue = self.node(issue_id)
        if depends_on_id in issue.dependencies:
            return
        issue.dependencies.append(depends_on_id)
        self._dependents.setdefault(depends_on_id, []).append(issue_id)
        self.touch(issue)

    def unlink_dependency(self, issue_id: str, depends_on_id: str) -> bool:
        issue = self.node(issue_id)
        if depends_on_id not in issue.dependencies:
            return False
        issue.dependencies.remove(depends_on_id)
        dependents = self._dependents.get(depends_on_id)
        if dependents and issue_id in dependents:
            dependents.remove(issue_id)
            if not dependents:
                del self._dependents[depends_on_id]
        self.touch(issue)
        return True

    # -- public API ---------------------------------------------------------

    def __len__(self) -> int:
        with self.reading():
            return len(self._issues)

    def __contains__(self, issue_id: object) -> bool:
        with self.reading():
            return issue_id in self._issues

    def _view(self, issue: Issue) -> Issue:
        out = issue.copy()
        if self._children.get(issue.id):
            out.status = self.derived_status(issue.id)
        return out

    def get_by_id(self, issue_id: str) -> Issue | None:
        with self.reading():
            issue = self._issues.get((issue_id or "").strip())
            return self._view(issue) if issue is not None else None

    def require(self, issue_id: str) -> Issue:
        with self.reading():
            return self._view(self.node(issue_id))

    def list(
        self,
        *,
        status: str | None = None,
        issue_type: str | None = None,
        roots_only: bool = False,
    ) -> list[Issue]:
        wanted_status = normalize_status(status) if status else None
        wanted_type = normalize_issue_type(issue_type) if issue_type else None
        with self.reading():
            out: list[Issue] = []
            for issue in self._issues.values():
                if roots_only and issue.parent_id is not None:
                    continue
                if wanted_type and issue.type != wanted_type:
                    continue
                if wanted_status and self.derived_status(issue.id) != wanted_status:
                    continue
                out.append(self._view(issue))
            return out

    def snapshot(self) -> list[Issue]:
        """Raw copies of every record in insertion order, for persistence."""
        with self.reading():
            return [issue.copy() for issue in self._issues.values()]

    def create(
        self,
        title: str,
        *,
        description: str = "",
        issue_type: str = "task",
        priority: int = 2,
        status: str = "open",
        dependencies: list[str] | None = None,
        success_criteria: list[str] | None = None,
        is_well_specified: bool = False,
        execution_type: str | None = None,
        validation_required: bool = False,
        scope_boundary: ScopeBoundary | Mapping[str, Any] | None = None,
        constraints: list[Constraint] | None = None,
        issue_id: str | None = None,
    ) -> Issue:
        issue = Issue(
            id="",
            title=require_title(title),
            description=description or "",
            type=normalize_issue_type(issue_type),
            priority=normalize_priority(priority),
            status=normalize_status(status),
            success_criteria=_str_list(success_criteria, "success_criteria"),
            is_well_specified=bool(is_well_specified),
            execution_type=normalize_execution_type(execution_type),
            validation_required=bool(validation_required),
            scope_boundary=_coerce_scope(scope_boundary),
            constraints=[
                item if isinstance(item, Constraint) else Constraint.from_dict(item)
                for item in constraints or []
            ],
        )
        with self.transaction():
            if issue_id is not None:
                key = issue_id.strip()
                if not key:
                    raise ValidationError("issue id cannot be empty")
                if key in self._issues:
                    raise ValidationError(f"duplicate issue id: {key}")
            else:
                key = new_issue_id(self.id_prefix)
                while key in self._issues:
                    key = new_issue_id(self.id_prefix)
            deps = list(dict.fromkeys(self.node(dep).id for dep in dependencies or []))
            now = self._tick()
            issue.id = key
            issue.dependencies = deps
            issue.created_at = now
            issue.updated_at = now
            self.insert(issue)
            self.record("create", [key])
        return issue.copy()

    def update(
        self,
        issue_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        issue_type: str | None = None,
        priority: int | None = None,
        status: str | None = None,
        failure_reason: str | None = _UNSET,
        success_criteria: list[str] | None = None,
        is_well_specified: bool | None = None,
        execution_type: str | None = _UNSET,
        validation_required: bool | None = None,
        scope_boundary: ScopeBoundary | Mapping[str, Any] | None = _UNSET,
    ) -> Issue:
        with self.transaction():
            issue = self.node(issue_id)
            changes: dict[str, Any] = {}

            if title is not None:
                changes["title"] = require_title(title)
            if description is not None:
                changes["description"] = description
            if issue_type is not None:
                changes["type"] = normalize_issue_type(issue_type)
            if priority is not None:
                changes["priority"] = normalize_priority(priority)
            if success_criteria is not None:
                changes["success_criteria"] = _str_list(
                    success_criteria, "success_criteria"
                )
            if is_well_specified is not None:
                changes["is_well_specified"] = bool(is_well_specified)
            if execution_type is not _UNSET:
                changes["execution_type"] = normalize_execution_type(execution_type)
            if validation_required is not None:
                changes["validation_required"] = bool(validation_required)
            if scope_boundary is not _UNSET:
                changes["scope_boundary"] = _coerce_scope(scope_boundary)

            status_written = status is not None or failure_reason is not _UNSET
            if status_written:
                if self._children.get(issue.id):
                    raise ValidationError(
                        f"cannot set status on container issue: {issue.id}"
                    )
                target = normalize_status(status) if status is not None else issue.status
                changes["status"] = target
                if target == "failed":
                    reason = issue.failure_reason
                    if failure_reason is not _UNSET:
                        reason = (failure_reason or "").strip() or None
                    changes["failure_reason"] = reason
                else:
                    if failure_reason is not _UNSET and failure_reason:
                        raise ValidationError(
                            "failure reason can only be set on failed issues"
                        )
                    changes["failure_reason"] = None

            if not changes:
                return self._view(issue)

            for key, value in changes.items():
                setattr(issue, key, value)
            self.touch(issue)
            self.record(
                "status" if "status" in changes else "update",
                [issue.id],
                recompute_from=issue.parent_id if status_written else None,
            )
            return self._view(issue)

    def delete(self, issue_id: str) -> list[str]:
        """Delete ``issue_id`` and its subtree; return removed ids post-order."""
        with self.transaction():
            root = self.node(issue_id)
            doomed = self._post_order(root.id)
            doomed_set = set(doomed)
            parent_id = root.parent_id

            for dead_id in doomed:
                for dependent_id in self._dependents.get(dead_id, ()):
                    if dependent_id in doomed_set:
                        continue
                    survivor = self._issues[dependent_id]
                    survivor.dependencies.remove(dead_id)
                    self.touch(survivor)

            for dead_id in doomed:
                for target in self._issues[dead_id].dependencies:
                    dependents = self._dependents.get(target)
                    if target in doomed_set or not dependents:
                        continue
                    dependents.remove(dead_id)
                    if not dependents:
                        del self._dependents[target]
                del self._issues[dead_id]
                self._children.pop(dead_id, None)
                self._dependents.pop(dead_id, None)

            if parent_id is not None and parent_id in self._issues:
                siblings = self._children.get(parent_id, [])
                if root.id in siblings:
                    siblings.remove(root.id)
                parent = self._issues[parent_id]
                if not siblings:
                    self._children.pop(parent_id, None)
                    parent.decomposition_type = None
                    parent.chosen_child_id = None
                    parent.status = "open"
                    parent.failure_reason = None
                elif parent.chosen_child_id == root.id:
                    parent.chosen_child_id = None
                self.touch(parent)

            self.record("delete", doomed, recompute_from=parent_id)
            return doomed

    def _post_order(self, issue_id: str) -> list[str]:
        out: list[str] = []
        stack: list[tuple[str, bool]] = [(issue_id, False)]
        while stack:
            current, expanded = stack.pop()
            if expanded:
                out.append(current)
                continue
            stack.append((current, True))
            stack.extend(
                (child, False) for child in reversed(self._children.get(current, ()))
            )
        return out

    def load(
        self,
        issues: Iterable[Issue | Mapping[str, Any]],
        *,
        repair: bool = False,
    ) -> None:
        """Replace the whole graph with an imported issue set.

        Dangling references and bad decomposition markers reject the load
        unless ``repair`` is set, in which case they are fixed up. Cycles in
        either relation always reject it.
        """
        from .validation import prepare_import

        records = [
            item.copy() if isinstance(item, Issue) else Issue.from_dict(item)
            for item in issues
        ]
        records = prepare_import(records, repair=repair)

        with self.transaction():
            self._issues = {}
            self._children = {}
            self._dependents = {}
            for issue in records:
                self.insert(issue)
                self._clock = max(self._clock, issue.updated_at)
            self.record("load", [issue.id for issue in records])


def _coerce_scope(value: ScopeBoundary | Mapping[str, Any] | None) -> ScopeBoundary | None:
    if value is None or isinstance(value, ScopeBoundary):
        return value
    return ScopeBoundary.from_dict(value)


class ProjectRegistry:
    """Independent graph stores keyed by project id."""

    def __init__(self, *, id_prefix: str = "issue") -> None:
        self.id_prefix = id_prefix
        self._stores: dict[str, GraphStore] = {}
        self._lock = threading.Lock()

    def get(self, project_id: str) -> GraphStore:
        key = (project_id or "").strip()
        if not key:
            raise ValidationError("project id cannot be empty")
        with self._lock:
            store = self._stores.get(key)
            if store is None:
                store = GraphStore(project_id=key, id_prefix=self.id_prefix)
                self._stores[key] = store
            return store

    def drop(self, project_id: str) -> bool:
        with self._lock:
            return self._stores.pop(project_id, None) is not None

    def projects(self) -> list[str]:
        with self._lock:
            return sorted(self._stores)
