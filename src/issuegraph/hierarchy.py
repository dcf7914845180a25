from __future__ import annotations

import warnings
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from .errors import NotFoundError, PartialBatchWarning, ValidationError
from .models import (
    ChildSpec,
    Issue,
    _index_list,
    _str_list,
    new_issue_id,
    normalize_decomposition_type,
    normalize_execution_type,
    normalize_issue_type,
    normalize_priority,
    require_title,
)

if TYPE_CHECKING:
    from .store import GraphStore


@dataclass
class _Draft:
    index: int
    issue: Issue
    siblings: list[int] = field(default_factory=list)


class HierarchyManager:
    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def _draft(
        self,
        index: int,
        spec: ChildSpec | Mapping[str, Any],
        batch_size: int,
        blocked_ids: set[str],
    ) -> _Draft:
        if not isinstance(spec, ChildSpec):
            spec = ChildSpec.from_dict(spec)
        issue = Issue(
            id="",
            title=require_title(spec.title),
            description=spec.description or "",
            type=normalize_issue_type(spec.type),
            priority=normalize_priority(spec.priority),
            success_criteria=_str_list(spec.success_criteria, "success_criteria"),
            execution_type=normalize_execution_type(spec.execution_type),
            validation_required=bool(spec.validation_required),
        )
        deps: list[str] = []
        for dep in _str_list(spec.dependencies, "dependencies"):
            key = self.store.node(dep).id
            if key in blocked_ids:
                raise ValidationError(
                    f"child cannot depend on its own ancestor: {key}"
                )
            if key not in deps:
                deps.append(key)
        issue.dependencies = deps

        siblings: list[int] = []
        for raw in _index_list(spec.depends_on_index):
            if isinstance(raw, bool) or not isinstance(raw, int):
                raise ValidationError("depends_on_index must be a list of integers")
            if raw < 0 or raw >= batch_size:
                raise ValidationError(f"sibling index out of range: {raw}")
            if raw == index:
                raise ValidationError("child cannot depend on itself")
            if raw not in siblings:
                siblings.append(raw)
        return _Draft(index=index, issue=issue, siblings=siblings)

    def _plan(
        self,
        specs: list[ChildSpec | Mapping[str, Any]],
        blocked_ids: set[str],
        *,
        atomic: bool,
    ) -> tuple[list[_Draft], list[tuple[int, str]]]:
        """Validate a batch; return accepted drafts in batch order and rejects."""
        drafts: dict[int, _Draft] = {}
        rejected: dict[int, str] = {}
        for index, spec in enumerate(specs):
            try:
                drafts[index] = self._draft(index, spec, len(specs), blocked_ids)
            except ValueError as exc:
                if atomic and isinstance(exc, NotFoundError):
                    raise
                if atomic:
                    raise ValidationError(f"child #{index}: {exc}") from exc
                rejected[index] = str(exc)

        changed = True
        while changed:
            changed = False
            for index, draft in list(drafts.items()):
                missing = next((i for i in draft.siblings if i in rejected), None)
                if missing is not None:
                    rejected[index] = f"depends on rejected sibling #{missing}"
                    del drafts[index]
                    changed = True

        indegree = {index: len(draft.siblings) for index, draft in drafts.items()}
        waiting: dict[int, list[int]] = {}
        for index, draft in drafts.items():
            for sibling in draft.siblings:
                waiting.setdefault(sibling, []).append(index)
        queue = deque(sorted(index for index, count in indegree.items() if count == 0))
        ordered: set[int] = set()
        while queue:
            current = queue.popleft()
            ordered.add(current)
            for index in waiting.get(current, ()):
                indegree[index] -= 1
                if indegree[index] == 0:
                    queue.append(index)
        stuck = sorted(set(drafts) - ordered)
        if stuck:
            if atomic:
                raise ValidationError(
                    "sibling dependency cycle between children "
                    + ", ".join(f"#{index}" for index in stuck)
                )
            for index in stuck:
                rejected[index] = "sibling dependency cycle"
                del drafts[index]

        accepted = [drafts[index] for index in sorted(drafts)]
        return accepted, sorted(rejected.items())

    def decompose(
        self,
        parent_id: str,
        children: Iterable[ChildSpec | Mapping[str, Any]],
        decomposition_type: str | None = None,
        *,
        merge: bool = False,
        atomic: bool = True,
    ) -> list[Issue]:
        """Create ``children`` under ``parent_id``.

        By default the whole batch is validated before anything is written
        and a single bad child rejects it. With ``atomic=False`` bad children
        are skipped and reported through a ``PartialBatchWarning``.
        """
        created, rejected = self.decompose_batch(
            parent_id, children, decomposition_type, merge=merge, atomic=atomic
        )
        if rejected:
            warnings.warn(
                PartialBatchWarning(parent_id.strip(), rejected), stacklevel=2
            )
        return created

    def decompose_batch(
        self,
        parent_id: str,
        children: Iterable[ChildSpec | Mapping[str, Any]],
        decomposition_type: str | None = None,
        *,
        merge: bool = False,
        atomic: bool = True,
    ) -> tuple[list[Issue], list[tuple[int, str]]]:
        """Like ``decompose`` but return the rejected ``(index, reason)`` pairs."""
        specs = list(children)
        if not specs:
            raise ValidationError("decompose requires at least one child")
        requested = (
            normalize_decomposition_type(decomposition_type)
            if decomposition_type is not None
            else None
        )
        store = self.store
        with store.transaction():
            parent = store.node(parent_id)
            existing = store.child_ids(parent.id)
            if existing and not merge:
                raise ValidationError(
                    f"issue already has children: {parent.id} (use merge to add more)"
                )
            if existing and requested and requested != parent.decomposition_type:
                raise ValidationError(
                    f"decomposition type {requested} conflicts with "
                    f"{parent.decomposition_type} on {parent.id}"
                )
            dtype = parent.decomposition_type if existing else requested or "and"

            blocked = {parent.id, *store.ancestor_ids(parent.id)}
            accepted, rejected = self._plan(specs, blocked, atomic=atomic)

            created: list[str] = []
            if accepted:
                ids: dict[int, str] = {}
                for draft in accepted:
                    key = new_issue_id(store.id_prefix)
                    while key in store or key in ids.values():
                        key = new_issue_id(store.id_prefix)
                    ids[draft.index] = key
                for draft in accepted:
                    issue = draft.issue
                    issue.id = ids[draft.index]
                    issue.parent_id = parent.id
                    store.touch(issue)
                    issue.created_at = issue.updated_at
                    issue.dependencies.extend(ids[i] for i in draft.siblings)
                    store.insert(issue)
                    created.append(issue.id)
                parent.decomposition_type = dtype
                store.touch(parent)
                store.record("decompose", [parent.id, *created], recompute_from=parent.id)
            return [store.require(key) for key in created], rejected

    def set_decomposition_type(self, issue_id: str, decomposition_type: str) -> Issue:
        dtype = normalize_decomposition_type(decomposition_type)
        store = self.store
        with store.transaction():
            issue = store.node(issue_id)
            if not store.is_container(issue.id):
                raise ValidationError(
                    f"decomposition type requires children: {issue.id}"
                )
            if issue.decomposition_type == dtype:
                return store.require(issue.id)
            issue.decomposition_type = dtype
            if dtype != "choice":
                issue.chosen_child_id = None
            store.touch(issue)
            store.record("set_decomposition_type", [issue.id], recompute_from=issue.id)
            return store.require(issue.id)

    def get_children(self, issue_id: str) -> list[Issue]:
        store = self.store
        with store.reading():
            key = store.node(issue_id).id
            return [store.require(child) for child in store.child_ids(key)]

    def get_descendants(self, issue_id: str) -> list[Issue]:
        store = self.store
        with store.reading():
            return [store.require(node) for node in store.descendant_ids(issue_id)]

    def get_parent(self, issue_id: str) -> Issue | None:
        store = self.store
        with store.reading():
            parent_id = store.node(issue_id).parent_id
            return store.require(parent_id) if parent_id is not None else None

    def get_ancestors(self, issue_id: str) -> list[Issue]:
        store = self.store
        with store.reading():
            return [store.require(node) for node in store.ancestor_ids(issue_id)]

    def get_roots(self) -> list[Issue]:
        return self.store.list(roots_only=True)

    def is_container(self, issue_id: str) -> bool:
        with self.store.reading():
            return self.store.is_container(issue_id)

    def is_leaf(self, issue_id: str) -> bool:
        return not self.is_container(issue_id)
