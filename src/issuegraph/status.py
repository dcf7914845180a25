"""Container status derivation.

A leaf's status is whatever was last written to it. A container has no
status of its own: it is combined from its children's derived statuses
according to the container's decomposition type, first matching rule wins.

    and            closed if all closed, failed if any failed,
                   in_progress if any in_progress or some closed, else open
    or_fallback /  closed if any closed, failed if all failed,
    or_race        in_progress if any in_progress, else open
    choice         the chosen child's status once a winner is designated,
                   otherwise in_progress when every child is closed or
                   failed, else open
"""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Mapping, Sequence

from .errors import ValidationError
from .models import ISSUE_STATUSES, TERMINAL_STATUSES, Issue

if TYPE_CHECKING:
    from .store import GraphStore


def combine_statuses(
    decomposition_type: str,
    child_statuses: Sequence[str],
    *,
    chosen_status: str | None = None,
) -> str:
    if not child_statuses:
        raise ValueError("status combination requires at least one child status")

    if decomposition_type == "and":
        if all(status == "closed" for status in child_statuses):
            return "closed"
        if any(status == "failed" for status in child_statuses):
            return "failed"
        if any(status in {"in_progress", "closed"} for status in child_statuses):
            return "in_progress"
        return "open"

    if decomposition_type in {"or_fallback", "or_race"}:
        if any(status == "closed" for status in child_statuses):
            return "closed"
        if all(status == "failed" for status in child_statuses):
            return "failed"
        if any(status == "in_progress" for status in child_statuses):
            return "in_progress"
        return "open"

    if decomposition_type == "choice":
        if chosen_status is not None:
            return chosen_status
        if all(status in TERMINAL_STATUSES for status in child_statuses):
            return "in_progress"
        return "open"

    raise ValueError(f"invalid decomposition type: {decomposition_type}")


def derive_status(
    issue_id: str,
    issues: Mapping[str, Issue],
    children: Mapping[str, Sequence[str]],
    cache: dict[str, str] | None = None,
) -> str:
    """Derive ``issue_id``'s effective status bottom-up.

    ``cache`` is filled with every status computed along the way so repeated
    calls over the same snapshot share work. Traversal is iterative; the
    forest invariant guarantees it terminates.
    """
    memo = cache if cache is not None else {}
    stack: list[tuple[str, bool]] = [(issue_id, False)]
    while stack:
        node_id, expanded = stack.pop()
        if node_id in memo:
            continue
        kids = children.get(node_id) or ()
        if not kids:
            memo[node_id] = issues[node_id].status
            continue
        if not expanded:
            stack.append((node_id, True))
            stack.extend((kid, False) for kid in kids if kid not in memo)
            continue

        issue = issues[node_id]
        chosen = issue.chosen_child_id if issue.chosen_child_id in kids else None
        memo[node_id] = combine_statuses(
            issue.decomposition_type or "and",
            [memo[kid] for kid in kids],
            chosen_status=memo[chosen] if chosen else None,
        )
    return memo[issue_id]


class StatusEngine:
    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def get_derived_status(self, issue_id: str) -> str:
        return self.store.derived_status(issue_id)

    def set_status(self, issue_id: str, status: str) -> Issue:
        return self.store.update(issue_id, status=status)

    def mark_failed(self, issue_id: str, reason: str) -> Issue:
        text = (reason or "").strip()
        if not text:
            raise ValidationError("failure reason cannot be empty")
        return self.store.update(issue_id, status="failed", failure_reason=text)

    def choose(self, container_id: str, child_id: str) -> Issue:
        """Designate ``child_id`` as the winner of a choice container."""
        store = self.store
        with store.transaction():
            container = store.node(container_id)
            store.node(child_id)
            if container.decomposition_type != "choice":
                raise ValidationError(
                    f"issue is not a choice container: {container_id}"
                )
            if child_id not in store.child_ids(container_id):
                raise ValidationError(
                    f"{child_id} is not a child of {container_id}"
                )
            container.chosen_child_id = child_id
            store.touch(container)
            store.record("choose", [container_id], recompute_from=container_id)
        return store.require(container_id)

    def status_counts(self, root_id: str | None = None) -> dict[str, int]:
        store = self.store
        with store.reading():
            if root_id is None:
                ids = store.ids()
            else:
                ids = [root_id, *store.descendant_ids(root_id)]
            counts = Counter(store.derived_status(node_id) for node_id in ids)
        return {status: counts.get(status, 0) for status in ISSUE_STATUSES}
