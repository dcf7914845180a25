from __future__ import annotations

import pytest

from issuegraph.errors import CycleError, NotFoundError, ValidationError
from issuegraph.graph import TaskGraph
from issuegraph.models import Edge


def _rows(graph: TaskGraph) -> list[dict]:
    return [issue.to_dict() for issue in graph.snapshot()]


def _chain(graph: TaskGraph) -> tuple[str, str, str]:
    """A -> B -> C (A waits on B, B waits on C)."""
    a = graph.create("A", issue_id="A")
    b = graph.create("B", issue_id="B")
    c = graph.create("C", issue_id="C")
    graph.add_dependency(a.id, b.id)
    graph.add_dependency(b.id, c.id)
    return a.id, b.id, c.id


class TestAddDependency:
    def test_links_both_directions(self, graph: TaskGraph) -> None:
        a, b, c = _chain(graph)

        assert graph.require(a).dependencies == [b]
        assert [issue.id for issue in graph.get_blockers(a)] == [b]
        assert [issue.id for issue in graph.get_blocking(c)] == [b]
        assert graph.get_transitive_dependencies(a) == [b, c]

    def test_rejects_self_dependency(self, graph: TaskGraph) -> None:
        issue = graph.create("loner")
        with pytest.raises(ValidationError, match="cannot depend on itself"):
            graph.add_dependency(issue.id, issue.id)

    def test_unknown_endpoints(self, graph: TaskGraph) -> None:
        issue = graph.create("real")
        with pytest.raises(NotFoundError, match="unknown issue: ghost"):
            graph.add_dependency(issue.id, "ghost")
        with pytest.raises(NotFoundError, match="unknown issue: ghost"):
            graph.add_dependency("ghost", issue.id)

    def test_duplicate_edge_is_a_no_op(self, graph: TaskGraph) -> None:
        a, b, _ = _chain(graph)
        revision = graph.store.revision
        graph.add_dependency(a, b)
        assert graph.store.revision == revision
        assert graph.require(a).dependencies == [b]

    def test_cycle_reports_every_edge_on_it(self, graph: TaskGraph) -> None:
        a, b, c = _chain(graph)

        with pytest.raises(CycleError) as excinfo:
            graph.add_dependency(c, a)

        options = excinfo.value.cycle_break_options
        assert set(options) == {Edge(a, b), Edge(b, c), Edge(c, a)}
        assert graph.require(c).dependencies == []

    def test_rejected_add_leaves_graph_unchanged(self, graph: TaskGraph) -> None:
        a, _, c = _chain(graph)
        before = _rows(graph)

        with pytest.raises(CycleError):
            graph.add_dependency(c, a)

        assert _rows(graph) == before

    @pytest.mark.parametrize("index", [0, 1])
    def test_removing_any_existing_cycle_edge_allows_the_add(self, index: int) -> None:
        graph = TaskGraph()
        a, b, c = _chain(graph)
        with pytest.raises(CycleError) as excinfo:
            graph.add_dependency(c, a)
        existing = [edge for edge in excinfo.value.cycle_break_options if edge != Edge(c, a)]

        graph.add_dependency_breaking_cycle(c, a, existing[index])

        assert graph.require(c).dependencies == [a]
        removed = existing[index]
        assert removed.to_id not in graph.require(removed.from_id).dependencies

    def test_cycle_error_payload(self, graph: TaskGraph) -> None:
        a, b, c = _chain(graph)
        with pytest.raises(CycleError) as excinfo:
            graph.add_dependency(c, a)

        payload = excinfo.value.to_dict()
        assert payload["issue_id"] == c
        assert payload["depends_on_id"] == a
        assert {"from": a, "to": b} in payload["cycle_break_options"]


class TestRemoveAndReverse:
    def test_remove_is_idempotent(self, graph: TaskGraph) -> None:
        a, b, _ = _chain(graph)
        graph.remove_dependency(a, b)
        revision = graph.store.revision
        graph.remove_dependency(a, b)

        assert graph.require(a).dependencies == []
        assert graph.store.revision == revision
        assert graph.get_blocking(b) == []

    def test_reverse_flips_edge(self, graph: TaskGraph) -> None:
        a, b, _ = _chain(graph)
        graph.reverse_dependency(a, b)

        assert graph.require(a).dependencies == []
        assert a in graph.require(b).dependencies

    def test_reverse_missing_edge(self, graph: TaskGraph) -> None:
        a, _, c = _chain(graph)
        with pytest.raises(ValidationError, match=f"{a} does not depend on {c}"):
            graph.reverse_dependency(a, c)

    def test_reverse_into_cycle_leaves_graph_unchanged(self, graph: TaskGraph) -> None:
        a, b, c = _chain(graph)
        graph.add_dependency(a, c)
        before = _rows(graph)

        with pytest.raises(CycleError):
            graph.reverse_dependency(a, c)

        assert _rows(graph) == before
        assert graph.require(a).dependencies == [b, c]
        assert [issue.id for issue in graph.get_blocking(c)] == [b, a]

    def test_breaking_wrong_edge_leaves_graph_unchanged(self, graph: TaskGraph) -> None:
        a, b, c = _chain(graph)
        graph.add_dependency(a, c)
        before = _rows(graph)

        with pytest.raises(CycleError) as excinfo:
            graph.add_dependency_breaking_cycle(c, a, Edge(a, b))

        assert _rows(graph) == before
        assert graph.require(a).dependencies == [b, c]
        assert set(excinfo.value.cycle_break_options) == {Edge(a, c), Edge(c, a)}


class TestQueries:
    def test_closed_dependencies_stop_blocking(self, graph: TaskGraph) -> None:
        a, b, c = _chain(graph)
        assert [issue.id for issue in graph.get_blocked()] == [a, b]

        graph.set_status(c, "closed")

        assert [issue.id for issue in graph.get_blocked()] == [a]
        assert graph.get_blockers(b) == []

    def test_container_dependency_follows_derived_status(self, graph: TaskGraph) -> None:
        phase = graph.create("Phase")
        step, = graph.decompose(phase.id, [{"title": "step"}])
        waiter = graph.create("waiter", dependencies=[phase.id])
        assert [issue.id for issue in graph.get_blockers(waiter.id)] == [phase.id]

        graph.set_status(step.id, "closed")

        assert graph.get_blockers(waiter.id) == []

    def test_would_create_cycle(self, graph: TaskGraph) -> None:
        a, _, c = _chain(graph)
        assert graph.dependencies.would_create_cycle(c, a)
        assert not graph.dependencies.would_create_cycle(a, c)


class TestCleanup:
    def test_remove_redundant_dependencies(self, graph: TaskGraph) -> None:
        a, b, c = _chain(graph)
        graph.add_dependency(a, c)

        assert graph.remove_redundant_dependencies() == 1
        assert graph.require(a).dependencies == [b]
        assert graph.remove_redundant_dependencies() == 0

    def test_remove_invalid_dependencies(self, graph: TaskGraph) -> None:
        graph.load(
            [
                {"id": "a", "title": "A", "dependencies": ["b"]},
                {"id": "b", "title": "B"},
            ]
        )
        # Simulate a stale edge left behind by an external edit.
        graph.store.node("a").dependencies.append("gone")

        assert graph.remove_invalid_dependencies() == 1
        assert graph.require("a").dependencies == ["b"]
