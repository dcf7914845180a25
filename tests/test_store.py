from __future__ import annotations

import pytest

from issuegraph.errors import NotFoundError, ValidationError
from issuegraph.graph import TaskGraph
from issuegraph.store import GraphStore, MutationEvent, ProjectRegistry


class TestCreate:
    def test_defaults_and_generated_id(self) -> None:
        store = GraphStore(id_prefix="plan")
        issue = store.create("  Pour foundation  ")

        assert issue.id.startswith("plan-")
        assert issue.title == "Pour foundation"
        assert issue.status == "open"
        assert issue.priority == 2
        assert issue.type == "task"
        assert issue.created_at == issue.updated_at > 0

    def test_rejects_empty_title(self) -> None:
        with pytest.raises(ValidationError, match="title cannot be empty"):
            GraphStore().create("   ")

    def test_rejects_bad_enums(self) -> None:
        store = GraphStore()
        with pytest.raises(ValidationError, match="invalid status"):
            store.create("x", status="done")
        with pytest.raises(ValidationError, match="priority must be between 0 and 4"):
            store.create("x", priority=7)
        with pytest.raises(ValidationError, match="invalid issue type"):
            store.create("x", issue_type="epic")

    def test_unknown_dependency(self) -> None:
        store = GraphStore()
        with pytest.raises(NotFoundError, match="unknown issue: nope"):
            store.create("x", dependencies=["nope"])
        assert len(store) == 0

    def test_dependency_ids_are_stored_normalized(self, graph: TaskGraph) -> None:
        graph.create("Permit", issue_id="d1")
        issue = graph.create("Frame", dependencies=[" d1 ", "d1"])

        assert issue.dependencies == ["d1"]
        assert [i.id for i in graph.get_blocking("d1")] == [issue.id]

        graph.delete("d1")

        assert graph.require(issue.id).dependencies == []
        assert [i.id for i in graph.get_ready_issues()] == [issue.id]

    def test_explicit_id_must_be_unique(self) -> None:
        store = GraphStore()
        store.create("a", issue_id="a")
        with pytest.raises(ValidationError, match="duplicate issue id: a"):
            store.create("again", issue_id="a")

    def test_timestamps_never_go_backwards(self) -> None:
        store = GraphStore()
        first = store.create("first")
        second = store.create("second")
        updated = store.update(first.id, title="first, renamed")

        assert second.created_at >= first.created_at
        assert updated.updated_at >= second.created_at


class TestReads:
    def test_reads_return_copies(self) -> None:
        store = GraphStore()
        issue = store.create("original")

        view = store.get_by_id(issue.id)
        assert view is not None
        view.title = "mutated"
        view.dependencies.append("ghost")

        fresh = store.require(issue.id)
        assert fresh.title == "original"
        assert fresh.dependencies == []

    def test_missing_issue(self) -> None:
        store = GraphStore()
        assert store.get_by_id("missing") is None
        with pytest.raises(NotFoundError, match="unknown issue: missing"):
            store.require("missing")

    def test_list_filters_on_derived_status(self, graph: TaskGraph) -> None:
        goal = graph.create("Goal", issue_type="goal")
        done, = graph.decompose(goal.id, [{"title": "only step"}])
        loose = graph.create("Loose end")
        graph.set_status(done.id, "closed")

        closed_ids = {issue.id for issue in graph.list(status="closed")}
        assert closed_ids == {goal.id, done.id}
        assert [issue.id for issue in graph.list(status="open")] == [loose.id]
        assert {issue.id for issue in graph.list(roots_only=True)} == {goal.id, loose.id}
        assert [issue.id for issue in graph.list(issue_type="goal")] == [goal.id]

    def test_snapshot_keeps_raw_container_status(self, graph: TaskGraph) -> None:
        goal = graph.create("Goal")
        child, = graph.decompose(goal.id, [{"title": "step"}])
        graph.set_status(child.id, "closed")

        raw = {issue.id: issue for issue in graph.snapshot()}
        assert raw[goal.id].status == "open"
        assert graph.require(goal.id).status == "closed"


class TestUpdate:
    def test_field_updates(self) -> None:
        store = GraphStore()
        issue = store.create("draft")
        updated = store.update(
            issue.id,
            title="final",
            priority=0,
            execution_type="automated",
            success_criteria=["tests pass", "tests pass", " "],
        )
        assert updated.title == "final"
        assert updated.priority == 0
        assert updated.execution_type == "automated"
        assert updated.success_criteria == ["tests pass"]

    def test_no_changes_keeps_revision(self) -> None:
        store = GraphStore()
        issue = store.create("same")
        revision = store.revision
        store.update(issue.id)
        assert store.revision == revision

    def test_container_rejects_status_write(self, graph: TaskGraph) -> None:
        goal = graph.create("Goal")
        graph.decompose(goal.id, [{"title": "step"}])
        with pytest.raises(ValidationError, match="cannot set status on container"):
            graph.update(goal.id, status="closed")

    def test_leaving_failed_clears_reason(self, graph: TaskGraph) -> None:
        issue = graph.create("risky")
        graph.mark_failed(issue.id, "supplier went bust")
        assert graph.require(issue.id).failure_reason == "supplier went bust"

        reopened = graph.set_status(issue.id, "open")
        assert reopened.failure_reason is None

    def test_failure_reason_requires_failed_status(self, graph: TaskGraph) -> None:
        issue = graph.create("fine")
        with pytest.raises(ValidationError, match="only be set on failed"):
            graph.update(issue.id, status="closed", failure_reason="nope")


class TestDelete:
    def test_cascades_and_strips_dependencies(self, graph: TaskGraph) -> None:
        root = graph.create("Root")
        a, b = graph.decompose(root.id, [{"title": "a"}, {"title": "b"}])
        outsider = graph.create("outsider", dependencies=[a.id, b.id])
        keeper = graph.create("keeper")
        graph.add_dependency(outsider.id, keeper.id)

        removed = graph.delete(root.id)

        assert removed == [a.id, b.id, root.id]
        assert len(graph.store) == 2
        assert graph.require(outsider.id).dependencies == [keeper.id]
        assert [issue.id for issue in graph.get_blocking(keeper.id)] == [outsider.id]

    def test_last_child_turns_parent_back_into_leaf(self, graph: TaskGraph) -> None:
        parent = graph.create("Parent")
        child, = graph.decompose(parent.id, [{"title": "child"}], "choice")
        graph.choose(parent.id, child.id)
        graph.set_status(child.id, "failed")

        graph.delete(child.id)

        reverted = graph.require(parent.id)
        assert graph.is_leaf(parent.id)
        assert reverted.decomposition_type is None
        assert reverted.chosen_child_id is None
        assert reverted.status == "open"
        graph.set_status(parent.id, "in_progress")

    def test_deleting_chosen_child_clears_choice(self, graph: TaskGraph) -> None:
        parent = graph.create("Pick a vendor")
        first, second = graph.decompose(
            parent.id, [{"title": "Vendor A"}, {"title": "Vendor B"}], "choice"
        )
        graph.choose(parent.id, first.id)

        graph.delete(first.id)

        assert graph.require(parent.id).chosen_child_id is None
        assert [c.id for c in graph.get_children(parent.id)] == [second.id]

    def test_unknown_issue(self, graph: TaskGraph) -> None:
        with pytest.raises(NotFoundError):
            graph.delete("ghost")


class TestEvents:
    def test_listener_sees_committed_mutations(self) -> None:
        store = GraphStore()
        events: list[MutationEvent] = []
        unsubscribe = store.subscribe(events.append)

        issue = store.create("watched")
        store.update(issue.id, title="still watched")
        unsubscribe()
        store.update(issue.id, title="unwatched")

        assert [event.kind for event in events] == ["create", "update"]
        assert events[0].issue_ids == (issue.id,)
        assert events[1].revision > events[0].revision

    def test_nested_mutations_flush_after_outer_section(self) -> None:
        store = GraphStore()
        events: list[MutationEvent] = []
        store.subscribe(events.append)

        with store.transaction():
            store.create("one")
            store.create("two")
            assert events == []

        assert [event.kind for event in events] == ["create", "create"]

    def test_failed_mutation_emits_nothing(self) -> None:
        store = GraphStore()
        events: list[MutationEvent] = []
        store.subscribe(events.append)

        with pytest.raises(NotFoundError):
            store.create("orphan", dependencies=["missing"])
        assert events == []

    def test_status_event_carries_ancestor_statuses(self, graph: TaskGraph) -> None:
        goal = graph.create("Goal")
        phase, = graph.decompose(goal.id, [{"title": "Phase"}])
        first, _ = graph.decompose(phase.id, [{"title": "one"}, {"title": "two"}])
        events: list[MutationEvent] = []
        graph.subscribe(events.append)

        graph.set_status(first.id, "closed")

        event, = events
        assert event.kind == "status"
        assert event.recompute == (phase.id, goal.id)
        assert event.derived == {phase.id: "in_progress", goal.id: "in_progress"}


class TestLoad:
    def test_replaces_graph(self) -> None:
        store = GraphStore()
        store.create("stale")
        store.load(
            [
                {"id": "a", "title": "A"},
                {"id": "b", "title": "B", "dependencies": ["a"]},
            ]
        )
        assert [issue.id for issue in store.snapshot()] == ["a", "b"]
        assert store.dependent_ids("a") == ["b"]

    def test_dangling_dependency_rejected_unless_repaired(self) -> None:
        rows = [{"id": "a", "title": "A", "dependencies": ["ghost"]}]
        store = GraphStore()
        with pytest.raises(ValidationError, match="depends on unknown issue: ghost"):
            store.load(rows)
        assert len(store) == 0

        store.load(rows, repair=True)
        assert store.require("a").dependencies == []

    def test_repair_fixes_decomposition_markers(self) -> None:
        store = GraphStore()
        store.load(
            [
                {"id": "p", "title": "P"},
                {"id": "c", "title": "C", "parent_id": "p"},
                {"id": "leaf", "title": "Leaf", "decomposition_type": "or_race"},
            ],
            repair=True,
        )
        assert store.require("p").decomposition_type == "and"
        assert store.require("leaf").decomposition_type is None

    def test_cycles_always_rejected(self) -> None:
        rows = [
            {"id": "a", "title": "A", "dependencies": ["b"]},
            {"id": "b", "title": "B", "dependencies": ["a"]},
        ]
        with pytest.raises(ValidationError, match="dependency cycle detected"):
            GraphStore().load(rows, repair=True)

    def test_duplicate_ids_rejected(self) -> None:
        rows = [{"id": "a", "title": "A"}, {"id": "a", "title": "again"}]
        with pytest.raises(ValidationError, match="duplicate issue id: a"):
            GraphStore().load(rows)


class TestProjectRegistry:
    def test_projects_are_independent(self) -> None:
        registry = ProjectRegistry(id_prefix="job")
        house = registry.get("house")
        garden = registry.get("garden")

        house.create("roof")

        assert registry.get("house") is house
        assert len(house) == 1
        assert len(garden) == 0
        assert house.project_id == "house"
        assert registry.projects() == ["garden", "house"]
        assert registry.drop("garden") is True
        assert registry.projects() == ["house"]

    def test_rejects_blank_project(self) -> None:
        with pytest.raises(ValidationError, match="project id cannot be empty"):
            ProjectRegistry().get("  ")
