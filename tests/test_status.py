from __future__ import annotations

import pytest

from issuegraph.errors import ValidationError
from issuegraph.graph import TaskGraph
from issuegraph.status import combine_statuses


@pytest.mark.parametrize(
    ("children", "expected"),
    [
        (["closed", "closed"], "closed"),
        (["closed", "failed"], "failed"),
        (["open", "failed"], "failed"),
        (["closed", "open"], "in_progress"),
        (["in_progress", "open"], "in_progress"),
        (["open", "open"], "open"),
    ],
)
def test_and_combination(children: list[str], expected: str) -> None:
    assert combine_statuses("and", children) == expected


@pytest.mark.parametrize("dtype", ["or_fallback", "or_race"])
@pytest.mark.parametrize(
    ("children", "expected"),
    [
        (["failed", "closed"], "closed"),
        (["failed", "failed"], "failed"),
        (["failed", "in_progress"], "in_progress"),
        (["failed", "open"], "open"),
    ],
)
def test_or_combination(dtype: str, children: list[str], expected: str) -> None:
    assert combine_statuses(dtype, children) == expected


def test_choice_combination() -> None:
    assert combine_statuses("choice", ["open", "closed"]) == "open"
    assert combine_statuses("choice", ["failed", "closed"]) == "in_progress"
    assert combine_statuses("choice", ["open", "closed"], chosen_status="open") == "open"


def test_combination_needs_children() -> None:
    with pytest.raises(ValueError):
        combine_statuses("and", [])


class TestDerivedStatus:
    def test_nested_containers(self, graph: TaskGraph) -> None:
        goal = graph.create("Goal")
        phase, other = graph.decompose(goal.id, [{"title": "Phase"}, {"title": "Other"}])
        first, second = graph.decompose(
            phase.id, [{"title": "Plan A"}, {"title": "Plan B"}], "or_fallback"
        )

        graph.mark_failed(first.id, "did not fit")
        assert graph.get_derived_status(phase.id) == "open"

        graph.set_status(second.id, "closed")
        assert graph.get_derived_status(phase.id) == "closed"
        assert graph.get_derived_status(goal.id) == "in_progress"

        graph.set_status(other.id, "closed")
        assert graph.get_derived_status(goal.id) == "closed"
        assert graph.require(goal.id).status == "closed"

    def test_reads_do_not_mutate(self, graph: TaskGraph) -> None:
        goal = graph.create("Goal")
        graph.decompose(goal.id, [{"title": "a"}])
        revision = graph.store.revision

        graph.get_derived_status(goal.id)
        graph.get_derived_status(goal.id)

        assert graph.store.revision == revision

    def test_container_status_is_not_writable(self, graph: TaskGraph) -> None:
        goal = graph.create("Goal")
        graph.decompose(goal.id, [{"title": "a"}])
        with pytest.raises(ValidationError, match="container"):
            graph.set_status(goal.id, "closed")
        with pytest.raises(ValidationError, match="container"):
            graph.mark_failed(goal.id, "gave up")

    def test_mark_failed_needs_reason(self, graph: TaskGraph) -> None:
        issue = graph.create("task")
        with pytest.raises(ValidationError, match="failure reason cannot be empty"):
            graph.mark_failed(issue.id, "  ")

    def test_status_counts(self, graph: TaskGraph) -> None:
        goal = graph.create("Goal")
        first, _ = graph.decompose(goal.id, [{"title": "a"}, {"title": "b"}])
        graph.set_status(first.id, "closed")
        graph.create("elsewhere")

        assert graph.status.status_counts(goal.id) == {
            "open": 1,
            "in_progress": 1,
            "closed": 1,
            "failed": 0,
        }
        assert graph.status.status_counts()["open"] == 2


class TestChoice:
    def test_choice_follows_winner(self, graph: TaskGraph) -> None:
        decision = graph.create("Pick roofing")
        metal, shingle = graph.decompose(
            decision.id, [{"title": "Metal"}, {"title": "Shingle"}], "choice"
        )

        graph.set_status(metal.id, "closed")
        graph.mark_failed(shingle.id, "too heavy")
        assert graph.get_derived_status(decision.id) == "in_progress"

        chosen = graph.choose(decision.id, metal.id)
        assert chosen.chosen_child_id == metal.id
        assert chosen.status == "closed"

    def test_winner_status_propagates(self, graph: TaskGraph) -> None:
        decision = graph.create("Pick roofing")
        metal, _ = graph.decompose(
            decision.id, [{"title": "Metal"}, {"title": "Shingle"}], "choice"
        )
        graph.choose(decision.id, metal.id)
        assert graph.get_derived_status(decision.id) == "open"

        graph.set_status(metal.id, "in_progress")
        assert graph.get_derived_status(decision.id) == "in_progress"

    def test_choose_rejects_non_choice_and_strangers(self, graph: TaskGraph) -> None:
        plain = graph.create("Plain")
        child, = graph.decompose(plain.id, [{"title": "child"}])
        with pytest.raises(ValidationError, match="not a choice container"):
            graph.choose(plain.id, child.id)

        decision = graph.create("Decision")
        graph.decompose(decision.id, [{"title": "option"}], "choice")
        with pytest.raises(ValidationError, match="is not a child of"):
            graph.choose(decision.id, child.id)

    def test_switching_type_clears_winner(self, graph: TaskGraph) -> None:
        decision = graph.create("Decision")
        option, _ = graph.decompose(
            decision.id, [{"title": "A"}, {"title": "B"}], "choice"
        )
        graph.choose(decision.id, option.id)

        updated = graph.set_decomposition_type(decision.id, "and")

        assert updated.chosen_child_id is None
