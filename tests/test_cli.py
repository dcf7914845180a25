from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from issuegraph.cli import main
from issuegraph.graph import TaskGraph
from issuegraph.ui import resolve_output_mode


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> str:
    main(list(argv))
    return capsys.readouterr().out


def _new(capsys: pytest.CaptureFixture[str], *argv: str) -> str:
    return _run(capsys, "new", *argv).strip()


def _fail(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, str]:
    with pytest.raises(SystemExit) as excinfo:
        main(list(argv))
    return excinfo.value.code, capsys.readouterr().err


class TestIssueCommands:
    def test_new_list_show(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        issue_id = _new(capsys, "Tile the floor", "-p", "1", "--criterion", "grout dry")

        listing = _run(capsys, "list")
        assert "Tile the floor" in listing
        assert issue_id in listing
        assert "P1" in listing

        shown = _run(capsys, "show", issue_id)
        assert shown.splitlines()[0] == "Tile the floor"
        assert "priority: P1 - High" in shown
        assert "criterion: grout dry" in shown
        assert "actionable: yes" in shown

    def test_json_output_carries_iso_timestamps(
        self, state_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        payload = json.loads(_run(capsys, "new", "Paint", "--json"))
        assert payload["title"] == "Paint"
        assert payload["created_at_iso"].endswith("Z")

    def test_status_fail_and_state_survives(
        self, state_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        first = _new(capsys, "first")
        second = _new(capsys, "second")

        assert _run(capsys, "status", first, "closed").strip() == f"{first} closed"
        assert _run(capsys, "fail", second, "-r", "no budget").strip() == f"{second} failed"

        graph = TaskGraph.from_workdir()
        assert graph.require(second).failure_reason == "no budget"

    def test_unknown_issue(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code, err = _fail(capsys, "show", "nope")
        assert code == 1
        assert err.strip() == "error: unknown issue: nope"

    def test_delete_requires_yes(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        issue_id = _new(capsys, "doomed")

        code, err = _fail(capsys, "delete", issue_id)
        assert code == 1
        assert "--yes" in err

        assert _run(capsys, "delete", issue_id, "--yes").strip() == f"deleted {issue_id}"
        assert _run(capsys, "list").strip() == "(no issues)"

    def test_read_only_command_does_not_create_state(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        state = tmp_path / "state"
        monkeypatch.setenv("ISSUEGRAPH_STATE_DIR", str(state))
        monkeypatch.chdir(tmp_path)

        assert _run(capsys, "list").strip() == "(no issues)"
        assert not state.exists()


class TestDependencyCommands:
    def test_cycle_lists_break_options(
        self, state_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        a = _new(capsys, "A")
        b = _new(capsys, "B")
        _run(capsys, "dep", "add", a, b)

        code, err = _fail(capsys, "dep", "add", b, a)

        assert code == 1
        assert "would create a cycle" in err
        assert f"  {a}:{b}" in err
        assert f"  {b}:{a}" in err

        out = _run(capsys, "dep", "add", b, a, "--break", f"{a}:{b}")
        assert out.strip() == f"{b} depends on: {a}"

    def test_bad_break_edge(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        a = _new(capsys, "A")
        b = _new(capsys, "B")
        code, err = _fail(capsys, "dep", "add", a, b, "--break", "nonsense")
        assert code == 1
        assert "expected FROM:TO" in err

    def test_rm_and_reverse(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        a = _new(capsys, "A")
        b = _new(capsys, "B")
        _run(capsys, "dep", "add", a, b)

        assert _run(capsys, "dep", "reverse", a, b).strip() == f"{b} depends on: {a}"
        assert _run(capsys, "dep", "rm", b, a).strip() == f"{b} depends on: (none)"


class TestPlanningCommands:
    def test_decompose_and_tree(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        goal = _new(capsys, "Bathroom", "-t", "goal")
        out = _run(capsys, "decompose", goal, "-c", "Demo", "-c", "Plumbing", "--type", "and")
        demo, plumbing = out.split()

        tree = _run(capsys, "tree", "--output", "plain").splitlines()
        assert tree[0] == f"{goal} open (and) Bathroom"
        assert tree[1] == f"  {demo} open Demo"
        assert tree[2] == f"  {plumbing} open Plumbing"

    def test_decompose_from_yaml_file(
        self, state_dir: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        goal = _new(capsys, "Deck")
        plan = tmp_path / "plan.yaml"
        plan.write_text(
            "children:\n"
            "  - title: Footings\n"
            "    priority: 1\n"
            "  - title: Joists\n"
            "    depends_on_index: [0]\n",
            encoding="utf-8",
        )

        created = json.loads(_run(capsys, "decompose", goal, "-f", str(plan), "--json"))

        assert [child["title"] for child in created] == ["Footings", "Joists"]
        assert created[1]["dependencies"] == [created[0]["id"]]

    def test_decompose_from_stdin(
        self,
        state_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        goal = _new(capsys, "Fence")
        monkeypatch.setattr("sys.stdin", io.StringIO('[{"title": "Posts"}]'))

        out = _run(capsys, "decompose", goal, "-f", "-")

        assert len(out.split()) == 1

    def test_decompose_needs_children(
        self, state_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        goal = _new(capsys, "Nothing")
        code, err = _fail(capsys, "decompose", goal)
        assert code == 1
        assert "no children given" in err

    def test_choose(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        goal = _new(capsys, "Countertop")
        stone, _ = _run(
            capsys, "decompose", goal, "-c", "Stone", "-c", "Wood", "--type", "choice"
        ).split()
        _run(capsys, "status", stone, "closed")

        assert _run(capsys, "choose", goal, stone).strip() == f"{goal} closed"

    def test_next_and_ready(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        base = _new(capsys, "Base")
        _new(capsys, "Top", "--dep", base)
        auto = _new(capsys, "Script", "--execution-type", "automated")

        payload = json.loads(_run(capsys, "next", "--json"))
        assert payload["task"]["id"] == base
        assert [item["task"]["id"] for item in payload["alternates"]] == [auto]

        ready = _run(capsys, "ready", "--execution-type", "automated")
        assert auto in ready
        assert base not in ready

    def test_next_with_nothing_ready(
        self, state_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert _run(capsys, "next").strip() == "(no ready tasks)"

    def test_constraints(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        goal = _new(capsys, "Kitchen")
        child = _run(capsys, "decompose", goal, "-c", "Cabinets").strip()
        _run(capsys, "constraints", goal, "--add", "budget", "Under 15k")

        items = json.loads(_run(capsys, "constraints", child, "--json"))

        assert [(item["type"], item["description"]) for item in items] == [
            ("budget", "Under 15k")
        ]
        code, err = _fail(capsys, "constraints", goal, "--remove", "missing")
        assert code == 1
        assert "unknown constraint: missing" in err

    def test_scope(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        goal = _new(capsys, "Kitchen refresh", "-t", "goal")
        child = _run(capsys, "decompose", goal, "-c", "Move the electrical wiring").strip()

        payload = json.loads(
            _run(capsys, "scope", goal, "--exclude", "electrical wiring", "--record", "--json")
        )

        assert payload["has_expanded"] is True
        assert payload["expansions"][0]["issue"]["id"] == child
        assert len(payload["recorded"]) == 1
        assert _run(capsys, "scope", goal).strip() == "(within scope)"
        shown = _run(capsys, "show", goal)
        assert (
            "concern [Consideration, open]: Possible scope expansion: Move the electrical wiring"
            in shown
        )

    def test_validate(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(capsys, "validate").strip() == "(plan is valid)"

        a = _new(capsys, "A", "--criterion", "done")
        b = _new(capsys, "B", "--criterion", "done", "--dep", a)
        _new(capsys, "C", "--criterion", "done", "--dep", a, "--dep", b)

        out = _run(capsys, "validate")
        assert "redundant_dependency" in out

        payload = json.loads(_run(capsys, "validate", "--fix", "--json"))
        assert payload["fixed"] == {"invalid": 0, "redundant": 1}
        assert payload["warnings"] == []
        assert payload["health"]["is_healthy"] is True


class TestOutputMode:
    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ISSUEGRAPH_OUTPUT", "rich")
        assert resolve_output_mode(None, is_tty=False) == "rich"
        assert resolve_output_mode("plain", is_tty=True) == "plain"

    def test_auto_follows_tty(self) -> None:
        assert resolve_output_mode("auto", is_tty=True) == "rich"
        assert resolve_output_mode(None, is_tty=False) == "plain"

    def test_bad_env_value_exits_2(
        self,
        state_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("ISSUEGRAPH_OUTPUT", "fancy")
        code, err = _fail(capsys, "list")
        assert code == 2
        assert "ISSUEGRAPH_OUTPUT" in err

    def test_rich_listing(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        _new(capsys, "Hang [bold]shelves[/bold]")
        out = _run(capsys, "list", "--output", "rich")
        assert "Issues" in out
        assert "shelves" in out

    def test_rich_tree(self, state_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        goal = _new(capsys, "Porch", "-p", "0")
        _run(capsys, "decompose", goal, "-c", "Railing", "-c", "Steps")

        out = _run(capsys, "tree", "--output", "rich")

        assert out.index("Porch") < out.index("Railing") < out.index("Steps")
        assert "(and)" in out
