from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from rich.markup import escape

from . import __version__
from .errors import CycleError
from .graph import TaskGraph
from .models import (
    CONCERN_TIER_LABELS,
    CONSTRAINT_TYPES,
    DECOMPOSITION_TYPES,
    EXECUTION_TYPES,
    ISSUE_STATUSES,
    ISSUE_TYPES,
    PRIORITY_LABELS,
    Edge,
    Issue,
)
from .ui import (
    OutputMode,
    add_output_mode_argument,
    build_tree,
    make_console,
    outline,
    print_columns,
    render_panel,
    render_table,
    resolve_output_mode,
    styled_priority,
    styled_status,
)

_ISSUE_HEADERS = ("ID", "STATUS", "PR", "TYPE", "TITLE")
_RANK_HEADERS = ("ID", "SCORE", "PR", "TITLE", "REASONS")
_READ_ONLY = {"list", "show", "tree", "ready", "next", "validate"}


def _iso_from_epoch_ms(value: object) -> str | None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        return None
    try:
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _with_iso_timestamps(payload: Any) -> Any:
    if isinstance(payload, dict):
        out: dict[str, Any] = {}
        for key, value in payload.items():
            out[key] = _with_iso_timestamps(value)
            if key.endswith("_at"):
                iso = _iso_from_epoch_ms(value)
                if iso:
                    out[f"{key}_iso"] = iso
        return out
    if isinstance(payload, list):
        return [_with_iso_timestamps(item) for item in payload]
    return payload


def _emit_json(payload: Any) -> None:
    print(json.dumps(_with_iso_timestamps(payload), ensure_ascii=False, indent=2))


def _truncate(value: object, limit: int) -> str:
    text = str(value or "").strip()
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


def _issue_columns(issue: Issue, mode: OutputMode = "plain") -> tuple[str, ...]:
    return (
        issue.id,
        styled_status(issue.status, mode),
        styled_priority(issue.priority, mode),
        issue.type,
        _truncate(escape(issue.title) if mode == "rich" else issue.title, 60),
    )


def _print_rows(
    headers: tuple[str, ...],
    rows: list[tuple[str, ...]],
    *,
    mode: OutputMode,
    title: str,
    empty: str,
) -> None:
    if not rows:
        if mode == "rich":
            render_panel(make_console("rich"), empty, title=title)
        else:
            print(empty)
        return
    if mode == "rich":
        render_table(
            make_console("rich"),
            title=title,
            headers=headers,
            rows=rows,
            no_wrap_columns=(0, 1, 2),
        )
        return
    print_columns(headers, rows)


def _print_issues(issues: list[Issue], *, mode: OutputMode, title: str, empty: str) -> None:
    _print_rows(
        _ISSUE_HEADERS,
        [_issue_columns(issue, mode) for issue in issues],
        mode=mode,
        title=title,
        empty=empty,
    )


def _issue_details(graph: TaskGraph, issue: Issue) -> dict[str, Any]:
    payload = issue.to_dict()
    payload["children"] = [child.id for child in graph.get_children(issue.id)]
    payload["blockers"] = [dep.id for dep in graph.get_blockers(issue.id)]
    payload["actionable"] = graph.is_actionable(issue.id)
    payload["effective_constraints"] = [
        item.to_dict() for item in graph.get_effective_constraints(issue.id)
    ]
    return payload


def _print_details(payload: dict[str, Any], *, mode: OutputMode) -> None:
    lines = [
        f"id: {payload['id']}",
        f"type: {payload['type']}",
        f"status: {payload['status']}",
        f"priority: {PRIORITY_LABELS[payload['priority']]}",
    ]
    if payload.get("parent_id"):
        lines.append(f"parent: {payload['parent_id']}")
    if payload.get("children"):
        lines.append(
            f"children ({payload['decomposition_type']}): {', '.join(payload['children'])}"
        )
    if payload.get("dependencies"):
        lines.append(f"depends on: {', '.join(payload['dependencies'])}")
    if payload.get("blockers"):
        lines.append(f"blocked by: {', '.join(payload['blockers'])}")
    lines.append(f"actionable: {'yes' if payload['actionable'] else 'no'}")
    if payload.get("execution_type"):
        lines.append(f"execution: {payload['execution_type']}")
    if payload.get("failure_reason"):
        lines.append(f"failure: {payload['failure_reason']}")
    for criterion in payload.get("success_criteria") or []:
        lines.append(f"criterion: {criterion}")
    for item in payload.get("effective_constraints") or []:
        lines.append(f"constraint [{item['type']}]: {item['description']}")
    for item in payload.get("concerns") or []:
        tier = CONCERN_TIER_LABELS[item["tier"]]
        lines.append(f"concern [{tier}, {item['status']}]: {item['title']}")
    if payload.get("description"):
        lines.extend(["", str(payload["description"]).strip()])

    if mode == "rich":
        render_panel(
            make_console("rich"),
            escape("\n".join(lines)),
            title=escape(payload["title"]),
        )
        return
    print(payload["title"])
    for line in lines:
        print(f"  {line}" if line else "")


def _tree_label(issue: Issue, mode: OutputMode) -> str:
    marker = f" ({issue.decomposition_type})" if issue.decomposition_type else ""
    title = escape(issue.title) if mode == "rich" else issue.title
    return f"{issue.id} {styled_status(issue.status, mode)}{marker} {title}"


def _print_tree(graph: TaskGraph, roots: list[Issue], *, mode: OutputMode) -> None:
    if not roots:
        print("(no issues)")
        return

    def label(issue: Issue) -> str:
        return _tree_label(issue, mode)

    def children(issue: Issue) -> list[Issue]:
        return graph.get_children(issue.id)

    if mode == "rich":
        console = make_console("rich")
        for root in roots:
            console.print(build_tree(root, label=label, children=children))
        return
    for root in roots:
        for line in outline(root, label=label, children=children):
            print(line)


def _parse_edge(raw: str) -> Edge:
    src, sep, dst = raw.partition(":")
    if not sep or not src.strip() or not dst.strip():
        raise ValueError(f"invalid edge {raw!r}; expected FROM:TO")
    return Edge(src.strip(), dst.strip())


def _load_children(args: argparse.Namespace) -> list[dict[str, Any]]:
    children: list[dict[str, Any]] = [{"title": title} for title in args.child or []]
    if args.file:
        try:
            text = (
                sys.stdin.read()
                if args.file == "-"
                else Path(args.file).read_text(encoding="utf-8")
            )
        except OSError as exc:
            raise ValueError(f"cannot read {args.file}: {exc.strerror}") from exc
        try:
            payload = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid children file {args.file}: {exc}") from exc
        if isinstance(payload, dict):
            payload = payload.get("children")
        if not isinstance(payload, list):
            raise ValueError("children file must hold a list of child objects")
        children.extend(payload)
    if not children:
        raise ValueError("no children given (use --child or --file)")
    return children


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="issuegraph",
        description="Plan work as a graph of issues.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command", required=True, metavar="command")

    new = sub.add_parser("new", help="Create a new issue")
    new.add_argument("title", help="Issue title")
    new.add_argument("-d", "--description", default="", help="Issue description")
    new.add_argument("-t", "--type", default="task", choices=ISSUE_TYPES)
    new.add_argument("-p", "--priority", type=int, default=2, help="Priority 0-4")
    new.add_argument("--dep", action="append", default=[], help="Blocking issue id")
    new.add_argument(
        "--criterion", action="append", default=[], help="Success criterion"
    )
    new.add_argument("--execution-type", choices=EXECUTION_TYPES)
    new.add_argument("--validation-required", action="store_true")
    new.add_argument("--json", action="store_true", help="Output JSON")

    ls = sub.add_parser("list", help="List issues")
    ls.add_argument("--status", choices=ISSUE_STATUSES)
    ls.add_argument("--type", choices=ISSUE_TYPES)
    ls.add_argument("--roots", action="store_true", help="Only top-level issues")
    ls.add_argument("--json", action="store_true", help="Output JSON")
    add_output_mode_argument(ls)

    show = sub.add_parser("show", help="Show one issue with details")
    show.add_argument("id", help="Issue id")
    show.add_argument("--json", action="store_true", help="Output JSON")
    add_output_mode_argument(show)

    status = sub.add_parser("status", help="Set a leaf issue's status")
    status.add_argument("id", help="Issue id")
    status.add_argument("value", choices=ISSUE_STATUSES)
    status.add_argument("--json", action="store_true", help="Output JSON")

    fail = sub.add_parser("fail", help="Mark a leaf issue failed")
    fail.add_argument("id", help="Issue id")
    fail.add_argument("-r", "--reason", required=True, help="Why it failed")
    fail.add_argument("--json", action="store_true", help="Output JSON")

    choose = sub.add_parser("choose", help="Pick the winner of a choice container")
    choose.add_argument("id", help="Choice container id")
    choose.add_argument("child", help="Chosen child id")
    choose.add_argument("--json", action="store_true", help="Output JSON")

    delete = sub.add_parser("delete", help="Delete an issue and its subtree")
    delete.add_argument("id", help="Issue id")
    delete.add_argument("--yes", action="store_true", help="Confirm delete operation")
    delete.add_argument("--json", action="store_true", help="Output JSON")

    dep = sub.add_parser("dep", help="Dependency operations")
    dep_sub = dep.add_subparsers(dest="dep_cmd", required=True, metavar="dep_cmd")
    dep_add = dep_sub.add_parser("add", help="ID becomes blocked by TARGET")
    dep_add.add_argument("id", help="Blocked issue id")
    dep_add.add_argument("target", help="Blocking issue id")
    dep_add.add_argument(
        "--break",
        dest="break_edge",
        metavar="FROM:TO",
        help="Remove this edge in the same step to resolve a cycle",
    )
    dep_add.add_argument("--json", action="store_true", help="Output JSON")
    dep_rm = dep_sub.add_parser("rm", help="Remove a dependency")
    dep_rm.add_argument("id", help="Blocked issue id")
    dep_rm.add_argument("target", help="Blocking issue id")
    dep_rm.add_argument("--json", action="store_true", help="Output JSON")
    dep_rev = dep_sub.add_parser("reverse", help="Flip a dependency's direction")
    dep_rev.add_argument("id", help="Blocked issue id")
    dep_rev.add_argument("target", help="Blocking issue id")
    dep_rev.add_argument("--json", action="store_true", help="Output JSON")

    decompose = sub.add_parser("decompose", help="Break an issue into children")
    decompose.add_argument("id", help="Parent issue id")
    decompose.add_argument(
        "-c", "--child", action="append", default=[], help="Child title (repeatable)"
    )
    decompose.add_argument(
        "-f", "--file", help="YAML or JSON list of child objects ('-' reads stdin)"
    )
    decompose.add_argument("--type", choices=DECOMPOSITION_TYPES)
    decompose.add_argument(
        "--merge", action="store_true", help="Append to existing children"
    )
    decompose.add_argument(
        "--best-effort", action="store_true", help="Skip invalid children"
    )
    decompose.add_argument("--json", action="store_true", help="Output JSON")

    tree = sub.add_parser("tree", help="Show the decomposition tree")
    tree.add_argument("id", nargs="?", help="Root issue id (default: all roots)")
    add_output_mode_argument(tree)

    for name, help_text in (
        ("ready", "List actionable issues"),
        ("next", "Recommend the next task"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument(
            "--execution-type",
            action="append",
            default=[],
            choices=EXECUTION_TYPES,
            help="Only these execution types (repeatable)",
        )
        cmd.add_argument("--json", action="store_true", help="Output JSON")
        add_output_mode_argument(cmd)
        if name == "next":
            cmd.add_argument("--limit", type=int, default=5, help="Candidates (default: 5)")

    constraints = sub.add_parser("constraints", help="Effective constraints of an issue")
    constraints.add_argument("id", help="Issue id")
    constraints.add_argument(
        "--add",
        nargs=2,
        metavar=("TYPE", "DESCRIPTION"),
        help=f"Attach a constraint ({', '.join(CONSTRAINT_TYPES)})",
    )
    constraints.add_argument("--remove", metavar="CONSTRAINT_ID")
    constraints.add_argument("--json", action="store_true", help="Output JSON")
    add_output_mode_argument(constraints)

    scope = sub.add_parser("scope", help="Scope boundary and expansion check")
    scope.add_argument("id", help="Goal issue id")
    scope.add_argument("--description", help="Set the boundary description")
    scope.add_argument("--include", action="append", default=[])
    scope.add_argument("--exclude", action="append", default=[])
    scope.add_argument("--condition", action="append", default=[])
    scope.add_argument(
        "--record", action="store_true", help="File concerns for flagged issues"
    )
    scope.add_argument("--json", action="store_true", help="Output JSON")
    add_output_mode_argument(scope)

    validate = sub.add_parser("validate", help="Check plan structure")
    validate.add_argument("id", nargs="?", help="Limit to this subtree")
    validate.add_argument(
        "--fix", action="store_true", help="Remove invalid and redundant dependencies"
    )
    validate.add_argument("--json", action="store_true", help="Output JSON")
    add_output_mode_argument(validate)

    serve = sub.add_parser("serve", help="Serve the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8765)

    return p


def _print_cycle(exc: CycleError) -> None:
    print(f"error: {exc}", file=sys.stderr)
    print("break one of these edges (dep add ... --break FROM:TO):", file=sys.stderr)
    for edge in exc.cycle_break_options:
        print(f"  {edge.from_id}:{edge.to_id}", file=sys.stderr)


def _run(graph: TaskGraph, args: argparse.Namespace, mode: OutputMode) -> int:
    cmd = args.command

    if cmd == "new":
        issue = graph.create(
            args.title,
            description=args.description,
            issue_type=args.type,
            priority=args.priority,
            dependencies=list(args.dep),
            success_criteria=list(args.criterion),
            execution_type=args.execution_type,
            validation_required=args.validation_required,
        )
        if args.json:
            _emit_json(issue.to_dict())
        else:
            print(issue.id)
        return 0

    if cmd == "list":
        rows = graph.list(status=args.status, issue_type=args.type, roots_only=args.roots)
        if args.json:
            _emit_json([issue.to_dict() for issue in rows])
        else:
            _print_issues(rows, mode=mode, title="Issues", empty="(no issues)")
        return 0

    if cmd == "show":
        payload = _issue_details(graph, graph.require(args.id))
        if args.json:
            _emit_json(payload)
        else:
            _print_details(payload, mode=mode)
        return 0

    if cmd in {"status", "fail", "choose"}:
        if cmd == "status":
            issue = graph.set_status(args.id, args.value)
        elif cmd == "fail":
            issue = graph.mark_failed(args.id, args.reason)
        else:
            issue = graph.choose(args.id, args.child)
        if args.json:
            _emit_json(issue.to_dict())
        else:
            print(f"{issue.id} {issue.status}")
        return 0

    if cmd == "delete":
        if not args.yes:
            print("error: refusing to delete without --yes", file=sys.stderr)
            return 1
        removed = graph.delete(args.id)
        if args.json:
            _emit_json({"deleted": removed})
        else:
            for issue_id in removed:
                print(f"deleted {issue_id}")
        return 0

    if cmd == "dep":
        try:
            if args.dep_cmd == "add" and args.break_edge:
                issue = graph.add_dependency_breaking_cycle(
                    args.id, args.target, _parse_edge(args.break_edge)
                )
            elif args.dep_cmd == "add":
                issue = graph.add_dependency(args.id, args.target)
            elif args.dep_cmd == "rm":
                issue = graph.remove_dependency(args.id, args.target)
            else:
                issue = graph.reverse_dependency(args.id, args.target)
        except CycleError as exc:
            if args.json:
                _emit_json(exc.to_dict())
            else:
                _print_cycle(exc)
            return 1
        if args.json:
            _emit_json(issue.to_dict())
        else:
            deps = ", ".join(issue.dependencies) or "(none)"
            print(f"{issue.id} depends on: {deps}")
        return 0

    if cmd == "decompose":
        created = graph.decompose(
            args.id,
            _load_children(args),
            args.type,
            merge=args.merge,
            atomic=not args.best_effort,
        )
        if args.json:
            _emit_json([issue.to_dict() for issue in created])
        else:
            for issue in created:
                print(issue.id)
        return 0

    if cmd == "tree":
        roots = [graph.require(args.id)] if args.id else graph.get_roots()
        _print_tree(graph, roots, mode=mode)
        return 0

    if cmd == "ready":
        ranked = graph.rank_ready_issues(args.execution_type or None)
        if args.json:
            _emit_json([item.to_dict() for item in ranked])
        else:
            _print_issues(
                [item.issue for item in ranked],
                mode=mode,
                title="Ready Issues",
                empty="(no ready issues)",
            )
        return 0

    if cmd == "next":
        result = graph.next_task(max(1, args.limit), args.execution_type or None)
        if args.json:
            _emit_json(result.to_dict())
            return 0
        if result.task is None:
            print("(no ready tasks)")
            return 0
        first = (result.task, result.score, result.reasons)
        rows = [
            (
                task.id,
                f"{score:g}",
                styled_priority(task.priority, mode),
                _truncate(escape(task.title) if mode == "rich" else task.title, 48),
                "; ".join(reasons),
            )
            for task, score, reasons in [
                first,
                *((item.issue, item.score, item.reasons) for item in result.alternates),
            ]
        ]
        _print_rows(_RANK_HEADERS, rows, mode=mode, title="Next Task", empty="")
        return 0

    if cmd == "constraints":
        if args.add:
            graph.add_constraint(
                args.id, {"type": args.add[0], "description": args.add[1]}
            )
        if args.remove and not graph.remove_constraint(args.id, args.remove):
            raise ValueError(f"unknown constraint: {args.remove}")
        items = graph.get_effective_constraints(args.id)
        if args.json:
            _emit_json([item.to_dict() for item in items])
        else:
            _print_rows(
                ("ID", "TYPE", "SOURCE", "DESCRIPTION"),
                [(c.id, c.type, c.source, _truncate(c.description, 60)) for c in items],
                mode=mode,
                title="Constraints",
                empty="(no constraints)",
            )
        return 0

    if cmd == "scope":
        if args.description is not None or args.include or args.exclude or args.condition:
            current = graph.require(args.id).scope_boundary
            boundary = current.to_dict() if current else {}
            if args.description is not None:
                boundary["description"] = args.description
            for key, values in (
                ("includes", args.include),
                ("excludes", args.exclude),
                ("boundary_conditions", args.condition),
            ):
                boundary[key] = [*boundary.get(key, []), *values]
            graph.set_scope_boundary(args.id, boundary)
        result = graph.detect_scope_expansion(args.id)
        recorded = graph.record_scope_expansions(args.id) if args.record else []
        if args.json:
            payload = result.to_dict()
            payload["recorded"] = [item.to_dict() for item in recorded]
            _emit_json(payload)
        else:
            _print_rows(
                ("ID", "TITLE", "REASON"),
                [
                    (item.issue.id, _truncate(item.issue.title, 48), item.reason)
                    for item in result.expansions
                ],
                mode=mode,
                title="Scope Expansion",
                empty="(within scope)",
            )
            if recorded:
                print(f"recorded {len(recorded)} concern(s)")
        return 0

    if cmd == "validate":
        fixed = {"invalid": 0, "redundant": 0}
        if args.fix:
            fixed["invalid"] = graph.remove_invalid_dependencies()
            fixed["redundant"] = graph.remove_redundant_dependencies()
        report = graph.validate_plan(args.id)
        if args.json:
            payload = report.to_dict()
            payload["health"] = graph.graph_health().to_dict()
            payload["fixed"] = fixed
            _emit_json(payload)
        else:
            rows = [
                ("error", item["code"], item["id"], item["message"])
                for item in report.errors
            ] + [
                ("warning", item["code"], item["id"], item["message"])
                for item in report.warnings
            ]
            _print_rows(
                ("LEVEL", "CODE", "ID", "MESSAGE"),
                rows,
                mode=mode,
                title="Plan Validation",
                empty="(plan is valid)",
            )
            if args.fix:
                print(
                    f"removed {fixed['invalid']} invalid and "
                    f"{fixed['redundant']} redundant dependencies"
                )
        return 0 if report.is_valid else 1

    if cmd == "serve":
        import uvicorn

        from .web import create_app

        uvicorn.run(create_app(graph), host=args.host, port=args.port)
        return 0

    raise ValueError(f"unknown command: {cmd}")


def main(argv: list[str] | None = None) -> None:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = _build_parser().parse_args(raw_argv)

    try:
        mode = resolve_output_mode(getattr(args, "output", None))
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    create = args.command not in _READ_ONLY or bool(getattr(args, "fix", False))
    try:
        graph = TaskGraph.from_workdir(Path.cwd(), create=create)
        code = _run(graph, args, mode)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    if code:
        raise SystemExit(code)
