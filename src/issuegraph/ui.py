from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Callable, Iterator, Sequence
from typing import Literal, TypeVar

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

OUTPUT_CHOICES = ("auto", "plain", "rich")
OUTPUT_ENV = "ISSUEGRAPH_OUTPUT"
OutputMode = Literal["plain", "rich"]

STATUS_STYLES = {
    "open": "cyan",
    "in_progress": "yellow",
    "closed": "green",
    "failed": "red",
}
PRIORITY_STYLES = {
    0: "bold red",
    1: "red",
    2: "yellow",
    3: "dim",
    4: "dim",
}

_Node = TypeVar("_Node")


def add_output_mode_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--output",
        choices=OUTPUT_CHOICES,
        help=f"Output mode: auto (default), plain, or rich. Env: {OUTPUT_ENV}.",
    )


def _output_choice(raw: str | None, *, source: str) -> str | None:
    value = (raw or "").strip().lower()
    if not value:
        return None
    if value not in OUTPUT_CHOICES:
        raise ValueError(
            f"invalid {source} value {raw!r}; expected one of: {', '.join(OUTPUT_CHOICES)}"
        )
    return value


def resolve_output_mode(
    requested: str | None = None,
    *,
    is_tty: bool | None = None,
) -> OutputMode:
    """``--output`` wins over ``ISSUEGRAPH_OUTPUT``; ``auto`` follows stdout."""
    selected = _output_choice(requested, source="--output") or _output_choice(
        os.environ.get(OUTPUT_ENV), source=OUTPUT_ENV
    )
    if selected in (None, "auto"):
        if is_tty is None:
            isatty = getattr(sys.stdout, "isatty", None)
            try:
                is_tty = bool(isatty()) if callable(isatty) else False
            except (OSError, ValueError):
                is_tty = False
        return "rich" if is_tty else "plain"
    return "rich" if selected == "rich" else "plain"


def make_console(mode: OutputMode, *, stderr: bool = False) -> Console:
    return Console(
        file=sys.stderr if stderr else sys.stdout,
        force_terminal=mode == "rich",
        no_color=mode != "rich",
        highlight=False,
        width=None if mode == "rich" else 200,
    )


def styled_status(status: str, mode: OutputMode) -> str:
    if mode != "rich":
        return status
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def styled_priority(priority: int, mode: OutputMode) -> str:
    badge = f"P{priority}"
    if mode != "rich":
        return badge
    style = PRIORITY_STYLES.get(priority, "white")
    return f"[{style}]{badge}[/{style}]"


def render_table(
    console: Console,
    *,
    headers: Sequence[str],
    rows: Sequence[Sequence[object]],
    title: str | None = None,
    no_wrap_columns: Sequence[int] = (),
) -> None:
    table = Table(title=title)
    for idx, header in enumerate(headers):
        table.add_column(str(header), no_wrap=idx in no_wrap_columns)
    for row in rows:
        table.add_row(*("" if value is None else str(value) for value in row))
    console.print(table)


def print_columns(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
    """Plain aligned columns with a dashed rule under the header."""
    widths = [
        max([len(header), *(len(row[idx]) for row in rows)])
        for idx, header in enumerate(headers)
    ]
    for row in (headers, ["-" * width for width in widths], *rows):
        print("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())


def render_panel(console: Console, body: str, *, title: str | None = None) -> None:
    console.print(Panel(body, title=title))


def build_tree(
    root: _Node,
    *,
    label: Callable[[_Node], str],
    children: Callable[[_Node], Sequence[_Node]],
) -> Tree:
    tree = Tree(label(root))
    stack = [(root, tree)]
    while stack:
        node, branch = stack.pop()
        for child in children(node):
            stack.append((child, branch.add(label(child))))
    return tree


def outline(
    root: _Node,
    *,
    label: Callable[[_Node], str],
    children: Callable[[_Node], Sequence[_Node]],
    indent: str = "  ",
) -> Iterator[str]:
    """Pre-order lines of the subtree under ``root``, indented by depth."""
    stack = [(root, 0)]
    while stack:
        node, depth = stack.pop()
        yield f"{indent * depth}{label(node)}"
        stack.extend((child, depth + 1) for child in reversed(children(node)))
