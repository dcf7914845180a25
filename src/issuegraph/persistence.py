"""JSONL snapshot storage for issue graphs."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path

from .models import Issue
from .store import GraphStore, MutationEvent


SNAPSHOT_FILENAME = "issues.jsonl"


def resolve_state_dir(cwd: Path | None = None, *, create: bool = True) -> Path:
    """Return the issuegraph state directory, creating it if needed.

    Resolution order:
    1. ISSUEGRAPH_STATE_DIR
    2. nearest existing .issuegraph directory from cwd upward
    3. cwd/.issuegraph
    """
    raw = os.environ.get("ISSUEGRAPH_STATE_DIR", "").strip()
    if raw:
        state_dir = Path(raw).expanduser().resolve()
    else:
        start = (cwd or Path.cwd()).resolve()
        state_dir = start / ".issuegraph"
        for base in (start, *start.parents):
            candidate = base / ".issuegraph"
            if candidate.is_dir():
                state_dir = candidate
                break

    if create:
        state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def snapshot_path(state_dir: Path) -> Path:
    return state_dir / SNAPSHOT_FILENAME


def read_jsonl(path: Path) -> list[dict]:
    if not path.exists():
        return []
    rows: list[dict] = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError as exc:
                raise ValueError(f"{path}:{lineno}: invalid JSON: {exc.msg}") from exc
    return rows


def write_jsonl(path: Path, rows: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        for row in rows:
            f.write(json.dumps(row, separators=(",", ":")) + "\n")
    os.replace(tmp, path)


def save_snapshot(path: Path, store: GraphStore) -> int:
    """Write every record of ``store`` to ``path``; return the record count."""
    rows = [issue.to_dict() for issue in store.snapshot()]
    write_jsonl(path, rows)
    return len(rows)


def load_snapshot(
    path: Path,
    *,
    repair: bool = False,
    project_id: str = "default",
    id_prefix: str = "issue",
) -> GraphStore:
    store = GraphStore(project_id=project_id, id_prefix=id_prefix)
    rows = read_jsonl(path)
    if rows:
        store.load([Issue.from_dict(row) for row in rows], repair=repair)
    return store


class SnapshotWriter:
    """Mutation listener that rewrites the snapshot after each commit.

    Listeners run after the store's write lock is released, so concurrent
    commits can deliver events from several threads at once. Writes are
    serialised and the rows and revision are read under one read section.
    """

    def __init__(self, path: Path, store: GraphStore) -> None:
        self.path = path
        self.store = store
        self.last_revision = -1
        self._lock = threading.Lock()

    def __call__(self, event: MutationEvent) -> None:
        with self._lock:
            if event.revision <= self.last_revision:
                return
            with self.store.reading():
                revision = self.store.revision
                save_snapshot(self.path, self.store)
            self.last_revision = revision
