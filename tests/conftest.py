from __future__ import annotations

from pathlib import Path

import pytest

from issuegraph.graph import TaskGraph


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ISSUEGRAPH_STATE_DIR", raising=False)
    monkeypatch.delenv("ISSUEGRAPH_OUTPUT", raising=False)


@pytest.fixture
def graph() -> TaskGraph:
    return TaskGraph()


@pytest.fixture
def state_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / ".issuegraph"
    monkeypatch.setenv("ISSUEGRAPH_STATE_DIR", str(path))
    monkeypatch.chdir(tmp_path)
    return path
