from __future__ import annotations

from typing import TYPE_CHECKING

__all__ = [
    "__version__",
    "ChildSpec",
    "CycleError",
    "Edge",
    "GraphError",
    "GraphStore",
    "Issue",
    "NotFoundError",
    "PartialBatchWarning",
    "ProjectRegistry",
    "TaskGraph",
    "ValidationError",
]

__version__ = "0.1.0"

if TYPE_CHECKING:
    from .errors import (
        CycleError,
        GraphError,
        NotFoundError,
        PartialBatchWarning,
        ValidationError,
    )
    from .graph import TaskGraph
    from .models import ChildSpec, Edge, Issue
    from .store import GraphStore, ProjectRegistry


def __getattr__(name: str):
    if name == "TaskGraph":
        from .graph import TaskGraph

        return TaskGraph
    if name in {"GraphStore", "ProjectRegistry"}:
        from . import store

        return getattr(store, name)
    if name in {"ChildSpec", "Edge", "Issue"}:
        from . import models

        return getattr(models, name)
    if name in {
        "CycleError",
        "GraphError",
        "NotFoundError",
        "PartialBatchWarning",
        "ValidationError",
    }:
        from . import errors

        return getattr(errors, name)
    raise AttributeError(f"module 'issuegraph' has no attribute {name!r}")
