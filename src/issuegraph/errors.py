from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import Edge


class GraphError(ValueError):
    """Base class for every structural error raised by the engine."""


class ValidationError(GraphError):
    pass


class NotFoundError(GraphError):
    def __init__(self, issue_id: str) -> None:
        super().__init__(f"unknown issue: {issue_id}")
        self.issue_id = issue_id


class CycleError(ValidationError):
    """A dependency edit would close a cycle.

    ``cycle_break_options`` lists every edge on the offending cycle, the
    prospective edge included; removing any one of them breaks the cycle.
    """

    def __init__(
        self,
        issue_id: str,
        depends_on_id: str,
        cycle_break_options: list[Edge],
    ) -> None:
        super().__init__(
            f"dependency {issue_id} -> {depends_on_id} would create a cycle"
        )
        self.issue_id = issue_id
        self.depends_on_id = depends_on_id
        self.cycle_break_options = list(cycle_break_options)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": str(self),
            "issue_id": self.issue_id,
            "depends_on_id": self.depends_on_id,
            "cycle_break_options": [
                edge.to_dict() for edge in self.cycle_break_options
            ],
        }


class PartialBatchWarning(UserWarning):
    """Best-effort decompose skipped some children of the batch."""

    def __init__(self, parent_id: str, rejected: list[tuple[int, str]]) -> None:
        detail = ", ".join(f"#{index}: {reason}" for index, reason in rejected)
        super().__init__(
            f"decompose of {parent_id} skipped {len(rejected)} child(ren): {detail}"
        )
        self.parent_id = parent_id
        self.rejected = list(rejected)
