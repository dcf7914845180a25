"""Which leaves can be worked on now, and in what order."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Iterable

from .models import ACTIVE_STATUSES, Issue, normalize_execution_type

if TYPE_CHECKING:
    from .store import GraphStore


@dataclass(frozen=True)
class RankingWeights:
    direct_unblock_weight: float = 10
    transitive_unblock_weight: float = 2
    priority_weight: float = 5
    transitive_decay: float = 0.5
    automated_bonus: float = 3
    ai_assisted_bonus: float = 2
    no_validation_bonus: float = 1

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class RankedIssue:
    issue: Issue
    score: float
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.issue.to_dict(),
            "score": self.score,
            "reasons": list(self.reasons),
        }


@dataclass(frozen=True)
class NextTask:
    task: Issue | None
    score: float
    reasons: list[str]
    alternates: list[RankedIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict() if self.task is not None else None,
            "score": self.score,
            "reasons": list(self.reasons),
            "alternates": [item.to_dict() for item in self.alternates],
        }


class RankingEngine:
    def __init__(self, store: GraphStore, weights: RankingWeights | None = None) -> None:
        self.store = store
        self.weights = weights or RankingWeights()

    def _is_closed(self, issue_id: str) -> bool:
        return self.store.derived_status(issue_id) == "closed"

    def _actionable(self, issue_id: str) -> bool:
        store = self.store
        issue = store.node(issue_id)
        if store.is_container(issue.id) or issue.status not in ACTIVE_STATUSES:
            return False
        return all(self._is_closed(dep) for dep in issue.dependencies)

    def is_actionable(self, issue_id: str) -> bool:
        """A leaf that is open or in progress with every dependency closed."""
        with self.store.reading():
            return self._actionable(issue_id)

    def _ready_ids(self, execution_types: Iterable[str] | None) -> list[str]:
        wanted = {
            normalize_execution_type(value) for value in execution_types or ()
        }
        out: list[str] = []
        for node_id in self.store.ids():
            if not self._actionable(node_id):
                continue
            if wanted and self.store.node(node_id).execution_type not in wanted:
                continue
            out.append(node_id)
        return out

    def get_ready_issues(
        self, execution_types: Iterable[str] | None = None
    ) -> list[Issue]:
        store = self.store
        with store.reading():
            return [store.require(node) for node in self._ready_ids(execution_types)]

    def _open_dependents(self, issue_id: str) -> list[str]:
        return [
            node_id
            for node_id in self.store.dependent_ids(issue_id)
            if not self._is_closed(node_id)
        ]

    def direct_unblock_count(self, issue_id: str) -> int:
        """Open dependents whose only remaining blocker is ``issue_id``."""
        count = 0
        for node_id in self._open_dependents(issue_id):
            others = [
                dep for dep in self.store.node(node_id).dependencies if dep != issue_id
            ]
            if all(self._is_closed(dep) for dep in others):
                count += 1
        return count

    def transitive_unblock_score(
        self, issue_id: str, visited: set[str] | None = None
    ) -> float:
        seen = visited if visited is not None else set()
        if issue_id in seen:
            return 0.0
        seen.add(issue_id)
        dependents = self._open_dependents(issue_id)
        score = float(len(dependents))
        for node_id in dependents:
            score += (
                self.transitive_unblock_score(node_id, seen)
                * self.weights.transitive_decay
            )
        return score

    def score(self, issue_id: str) -> RankedIssue:
        weights = self.weights
        issue = self.store.node(issue_id)
        reasons: list[str] = []
        total = 0.0

        direct = self.direct_unblock_count(issue.id)
        transitive = self.transitive_unblock_score(issue.id)
        total += direct * weights.direct_unblock_weight
        total += transitive * weights.transitive_unblock_weight
        if direct > 0:
            reasons.append(f"Unblocks {direct} task{'s' if direct > 1 else ''}")
        if transitive > direct * 2:
            reasons.append("High downstream impact")

        total += (4 - issue.priority) * weights.priority_weight
        if issue.priority <= 1:
            reasons.append("Critical priority" if issue.priority == 0 else "High priority")

        if issue.execution_type == "automated":
            total += weights.automated_bonus
            reasons.append("Can be fully automated")
        elif issue.execution_type == "ai_assisted":
            total += weights.ai_assisted_bonus
            reasons.append("Can be AI-assisted")

        if issue.validation_required:
            reasons.append("Requires validation")
        else:
            total += weights.no_validation_bonus

        if not reasons:
            reasons.append("Ready to start")
        return RankedIssue(issue=self.store.require(issue.id), score=total, reasons=reasons)

    def rank_ready_issues(
        self, execution_types: Iterable[str] | None = None
    ) -> list[RankedIssue]:
        """Ready issues by descending score; ties keep insertion order."""
        with self.store.reading():
            ranked = [self.score(node) for node in self._ready_ids(execution_types)]
        return sorted(ranked, key=lambda item: -item.score)

    def next_task(
        self,
        limit: int = 5,
        execution_types: Iterable[str] | None = None,
    ) -> NextTask:
        ranked = self.rank_ready_issues(execution_types)
        if not ranked:
            return NextTask(task=None, score=0, reasons=["No ready tasks available"])
        first, rest = ranked[0], ranked[1:]
        return NextTask(
            task=first.issue,
            score=first.score,
            reasons=first.reasons,
            alternates=rest[: max(limit - 1, 0)],
        )
