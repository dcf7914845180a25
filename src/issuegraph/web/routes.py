"""JSON API routes for the issuegraph web interface.

Endpoints are plain ``def`` functions: the engine is synchronous and guards
itself with a readers-writer lock, so they run on the threadpool.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from .. import __version__
from ..graph import TaskGraph
from ..models import ISSUE_STATUSES, Edge, Issue

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _graph(req: Request) -> TaskGraph:
    return req.app.state.graph


def _issue_json(issue: Issue) -> dict[str, Any]:
    return issue.to_dict()


def _issues_json(issues: list[Issue]) -> list[dict[str, Any]]:
    return [issue.to_dict() for issue in issues]


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class IssueCreate(BaseModel):
    title: str
    description: str = ""
    type: str = "task"
    priority: int = 2
    status: str = "open"
    dependencies: list[str] = Field(default_factory=list)
    success_criteria: list[str] = Field(default_factory=list)
    is_well_specified: bool = False
    execution_type: str | None = None
    validation_required: bool = False
    scope_boundary: dict[str, Any] | None = None
    constraints: list[dict[str, Any]] = Field(default_factory=list)


class IssueUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    type: str | None = None
    priority: int | None = None
    success_criteria: list[str] | None = None
    is_well_specified: bool | None = None
    execution_type: str | None = None
    validation_required: bool | None = None


class StatusChange(BaseModel):
    status: str


class FailureReport(BaseModel):
    reason: str


class ChoiceBody(BaseModel):
    child_id: str


class EdgeBody(BaseModel):
    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")


class DependencyAdd(BaseModel):
    depends_on_id: str
    break_edge: EdgeBody | None = None


class ChildBody(BaseModel):
    title: str
    description: str = ""
    type: str = "task"
    priority: int = 2
    success_criteria: list[str] = Field(default_factory=list)
    execution_type: str | None = None
    validation_required: bool = False
    dependencies: list[str] = Field(default_factory=list)
    depends_on_index: list[int] = Field(default_factory=list)


class DecomposeBody(BaseModel):
    children: list[ChildBody]
    decomposition_type: str | None = None
    merge: bool = False
    atomic: bool = True


class DecompositionTypeBody(BaseModel):
    decomposition_type: str


class ScopeBody(BaseModel):
    description: str = ""
    includes: list[str] = Field(default_factory=list)
    excludes: list[str] = Field(default_factory=list)
    boundary_conditions: list[str] = Field(default_factory=list)


class ConstraintCreate(BaseModel):
    type: str
    description: str
    rationale: str = ""
    value: str | int | float | None = None
    unit: str | None = None
    negotiable: bool = False
    source: str = "user"


class ConcernCreate(BaseModel):
    type: str
    title: str
    description: str = ""
    impact: int = 2
    probability: int = 2
    urgency: int = 2
    related_issue_ids: list[str] = Field(default_factory=list)
    user_aware: bool = False


class ConcernResolve(BaseModel):
    status: str = "addressed"
    resolution: str | None = None


class ImportBody(BaseModel):
    issues: list[dict[str, Any]]
    repair: bool = False


# ---------------------------------------------------------------------------
# Overview
# ---------------------------------------------------------------------------


@router.get("/status")
def api_status(request: Request):
    graph = _graph(request)
    issues = graph.list()
    counts = {status: 0 for status in ISSUE_STATUSES}
    for issue in issues:
        counts[issue.status] += 1
    return {
        "version": __version__,
        "project_id": graph.store.project_id,
        "revision": graph.store.revision,
        "total": len(issues),
        "roots": sum(1 for issue in issues if issue.parent_id is None),
        "ready": len(graph.get_ready_issues()),
        "statuses": counts,
    }


@router.get("/export")
def api_export(request: Request):
    return _issues_json(_graph(request).snapshot())


@router.post("/import")
def api_import(request: Request, body: ImportBody):
    graph = _graph(request)
    graph.load(body.issues, repair=body.repair)
    return {"ok": True, "count": len(graph.store)}


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


@router.get("/issues")
def api_issues(
    request: Request,
    status: str | None = None,
    type: str | None = None,
    roots: bool = False,
):
    issues = _graph(request).list(status=status, issue_type=type, roots_only=roots)
    return _issues_json(issues)


@router.post("/issues")
def api_create_issue(request: Request, body: IssueCreate):
    issue = _graph(request).create(
        body.title,
        description=body.description,
        issue_type=body.type,
        priority=body.priority,
        status=body.status,
        dependencies=body.dependencies,
        success_criteria=body.success_criteria,
        is_well_specified=body.is_well_specified,
        execution_type=body.execution_type,
        validation_required=body.validation_required,
        scope_boundary=body.scope_boundary,
        constraints=body.constraints,
    )
    return _issue_json(issue)


@router.get("/issues/{issue_id}")
def api_issue(request: Request, issue_id: str):
    graph = _graph(request)
    payload = _issue_json(graph.require(issue_id))
    payload["children"] = [child.id for child in graph.get_children(issue_id)]
    payload["blockers"] = [dep.id for dep in graph.get_blockers(issue_id)]
    payload["actionable"] = graph.is_actionable(issue_id)
    return payload


@router.patch("/issues/{issue_id}")
def api_update_issue(request: Request, issue_id: str, body: IssueUpdate):
    fields: dict[str, Any] = {}
    for name, value in body.model_dump(exclude_unset=True).items():
        fields["issue_type" if name == "type" else name] = value
    return _issue_json(_graph(request).update(issue_id, **fields))


@router.delete("/issues/{issue_id}")
def api_delete_issue(request: Request, issue_id: str):
    return {"deleted": _graph(request).delete(issue_id)}


@router.post("/issues/{issue_id}/status")
def api_set_status(request: Request, issue_id: str, body: StatusChange):
    return _issue_json(_graph(request).set_status(issue_id, body.status))


@router.post("/issues/{issue_id}/fail")
def api_mark_failed(request: Request, issue_id: str, body: FailureReport):
    return _issue_json(_graph(request).mark_failed(issue_id, body.reason))


@router.post("/issues/{issue_id}/choose")
def api_choose(request: Request, issue_id: str, body: ChoiceBody):
    return _issue_json(_graph(request).choose(issue_id, body.child_id))


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


@router.post("/issues/{issue_id}/dependencies")
def api_add_dependency(request: Request, issue_id: str, body: DependencyAdd):
    graph = _graph(request)
    if body.break_edge is not None:
        edge = Edge(body.break_edge.from_id, body.break_edge.to_id)
        issue = graph.add_dependency_breaking_cycle(issue_id, body.depends_on_id, edge)
    else:
        issue = graph.add_dependency(issue_id, body.depends_on_id)
    return _issue_json(issue)


@router.delete("/issues/{issue_id}/dependencies/{depends_on_id}")
def api_remove_dependency(request: Request, issue_id: str, depends_on_id: str):
    return _issue_json(_graph(request).remove_dependency(issue_id, depends_on_id))


@router.post("/issues/{issue_id}/dependencies/{depends_on_id}/reverse")
def api_reverse_dependency(request: Request, issue_id: str, depends_on_id: str):
    return _issue_json(_graph(request).reverse_dependency(issue_id, depends_on_id))


@router.get("/issues/{issue_id}/blockers")
def api_blockers(request: Request, issue_id: str):
    return _issues_json(_graph(request).get_blockers(issue_id))


@router.get("/issues/{issue_id}/blocking")
def api_blocking(request: Request, issue_id: str):
    return _issues_json(_graph(request).get_blocking(issue_id))


@router.get("/blocked")
def api_blocked(request: Request):
    return _issues_json(_graph(request).get_blocked())


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


@router.post("/issues/{issue_id}/decompose")
def api_decompose(request: Request, issue_id: str, body: DecomposeBody):
    created, rejected = _graph(request).decompose_batch(
        issue_id,
        [child.model_dump() for child in body.children],
        body.decomposition_type,
        merge=body.merge,
        atomic=body.atomic,
    )
    return {
        "created": _issues_json(created),
        "rejected": [{"index": index, "reason": reason} for index, reason in rejected],
    }


@router.put("/issues/{issue_id}/decomposition-type")
def api_set_decomposition_type(
    request: Request, issue_id: str, body: DecompositionTypeBody
):
    graph = _graph(request)
    return _issue_json(graph.set_decomposition_type(issue_id, body.decomposition_type))


@router.get("/issues/{issue_id}/children")
def api_children(request: Request, issue_id: str):
    return _issues_json(_graph(request).get_children(issue_id))


@router.get("/issues/{issue_id}/descendants")
def api_descendants(request: Request, issue_id: str):
    return _issues_json(_graph(request).get_descendants(issue_id))


@router.get("/issues/{issue_id}/ancestors")
def api_ancestors(request: Request, issue_id: str):
    return _issues_json(_graph(request).get_ancestors(issue_id))


# ---------------------------------------------------------------------------
# Scope, constraints, concerns
# ---------------------------------------------------------------------------


@router.put("/issues/{issue_id}/scope")
def api_set_scope(request: Request, issue_id: str, body: ScopeBody | None = None):
    boundary = body.model_dump() if body is not None else None
    return _issue_json(_graph(request).set_scope_boundary(issue_id, boundary))


@router.get("/issues/{issue_id}/scope-expansion")
def api_scope_expansion(request: Request, issue_id: str):
    return _graph(request).detect_scope_expansion(issue_id).to_dict()


@router.post("/issues/{issue_id}/scope-expansion/record")
def api_record_scope_expansion(request: Request, issue_id: str):
    concerns = _graph(request).record_scope_expansions(issue_id)
    return [item.to_dict() for item in concerns]


@router.get("/issues/{issue_id}/constraints")
def api_constraints(request: Request, issue_id: str):
    items = _graph(request).get_effective_constraints(issue_id)
    return [item.to_dict() for item in items]


@router.post("/issues/{issue_id}/constraints")
def api_add_constraint(request: Request, issue_id: str, body: ConstraintCreate):
    return _graph(request).add_constraint(issue_id, body.model_dump()).to_dict()


@router.delete("/issues/{issue_id}/constraints/{constraint_id}")
def api_remove_constraint(request: Request, issue_id: str, constraint_id: str):
    return {"ok": _graph(request).remove_constraint(issue_id, constraint_id)}


@router.get("/issues/{issue_id}/concerns")
def api_concerns(request: Request, issue_id: str, status: str | None = None):
    items = _graph(request).get_concerns(issue_id, status=status)
    return [item.to_dict() for item in items]


@router.post("/issues/{issue_id}/concerns")
def api_add_concern(request: Request, issue_id: str, body: ConcernCreate):
    return _graph(request).add_concern(issue_id, body.model_dump()).to_dict()


@router.post("/issues/{issue_id}/concerns/{concern_id}/resolve")
def api_resolve_concern(
    request: Request, issue_id: str, concern_id: str, body: ConcernResolve
):
    item = _graph(request).resolve_concern(
        issue_id, concern_id, body.status, body.resolution
    )
    return item.to_dict()


# ---------------------------------------------------------------------------
# Actionability
# ---------------------------------------------------------------------------


@router.get("/ready")
def api_ready(request: Request, execution_type: list[str] = Query(default=[])):
    ranked = _graph(request).rank_ready_issues(execution_type or None)
    return [item.to_dict() for item in ranked]


@router.get("/next-task")
def api_next_task(
    request: Request,
    limit: int = 5,
    execution_type: list[str] = Query(default=[]),
):
    return _graph(request).next_task(max(1, limit), execution_type or None).to_dict()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@router.get("/validate")
def api_validate(request: Request, root: str | None = None):
    return _graph(request).validate_plan(root).to_dict()


@router.get("/health")
def api_health(request: Request):
    return _graph(request).graph_health().to_dict()


@router.post("/health/fix")
def api_health_fix(request: Request):
    graph = _graph(request)
    return {
        "invalid_removed": graph.remove_invalid_dependencies(),
        "redundant_removed": graph.remove_redundant_dependencies(),
    }
