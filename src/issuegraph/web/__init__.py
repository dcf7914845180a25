"""issuegraph HTTP interface: FastAPI app factory."""

from __future__ import annotations

from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import CycleError, GraphError, NotFoundError
from ..graph import TaskGraph


def create_app(graph: TaskGraph | None = None) -> FastAPI:
    if graph is None:
        graph = TaskGraph.from_workdir(Path.cwd())

    app = FastAPI(title="issuegraph", version=__version__)
    app.state.graph = graph

    @app.exception_handler(CycleError)
    async def _cycle(request: Request, exc: CycleError) -> JSONResponse:
        return JSONResponse(status_code=409, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=404, content={"error": str(exc), "issue_id": exc.issue_id}
        )

    @app.exception_handler(GraphError)
    async def _invalid(request: Request, exc: GraphError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    from .routes import router

    app.include_router(router)

    return app
