from __future__ import annotations

from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..errors import (
    AlreadyExistsError,
    ConcurrentBuildInProgressError,
    GraphFoundryError,
    GraphIntegrityError,
    GraphNotReadyError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..knowledge_graph.query_engine import QueryType
from .service import GraphService


class CreateGraphIn(BaseModel):
    name: str
    document_filter: dict[str, Any] | None = None
    document_ids: list[str] | None = None
    prompt_overrides: dict[str, Any] | None = None


class UpdateGraphIn(BaseModel):
    additional_document_filter: dict[str, Any] | None = None
    additional_document_ids: list[str] | None = None
    prompt_overrides: dict[str, Any] | None = None


class QueryIn(BaseModel):
    name: str | None = None
    query_type: QueryType
    start_nodes: list[str] = Field(default_factory=list)
    max_depth: int | None = None


# Most specific first.
ERROR_STATUS: list[tuple[type[GraphFoundryError], int]] = [
    (NotFoundError, 404),
    (AlreadyExistsError, 409),
    (ConcurrentBuildInProgressError, 409),
    (GraphNotReadyError, 409),
    (InvalidTransitionError, 409),
    (GraphIntegrityError, 400),
    (ValidationError, 422),
]


def error_status(exc: GraphFoundryError) -> int:
    for cls, code in ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return 500


async def _graph_error_handler(_request: Request, exc: GraphFoundryError) -> JSONResponse:
    return JSONResponse(
        status_code=error_status(exc),
        content={"error": type(exc).__name__, "detail": exc.message},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GraphFoundryError, _graph_error_handler)


def build_graph_router(service: GraphService) -> APIRouter:
    r = APIRouter(prefix="/v1/scopes/{scope}", tags=["graph"])

    @r.post("/graphs", status_code=202)
    async def create_graph(scope: str, payload: CreateGraphIn):
        handle = await service.create_graph(
            scope,
            payload.name,
            document_filter=payload.document_filter,
            document_ids=payload.document_ids,
            prompt_overrides=payload.prompt_overrides,
        )
        return handle.to_dict()

    @r.get("/graphs")
    async def list_graphs(scope: str):
        return {"graphs": service.list_graphs(scope)}

    @r.get("/graphs/{name}")
    async def get_graph(scope: str, name: str):
        return service.get_graph(scope, name)

    @r.get("/graphs/{name}/status")
    async def get_graph_status(scope: str, name: str):
        return service.get_graph_status(scope, name)

    @r.post("/graphs/{name}/update", status_code=202)
    async def update_graph(scope: str, name: str, payload: UpdateGraphIn):
        handle = await service.update_graph(
            scope,
            name,
            additional_document_filter=payload.additional_document_filter,
            additional_document_ids=payload.additional_document_ids,
            prompt_overrides=payload.prompt_overrides,
        )
        return handle.to_dict()

    @r.delete("/graphs/{name}")
    async def delete_graph(scope: str, name: str):
        return await service.delete_graph(scope, name)

    @r.post("/query")
    async def query_graph(scope: str, payload: QueryIn):
        return service.query_graph(
            scope,
            payload.query_type,
            payload.start_nodes,
            name=payload.name,
            max_depth=payload.max_depth,
        )

    return r
