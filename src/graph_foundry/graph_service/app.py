from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .. import __version__
from ..knowledge_graph.completion import build_completion_client
from ..knowledge_graph.documents import InMemoryDocumentStore, JsonlDocumentStore
from ..knowledge_graph.sqlite_store import build_store
from ..settings import settings
from .graph_api import build_graph_router, install_error_handlers
from .service import GraphService


def build_service() -> GraphService:
    documents = JsonlDocumentStore(settings.documents_path) if settings.documents_path else InMemoryDocumentStore()
    return GraphService(build_store(settings), documents, build_completion_client(settings))


def create_app(service: GraphService | None = None) -> FastAPI:
    service = service or build_service()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(title="graph-foundry", version=__version__, lifespan=lifespan)
    app.state.service = service
    install_error_handlers(app)

    @app.get("/health")
    async def health():
        return {"ok": True, "host": os.uname().nodename}

    app.include_router(build_graph_router(service))
    return app
