from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..knowledge_graph.completion import CompletionClient
from ..knowledge_graph.documents import DocumentFilter, DocumentStore
from ..knowledge_graph.extractors import ExtractionOrchestrator, LLMExtractor
from ..knowledge_graph.models import GraphStatus
from ..knowledge_graph.pipeline import BuildJob, GraphBuilder
from ..knowledge_graph.prompts import PromptConfig, build_prompt_config
from ..knowledge_graph.query_engine import GraphQueryEngine, QueryType
from ..knowledge_graph.resolver import EntityResolver
from ..knowledge_graph.store import GraphStore
from ..settings import GraphFoundrySettings, settings
from .worker import BuildWorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GraphHandle:
    name: str
    status: GraphStatus

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status.value}


def _require(value: str | None, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{what} must be a non-empty string", {what: value})
    return value


def _as_filter(flt: DocumentFilter | dict[str, Any] | None) -> DocumentFilter | None:
    if flt is None or isinstance(flt, DocumentFilter):
        return flt
    try:
        return DocumentFilter.model_validate(flt)
    except PydanticValidationError as e:
        raise ValidationError("Invalid document filter", {"errors": [err["msg"] for err in e.errors()]}) from e


class GraphService:
    """Operation surface for building, updating, inspecting and querying graphs.

    Every call is keyed by (scope, name); there is no ambient current graph.
    Builds run on the worker pool, so `start()` must have been awaited (or
    the service used as an async context manager) before create/update.
    """

    def __init__(
        self,
        store: GraphStore,
        documents: DocumentStore,
        completion: CompletionClient,
        *,
        cfg: GraphFoundrySettings | None = None,
    ):
        self.cfg = cfg or settings
        self.store = store
        self.documents = documents
        orchestrator = ExtractionOrchestrator(LLMExtractor(completion), concurrency=self.cfg.extraction_concurrency)
        self.builder = GraphBuilder(store, documents, orchestrator, EntityResolver(completion))
        self.pool = BuildWorkerPool(
            self.builder, store, workers=self.cfg.worker_count, timeout_s=self.cfg.build_timeout_s
        )

    async def start(self) -> None:
        await self.pool.start()

    async def stop(self) -> None:
        await self.pool.stop()

    async def __aenter__(self) -> "GraphService":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def wait_idle(self) -> None:
        await self.pool.join()

    def _require_started(self) -> None:
        if not self.pool.started:
            raise RuntimeError("GraphService is not started")

    def _select_documents(
        self, flt: DocumentFilter | dict[str, Any] | None, document_ids: list[str] | None
    ) -> list[str]:
        selected: list[str] = list(document_ids or [])
        flt = _as_filter(flt)
        if flt is not None:
            selected.extend(self.documents.find_documents(flt))
        return list(dict.fromkeys(selected))

    # --- build lifecycle ---

    async def create_graph(
        self,
        scope: str,
        name: str,
        *,
        document_filter: DocumentFilter | dict[str, Any] | None = None,
        document_ids: list[str] | None = None,
        prompt_overrides: PromptConfig | dict[str, Any] | None = None,
    ) -> GraphHandle:
        _require(scope, "scope")
        _require(name, "name")
        if document_filter is None and document_ids is None:
            raise ValidationError("create_graph needs document_filter or document_ids")
        prompts = build_prompt_config(prompt_overrides)
        docs = self._select_documents(document_filter, document_ids)
        self._require_started()

        graph = self.store.create(scope, name, prompt_config=prompts)
        self.pool.submit(
            BuildJob(scope=scope, name=name, document_ids=docs, kind="create", generation=graph.generation)
        )
        logger.info("Queued build of %s/%s over %d documents", scope, name, len(docs))
        return GraphHandle(name=name, status=GraphStatus.QUEUED)

    async def update_graph(
        self,
        scope: str,
        name: str,
        *,
        additional_document_filter: DocumentFilter | dict[str, Any] | None = None,
        additional_document_ids: list[str] | None = None,
        prompt_overrides: PromptConfig | dict[str, Any] | None = None,
    ) -> GraphHandle:
        _require(scope, "scope")
        _require(name, "name")
        prompts = build_prompt_config(prompt_overrides) if prompt_overrides is not None else None
        docs = self._select_documents(additional_document_filter, additional_document_ids)
        self._require_started()

        graph = self.store.reopen(scope, name, prompt_config=prompts)
        self.pool.submit(
            BuildJob(scope=scope, name=name, document_ids=docs, kind="update", generation=graph.generation)
        )
        logger.info("Queued update of %s/%s with %d candidate documents", scope, name, len(docs))
        return GraphHandle(name=name, status=GraphStatus.QUEUED)

    def get_graph_status(self, scope: str, name: str) -> dict[str, Any]:
        return self.store.read(scope, name).status_dict()

    def get_graph(self, scope: str, name: str) -> dict[str, Any]:
        return self.store.read(scope, name).to_dict()

    def list_graphs(self, scope: str) -> list[str]:
        return self.store.list_graphs(scope)

    async def delete_graph(self, scope: str, name: str) -> dict[str, Any]:
        self.store.read(scope, name)
        if await self.pool.cancel(scope, name):
            logger.info("Cancelled in-flight build of %s/%s before delete", scope, name)
        async with self.store.writer(scope, name):
            self.store.delete(scope, name)
        return {"deleted": True, "name": name}

    # --- queries ---

    def _default_name(self, scope: str) -> str:
        names = self.store.list_graphs(scope)
        if len(names) == 1:
            return names[0]
        if self.cfg.default_graph_name in names:
            return self.cfg.default_graph_name
        raise ValidationError(
            f"Scope '{scope}' has {len(names)} graphs; name is required", {"graphs": sorted(names)}
        )

    def query_graph(
        self,
        scope: str,
        query_type: QueryType | str,
        start_nodes: list[str],
        *,
        name: str | None = None,
        max_depth: int | None = None,
    ) -> dict[str, Any]:
        _require(scope, "scope")
        name = name if name is not None else self._default_name(scope)
        graph = self.store.read(scope, name)
        engine = GraphQueryEngine(
            graph,
            match_threshold=self.cfg.entity_match_threshold,
            default_max_depth=self.cfg.default_max_depth,
            max_depth_limit=self.cfg.max_depth_limit,
            list_limit=self.cfg.list_entities_limit,
        )
        result = engine.run(query_type, start_nodes, max_depth=max_depth)
        return {"graph": name, "query_type": QueryType(query_type).value, **result}
