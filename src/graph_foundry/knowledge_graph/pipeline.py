from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from ..errors import ExtractionFailureError
from .documents import Chunk, DocumentStore
from .extractors import ExtractionOrchestrator
from .models import GraphStatus
from .resolver import EntityResolver
from .store import GraphStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BuildStats:
    chunks_total: int = 0
    chunks_failed: int = 0
    entities_created: int = 0
    entities_merged: int = 0
    relationships_added: int = 0
    relationships_skipped: int = 0
    relationships_dropped: int = 0
    resolution_degraded: int = 0
    extract_ms: float = 0.0
    commit_ms: float = 0.0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["warnings"] = self.warnings[:20]
        return out


@dataclass(slots=True)
class BuildJob:
    scope: str
    name: str
    document_ids: list[str]
    kind: Literal["create", "update"] = "create"
    # graph instance the job was queued for; None skips the check
    generation: str | None = None


class GraphBuilder:
    """Runs one build or update job against the store.

    Chunks are extracted concurrently; each successful chunk is resolved
    and committed on its own while holding the graph's writer lock, so
    commits are incremental and a later timeout keeps earlier work.
    """

    def __init__(
        self,
        store: GraphStore,
        documents: DocumentStore,
        orchestrator: ExtractionOrchestrator,
        resolver: EntityResolver,
    ):
        self.store = store
        self.documents = documents
        self.orchestrator = orchestrator
        self.resolver = resolver

    def _chunks(self, document_ids: list[str]) -> list[Chunk]:
        chunks: list[Chunk] = []
        for doc_id in document_ids:
            chunks.extend(self.documents.get_chunks(doc_id))
        return chunks

    async def run(self, job: BuildJob, stats: BuildStats | None = None) -> BuildStats:
        stats = stats if stats is not None else BuildStats()
        scope, name = job.scope, job.name

        self.store.transition_status(scope, name, GraphStatus.PROCESSING, generation=job.generation)
        graph = self.store.read(scope, name)
        prompts = graph.prompt_config

        new_docs = [d for d in dict.fromkeys(job.document_ids) if d not in graph.document_ids]
        chunks = self._chunks(new_docs)
        stats.chunks_total = len(chunks)

        if not chunks:
            logger.info("%s %s/%s: no new chunks, nothing to extract", job.kind, scope, name)
            self.store.record_stats(scope, name, stats.to_dict())
            self.store.transition_status(scope, name, GraphStatus.COMPLETED, generation=job.generation)
            return stats

        logger.info("%s %s/%s: %d chunks from %d documents", job.kind, scope, name, len(chunks), len(new_docs))
        lock = self.store.writer(scope, name)
        t_start = time.perf_counter()

        async for outcome in self.orchestrator.stream(chunks, prompts.extraction):
            if outcome.extraction is None:
                stats.chunks_failed += 1
                stats.warnings.append(f"{outcome.chunk.document_id}: {outcome.error}")
                continue

            t0 = time.perf_counter()
            async with lock:
                existing = self.store.entities(scope, name)
                plan = await self.resolver.plan(existing, [outcome.extraction], prompts)
                res = self.store.commit_entities_and_relationships(scope, name, plan.entities, plan.relationships)
                self.store.add_document_ids(scope, name, [outcome.chunk.document_id])
            stats.commit_ms += (time.perf_counter() - t0) * 1000.0

            stats.entities_created += res.entities_created
            stats.entities_merged += res.entities_merged
            stats.relationships_added += res.relationships_added
            stats.relationships_skipped += res.relationships_skipped
            stats.relationships_dropped += plan.dropped_relationships
            stats.resolution_degraded += int(plan.degraded)

        stats.extract_ms = (time.perf_counter() - t_start) * 1000.0 - stats.commit_ms

        if stats.chunks_failed == stats.chunks_total:
            raise ExtractionFailureError(
                f"All {stats.chunks_total} chunks failed extraction", {"warnings": stats.warnings[:5]}
            )

        # Completion order is arbitrary; present documents in request order.
        self.store.order_document_ids(scope, name, graph.document_ids + new_docs)
        self.store.record_stats(scope, name, stats.to_dict())
        self.store.transition_status(scope, name, GraphStatus.COMPLETED, generation=job.generation)
        logger.info(
            "%s %s/%s completed: +%d entities, %d merged, +%d relationships, %d/%d chunks failed",
            job.kind,
            scope,
            name,
            stats.entities_created,
            stats.entities_merged,
            stats.relationships_added,
            stats.chunks_failed,
            stats.chunks_total,
        )
        return stats
