from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from typing import Protocol

from ..errors import CompletionError
from .completion import CompletionClient, parse_extraction
from .documents import Chunk
from .models import CandidateEntity, CandidateRelationship, ChunkExtraction, normalize_label
from .prompts import ExtractionPrompt

logger = logging.getLogger(__name__)


class ChunkExtractor(Protocol):
    async def extract(self, chunk: Chunk, prompt: ExtractionPrompt) -> ChunkExtraction: ...


@dataclass(slots=True)
class LLMExtractor:
    """Extracts candidates from one chunk through the completion service.

    Raises CompletionError when the service fails or the reply is unusable;
    the orchestrator turns that into a dropped chunk.
    """

    client: CompletionClient

    async def extract(self, chunk: Chunk, prompt: ExtractionPrompt) -> ChunkExtraction:
        raw = await self.client.complete(prompt.render(chunk.text))
        result = parse_extraction(raw, document_id=chunk.document_id)
        return dedupe_extraction(result)


def dedupe_extraction(result: ChunkExtraction) -> ChunkExtraction:
    """Collapse repeats inside one chunk (first spelling wins, properties merged)."""
    entities: dict[tuple[str, str], CandidateEntity] = {}
    for e in result.entities:
        key = (normalize_label(e.label), normalize_label(e.type))
        prev = entities.get(key)
        if prev is None:
            entities[key] = e
        else:
            entities[key] = CandidateEntity(
                label=prev.label,
                type=prev.type,
                document_id=prev.document_id,
                properties={**e.properties, **prev.properties},
            )

    seen: set[tuple[str, str, str]] = set()
    rels: list[CandidateRelationship] = []
    for r in result.relationships:
        key = (normalize_label(r.source_label), normalize_label(r.target_label), normalize_label(r.type))
        if key in seen:
            continue
        seen.add(key)
        rels.append(r)

    return ChunkExtraction(document_id=result.document_id, entities=list(entities.values()), relationships=rels)


@dataclass(slots=True)
class ChunkOutcome:
    chunk: Chunk
    extraction: ChunkExtraction | None = None
    error: str | None = None


@dataclass(slots=True)
class ExtractionOrchestrator:
    """Runs the extractor over chunks with bounded parallelism.

    Chunks are independent; results come back in completion order.
    """

    extractor: ChunkExtractor
    concurrency: int = 4

    async def _run_one(self, chunk: Chunk, prompt: ExtractionPrompt, sem: asyncio.Semaphore) -> ChunkOutcome:
        async with sem:
            try:
                extraction = await self.extractor.extract(chunk, prompt)
            except CompletionError as e:
                logger.warning("Dropping chunk of %s: %s", chunk.document_id, e)
                return ChunkOutcome(chunk=chunk, error=str(e))
        logger.debug(
            "Chunk of %s: %d entities, %d relationships",
            chunk.document_id,
            len(extraction.entities),
            len(extraction.relationships),
        )
        return ChunkOutcome(chunk=chunk, extraction=extraction)

    async def stream(self, chunks: Iterable[Chunk], prompt: ExtractionPrompt) -> AsyncIterator[ChunkOutcome]:
        sem = asyncio.Semaphore(max(1, self.concurrency))
        tasks = [asyncio.create_task(self._run_one(c, prompt, sem)) for c in chunks]
        try:
            for fut in asyncio.as_completed(tasks):
                yield await fut
        finally:
            for t in tasks:
                if not t.done():
                    t.cancel()
