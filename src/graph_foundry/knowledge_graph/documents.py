from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Chunk:
    """A piece of already-ingested document text."""

    text: str
    document_id: str


class DocumentFilter(BaseModel):
    """Selects documents by explicit id and/or exact metadata match.

    An empty filter matches nothing.
    """

    document_ids: list[str] = Field(default_factory=list)
    metadata: dict[str, str | int | float | bool] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.document_ids and not self.metadata


class DocumentStore(Protocol):
    """The ingestion side, seen only through these two calls."""

    def get_chunks(self, document_id: str) -> list[Chunk]: ...

    def find_documents(self, flt: DocumentFilter) -> list[str]: ...


@dataclass
class _Doc:
    chunks: list[str]
    metadata: dict[str, Any] = field(default_factory=dict)


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self._docs: dict[str, _Doc] = {}

    def add(self, document_id: str, chunks: list[str] | str, metadata: dict[str, Any] | None = None) -> None:
        if isinstance(chunks, str):
            chunks = [chunks]
        self._docs[document_id] = _Doc(chunks=list(chunks), metadata=dict(metadata or {}))

    def document_ids(self) -> list[str]:
        return list(self._docs)

    def get_chunks(self, document_id: str) -> list[Chunk]:
        doc = self._docs.get(document_id)
        if doc is None:
            return []
        return [Chunk(text=t, document_id=document_id) for t in doc.chunks]

    def find_documents(self, flt: DocumentFilter) -> list[str]:
        if flt.is_empty:
            return []
        out: list[str] = []
        wanted = set(flt.document_ids)
        for doc_id, doc in self._docs.items():
            if wanted and doc_id not in wanted:
                continue
            if any(doc.metadata.get(k) != v for k, v in flt.metadata.items()):
                continue
            out.append(doc_id)
        return out


class JsonlDocumentStore(InMemoryDocumentStore):
    """Loads documents from a JSONL file.

    Each line: {"document_id": ..., "text": ... | "chunks": [...], "metadata": {...}}
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path).expanduser()
        with self.path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                row = json.loads(line)
                doc_id = row.get("document_id")
                if not doc_id:
                    logger.warning("Skipping %s:%d without document_id", self.path, lineno)
                    continue
                chunks = row.get("chunks") or ([row["text"]] if row.get("text") else [])
                self.add(str(doc_id), [str(c) for c in chunks], row.get("metadata"))
