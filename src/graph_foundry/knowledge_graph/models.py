from __future__ import annotations

import copy
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .prompts import PromptConfig

Scalar = str | int | float | bool | None


def normalize_label(s: str) -> str:
    """Case-insensitive, whitespace-collapsed form used for identity checks."""
    return re.sub(r"\s+", " ", s.strip()).casefold()


def utcnow() -> datetime:
    return datetime.now(UTC)


class GraphStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GraphStatus.COMPLETED, GraphStatus.FAILED)


# Forward-only state machine. Re-opening a terminal graph is not a transition;
# it is the store's explicit `reopen` used by updates.
ALLOWED_TRANSITIONS: dict[GraphStatus, frozenset[GraphStatus]] = {
    GraphStatus.QUEUED: frozenset({GraphStatus.PROCESSING, GraphStatus.FAILED}),
    GraphStatus.PROCESSING: frozenset({GraphStatus.COMPLETED, GraphStatus.FAILED}),
    GraphStatus.COMPLETED: frozenset(),
    GraphStatus.FAILED: frozenset(),
}


@dataclass(slots=True)
class Entity:
    """A canonical entity node.

    `id` is generated by the store and never reused within a graph.
    """

    id: str
    label: str
    type: str
    properties: dict[str, Scalar] = field(default_factory=dict)
    document_ids: list[str] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return normalize_label(self.label), normalize_label(self.type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "type": self.type,
            "properties": dict(self.properties),
            "document_ids": list(self.document_ids),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Entity":
        return cls(
            id=d["id"],
            label=d["label"],
            type=d["type"],
            properties=dict(d.get("properties") or {}),
            document_ids=list(d.get("document_ids") or []),
        )


@dataclass(slots=True)
class Relationship:
    """A directed, typed edge between two entities of the same graph."""

    id: str
    source_id: str
    target_id: str
    type: str

    @property
    def key(self) -> tuple[str, str, str]:
        return self.source_id, self.target_id, normalize_label(self.type)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "source_id": self.source_id, "target_id": self.target_id, "type": self.type}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Relationship":
        return cls(id=d["id"], source_id=d["source_id"], target_id=d["target_id"], type=d["type"])


@dataclass(slots=True)
class Graph:
    """A named knowledge graph within an owner scope."""

    scope: str
    name: str
    status: GraphStatus = GraphStatus.QUEUED
    document_ids: list[str] = field(default_factory=list)
    entities: dict[str, Entity] = field(default_factory=dict)
    relationships: dict[str, Relationship] = field(default_factory=dict)
    prompt_config: PromptConfig = field(default_factory=PromptConfig)
    error: str | None = None
    stats: dict[str, Any] = field(default_factory=dict)
    # identifies this instance of (scope, name); a recreated graph gets a new one
    generation: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def entity_count(self) -> int:
        return len(self.entities)

    @property
    def relationship_count(self) -> int:
        return len(self.relationships)

    def snapshot(self) -> "Graph":
        return copy.deepcopy(self)

    def status_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "entity_count": self.entity_count,
            "relationship_count": self.relationship_count,
            "stats": dict(self.stats),
        }
        if self.error is not None:
            out["error"] = self.error
        return out

    def to_dict(self) -> dict[str, Any]:
        out = {
            "name": self.name,
            "entities": [e.to_dict() for e in self.entities.values()],
            "relationships": [r.to_dict() for r in self.relationships.values()],
            "document_ids": list(self.document_ids),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.error is not None:
            out["error"] = self.error
        return out

    def to_record(self) -> dict[str, Any]:
        """Full persistence form (serialized record plus scope, prompts and stats)."""
        out = self.to_dict()
        out["scope"] = self.scope
        out["generation"] = self.generation
        out["error"] = self.error
        out["stats"] = dict(self.stats)
        out["prompt_config"] = self.prompt_config.model_dump()
        return out

    @classmethod
    def from_record(cls, d: dict[str, Any]) -> "Graph":
        entities = [Entity.from_dict(e) for e in d.get("entities") or []]
        rels = [Relationship.from_dict(r) for r in d.get("relationships") or []]
        return cls(
            scope=d["scope"],
            name=d["name"],
            status=GraphStatus(d["status"]),
            document_ids=list(d.get("document_ids") or []),
            entities={e.id: e for e in entities},
            relationships={r.id: r for r in rels},
            prompt_config=PromptConfig.model_validate(d.get("prompt_config") or {}),
            error=d.get("error"),
            stats=dict(d.get("stats") or {}),
            generation=d.get("generation") or uuid.uuid4().hex,
            created_at=datetime.fromisoformat(d["created_at"]),
            updated_at=datetime.fromisoformat(d["updated_at"]),
        )


# --- Candidates proposed by extraction -------------------------------------


@dataclass(frozen=True, slots=True)
class CandidateEntity:
    label: str
    type: str
    document_id: str
    properties: dict[str, Scalar] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CandidateRelationship:
    source_label: str
    target_label: str
    type: str
    document_id: str


@dataclass(slots=True)
class ChunkExtraction:
    """What one chunk contributed."""

    document_id: str
    entities: list[CandidateEntity] = field(default_factory=list)
    relationships: list[CandidateRelationship] = field(default_factory=list)


# --- Commit proposals (resolver -> store) ----------------------------------


@dataclass(slots=True)
class EntityProposal:
    """A new entity (existing_id is None) or a merge into an existing one.

    `ref` is a batch-local handle relationships can point at before the
    store has assigned an id.
    """

    ref: str
    label: str
    type: str
    properties: dict[str, Scalar] = field(default_factory=dict)
    document_ids: list[str] = field(default_factory=list)
    existing_id: str | None = None


@dataclass(frozen=True, slots=True)
class RelationshipProposal:
    """Endpoints are either existing entity ids or EntityProposal refs."""

    source: str
    target: str
    type: str


@dataclass(slots=True)
class CommitResult:
    entities_created: int = 0
    entities_merged: int = 0
    relationships_added: int = 0
    relationships_skipped: int = 0
    ref_to_id: dict[str, str] = field(default_factory=dict)
