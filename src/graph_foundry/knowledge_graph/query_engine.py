from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rapidfuzz import fuzz, utils

from ..errors import GraphNotReadyError, NotFoundError, ValidationError
from .models import Entity, Graph, GraphStatus, Relationship, normalize_label

# Property values count a little less than the label itself.
PROPERTY_WEIGHT = 0.9


class QueryType(str, Enum):
    LIST_ENTITIES = "list_entities"
    ENTITY = "entity"
    PATH = "path"
    SUBGRAPH = "subgraph"


START_NODE_COUNT: dict[QueryType, int] = {
    QueryType.LIST_ENTITIES: 1,
    QueryType.ENTITY: 1,
    QueryType.PATH: 2,
    QueryType.SUBGRAPH: 1,
}


@dataclass(slots=True)
class ScoredEntity:
    entity: Entity
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {**self.entity.to_dict(), "score": round(self.score, 4)}


@dataclass(slots=True)
class SubgraphResult:
    entities: list[Entity]
    relationships: list[Relationship]

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "relationships": [r.to_dict() for r in self.relationships],
        }


def similarity(term: str, text: str) -> float:
    if normalize_label(term) == normalize_label(text):
        return 1.0
    return fuzz.WRatio(term, text, processor=utils.default_process) / 100.0


@dataclass(slots=True)
class GraphQueryEngine:
    """Read-only queries over one completed graph snapshot.

    Relationships are directed, but path and subgraph traversal follow them
    both ways.
    """

    graph: Graph
    match_threshold: float = 0.85
    default_max_depth: int = 3
    max_depth_limit: int = 6
    list_limit: int = 50
    _order: dict[str, int] = field(init=False, default_factory=dict)
    _adjacency: dict[str, list[str]] = field(init=False, default_factory=dict)
    _incident: dict[str, list[Relationship]] = field(init=False, default_factory=dict)

    def __post_init__(self) -> None:
        if self.graph.status is not GraphStatus.COMPLETED:
            raise GraphNotReadyError(self.graph.name, self.graph.status.value)

        self._order = {eid: i for i, eid in enumerate(self.graph.entities)}
        self._adjacency = {eid: [] for eid in self.graph.entities}
        self._incident = {eid: [] for eid in self.graph.entities}
        for r in self.graph.relationships.values():
            self._incident[r.source_id].append(r)
            if r.target_id != r.source_id:
                self._incident[r.target_id].append(r)
                if r.target_id not in self._adjacency[r.source_id]:
                    self._adjacency[r.source_id].append(r.target_id)
                if r.source_id not in self._adjacency[r.target_id]:
                    self._adjacency[r.target_id].append(r.source_id)

    # --- helpers ---

    def _score(self, term: str, e: Entity) -> float:
        best = similarity(term, e.label)
        for v in e.properties.values():
            if isinstance(v, str) and v:
                best = max(best, similarity(term, v) * PROPERTY_WEIGHT)
        return best

    def resolve(self, identifier: str) -> Entity:
        """Entity by id, else exact label, else best fuzzy label match above the threshold."""
        entities = self.graph.entities
        if identifier in entities:
            return entities[identifier]

        norm = normalize_label(identifier)
        for e in entities.values():
            if normalize_label(e.label) == norm:
                return e

        best: Entity | None = None
        best_score = 0.0
        for e in entities.values():
            s = similarity(identifier, e.label)
            if s > best_score:
                best, best_score = e, s
        if best is None or best_score < self.match_threshold:
            raise NotFoundError(
                f"No entity matching '{identifier}' in graph '{self.graph.name}'",
                {"identifier": identifier, "best_score": round(best_score, 4)},
            )
        return best

    def _check_depth(self, max_depth: int | None) -> int:
        depth = self.default_max_depth if max_depth is None else max_depth
        if not isinstance(depth, int) or isinstance(depth, bool):
            raise ValidationError("max_depth must be an integer", {"max_depth": depth})
        if depth < 0 or depth > self.max_depth_limit:
            raise ValidationError(
                f"max_depth must be between 0 and {self.max_depth_limit}", {"max_depth": depth}
            )
        return depth

    # --- the four queries ---

    def list_entities(self, term: str, *, limit: int | None = None) -> list[ScoredEntity]:
        if not term or not term.strip():
            raise ValidationError("list_entities needs a non-empty search term")
        scored = [ScoredEntity(e, self._score(term, e)) for e in self.graph.entities.values()]
        # sort is stable, so equal scores keep insertion order
        scored.sort(key=lambda s: -s.score)
        return scored[: limit or self.list_limit]

    def entity(self, identifier: str) -> dict[str, Any]:
        e = self.resolve(identifier)
        entities = self.graph.entities
        rels = []
        for r in self._incident[e.id]:
            rels.append(
                {
                    **r.to_dict(),
                    "source_label": entities[r.source_id].label,
                    "target_label": entities[r.target_id].label,
                }
            )
        return {**e.to_dict(), "relationships": rels}

    def path(self, source: str, target: str, *, max_depth: int | None = None) -> list[list[str]]:
        """All simple paths of at most `max_depth` hops, breadth-first (shortest first)."""
        depth = self._check_depth(max_depth)
        src, dst = self.resolve(source), self.resolve(target)

        if src.id == dst.id:
            return [[src.label]]
        if depth == 0:
            raise ValidationError("max_depth 0 is only valid when source and target are the same entity")

        found: list[list[str]] = []
        queue: deque[list[str]] = deque([[src.id]])
        while queue:
            p = queue.popleft()
            if len(p) - 1 >= depth:
                continue
            for nb in self._adjacency[p[-1]]:
                if nb in p:
                    continue
                if nb == dst.id:
                    found.append(p + [nb])
                else:
                    queue.append(p + [nb])

        entities = self.graph.entities
        return [[entities[eid].label for eid in p] for p in found]

    def subgraph(self, focus: str, *, max_depth: int | None = None) -> SubgraphResult:
        """Entities within `max_depth` hops of the focus, and the edges walked to reach them.

        An edge counts when at least one endpoint is closer than the bound,
        so depth 0 yields the focus alone.
        """
        depth = self._check_depth(max_depth)
        start = self.resolve(focus)

        dist: dict[str, int] = {start.id: 0}
        queue: deque[str] = deque([start.id])
        while queue:
            cur = queue.popleft()
            if dist[cur] >= depth:
                continue
            for nb in self._adjacency[cur]:
                if nb not in dist:
                    dist[nb] = dist[cur] + 1
                    queue.append(nb)

        rels = [
            r
            for r in self.graph.relationships.values()
            if r.source_id in dist and r.target_id in dist and min(dist[r.source_id], dist[r.target_id]) < depth
        ]
        entities = [self.graph.entities[eid] for eid in dist]
        return SubgraphResult(entities=entities, relationships=rels)

    # --- dispatch ---

    def run(self, query_type: QueryType | str, start_nodes: list[str], max_depth: int | None = None) -> dict[str, Any]:
        try:
            qt = QueryType(query_type)
        except ValueError as e:
            raise ValidationError(
                f"Unknown query type '{query_type}'", {"allowed": [q.value for q in QueryType]}
            ) from e

        expected = START_NODE_COUNT[qt]
        if (
            not isinstance(start_nodes, list)
            or len(start_nodes) != expected
            or any(not isinstance(s, str) or not s.strip() for s in start_nodes)
        ):
            raise ValidationError(
                f"{qt.value} needs exactly {expected} non-empty start node(s)", {"start_nodes": start_nodes}
            )

        if qt is QueryType.LIST_ENTITIES:
            return {"entities": [s.to_dict() for s in self.list_entities(start_nodes[0])]}
        if qt is QueryType.ENTITY:
            return {"entity": self.entity(start_nodes[0])}
        if qt is QueryType.PATH:
            return {"paths": self.path(start_nodes[0], start_nodes[1], max_depth=max_depth)}
        return self.subgraph(start_nodes[0], max_depth=max_depth).to_dict()
