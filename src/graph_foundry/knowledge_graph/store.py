from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from ..errors import (
    AlreadyExistsError,
    ConcurrentBuildInProgressError,
    GraphIntegrityError,
    InvalidTransitionError,
    NotFoundError,
)
from .models import (
    ALLOWED_TRANSITIONS,
    CommitResult,
    Entity,
    EntityProposal,
    Graph,
    GraphStatus,
    Relationship,
    RelationshipProposal,
    normalize_label,
    utcnow,
)
from .prompts import PromptConfig

logger = logging.getLogger(__name__)

GraphKey = tuple[str, str]


class GraphStore(Protocol):
    """Abstraction for the authoritative graph state.

    Every read returns a detached snapshot; every write is atomic.
    """

    def create(
        self, scope: str, name: str, *, document_ids: list[str] | None = None, prompt_config: PromptConfig | None = None
    ) -> Graph: ...

    def read(self, scope: str, name: str) -> Graph: ...

    def list_graphs(self, scope: str) -> list[str]: ...

    def delete(self, scope: str, name: str) -> None: ...

    def transition_status(
        self,
        scope: str,
        name: str,
        new_status: GraphStatus,
        error: str | None = None,
        *,
        generation: str | None = None,
    ) -> Graph: ...

    def reopen(self, scope: str, name: str, *, prompt_config: PromptConfig | None = None) -> Graph: ...

    def commit_entities_and_relationships(
        self, scope: str, name: str, entities: list[EntityProposal], relationships: list[RelationshipProposal]
    ) -> CommitResult: ...

    def add_document_ids(self, scope: str, name: str, document_ids: list[str]) -> None: ...

    def order_document_ids(self, scope: str, name: str, order: list[str]) -> None: ...

    def record_stats(self, scope: str, name: str, stats: dict[str, Any]) -> None: ...

    def entities(self, scope: str, name: str) -> list[Entity]: ...

    def writer(self, scope: str, name: str) -> asyncio.Lock: ...


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


class InMemoryGraphStore:
    """Process-local store.

    A threading lock makes each call atomic. Build pipelines additionally
    hold the per-graph `writer` lock across resolve+commit so entity
    resolution always sees a settled entity set.

    Subclasses persist through `_on_change`/`_on_delete`. Those hooks run
    before a change becomes visible; if one raises, the change is undone.
    """

    # Whether mutations must be undoable (a persistence hook may fail).
    _persistent = False

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._graphs: dict[GraphKey, Graph] = {}
        self._writers: dict[GraphKey, asyncio.Lock] = {}

    # persistence hooks (no-ops here)
    def _on_change(self, graph: Graph) -> None:
        pass

    def _on_delete(self, scope: str, name: str) -> None:
        pass

    def _get(self, scope: str, name: str) -> Graph:
        g = self._graphs.get((scope, name))
        if g is None:
            raise NotFoundError(f"Graph '{name}' not found in scope '{scope}'", {"scope": scope, "name": name})
        return g

    @contextmanager
    def _mutate(self, scope: str, name: str) -> Iterator[Graph]:
        """Yield the live graph; persist afterwards, restoring the old state if anything fails."""
        g = self._get(scope, name)
        backup = g.snapshot() if self._persistent else None
        try:
            yield g
            g.updated_at = utcnow()
            self._on_change(g)
        except BaseException:
            if backup is not None:
                self._graphs[(scope, name)] = backup
            raise

    def create(
        self, scope: str, name: str, *, document_ids: list[str] | None = None, prompt_config: PromptConfig | None = None
    ) -> Graph:
        with self._lock:
            if (scope, name) in self._graphs:
                raise AlreadyExistsError(scope, name)
            g = Graph(scope=scope, name=name, prompt_config=prompt_config or PromptConfig())
            for d in document_ids or []:
                if d not in g.document_ids:
                    g.document_ids.append(d)
            self._on_change(g)
            self._graphs[(scope, name)] = g
            logger.info("Created graph %s/%s (generation %s)", scope, name, g.generation)
            return g.snapshot()

    def read(self, scope: str, name: str) -> Graph:
        with self._lock:
            return self._get(scope, name).snapshot()

    def list_graphs(self, scope: str) -> list[str]:
        with self._lock:
            return [n for (s, n) in self._graphs if s == scope]

    def delete(self, scope: str, name: str) -> None:
        with self._lock:
            self._get(scope, name)
            self._on_delete(scope, name)
            del self._graphs[(scope, name)]
            self._writers.pop((scope, name), None)
            logger.info("Deleted graph %s/%s", scope, name)

    def transition_status(
        self,
        scope: str,
        name: str,
        new_status: GraphStatus,
        error: str | None = None,
        *,
        generation: str | None = None,
    ) -> Graph:
        """Move a graph forward in its lifecycle.

        With `generation`, the call only applies to that instance of the
        graph; a graph deleted and recreated under the same name is
        reported as not found.
        """
        new_status = GraphStatus(new_status)
        with self._lock:
            current = self._get(scope, name)
            if generation is not None and current.generation != generation:
                raise NotFoundError(
                    f"Graph '{name}' in scope '{scope}' was replaced",
                    {"scope": scope, "name": name, "generation": generation},
                )
            if new_status not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransitionError(current.status.value, new_status.value)
            with self._mutate(scope, name) as g:
                g.status = new_status
                g.error = (error or "unknown error") if new_status is GraphStatus.FAILED else None
            logger.info("Graph %s/%s -> %s%s", scope, name, new_status.value, f" ({g.error})" if g.error else "")
            return g.snapshot()

    def reopen(self, scope: str, name: str, *, prompt_config: PromptConfig | None = None) -> Graph:
        """Move a terminal graph back to queued for an update.

        This is the only way out of a terminal state; a graph that is still
        queued or processing is rejected.
        """
        with self._lock:
            current = self._get(scope, name)
            if not current.status.is_terminal:
                raise ConcurrentBuildInProgressError(scope, name, current.status.value)
            with self._mutate(scope, name) as g:
                g.status = GraphStatus.QUEUED
                g.error = None
                if prompt_config is not None:
                    g.prompt_config = prompt_config
            return g.snapshot()

    def commit_entities_and_relationships(
        self, scope: str, name: str, entities: list[EntityProposal], relationships: list[RelationshipProposal]
    ) -> CommitResult:
        with self._lock:
            g = self._get(scope, name)

            # validate everything before touching the graph
            refs: dict[str, str | None] = {}
            for p in entities:
                if p.ref in refs:
                    raise GraphIntegrityError(f"Duplicate proposal ref '{p.ref}'", {"ref": p.ref})
                if p.existing_id is not None and p.existing_id not in g.entities:
                    raise GraphIntegrityError(
                        f"Merge target '{p.existing_id}' is not in graph '{name}'", {"entity_id": p.existing_id}
                    )
                refs[p.ref] = p.existing_id
            for r in relationships:
                for endpoint in (r.source, r.target):
                    if endpoint not in refs and endpoint not in g.entities:
                        raise GraphIntegrityError(
                            f"Relationship endpoint '{endpoint}' is not in graph '{name}'",
                            {"endpoint": endpoint, "type": r.type},
                        )

            result = CommitResult()
            with self._mutate(scope, name) as g:
                by_key = {e.key: e.id for e in g.entities.values()}
                for p in entities:
                    target_id = p.existing_id or by_key.get((normalize_label(p.label), normalize_label(p.type)))
                    if target_id is not None:
                        e = g.entities[target_id]
                        for d in p.document_ids:
                            if d not in e.document_ids:
                                e.document_ids.append(d)
                        for k, v in p.properties.items():
                            e.properties.setdefault(k, v)
                        result.entities_merged += 1
                    else:
                        e = Entity(
                            id=_new_id("ent"),
                            label=p.label,
                            type=p.type,
                            properties=dict(p.properties),
                            document_ids=list(p.document_ids),
                        )
                        g.entities[e.id] = e
                        by_key[e.key] = e.id
                        result.entities_created += 1
                    result.ref_to_id[p.ref] = e.id

                rel_keys = {r.key for r in g.relationships.values()}
                for r in relationships:
                    src = result.ref_to_id.get(r.source, r.source)
                    dst = result.ref_to_id.get(r.target, r.target)
                    rel = Relationship(id=_new_id("rel"), source_id=src, target_id=dst, type=r.type)
                    if rel.key in rel_keys:
                        result.relationships_skipped += 1
                        continue
                    g.relationships[rel.id] = rel
                    rel_keys.add(rel.key)
                    result.relationships_added += 1
            return result

    def add_document_ids(self, scope: str, name: str, document_ids: list[str]) -> None:
        with self._lock, self._mutate(scope, name) as g:
            for d in document_ids:
                if d not in g.document_ids:
                    g.document_ids.append(d)

    def order_document_ids(self, scope: str, name: str, order: list[str]) -> None:
        """Sort the graph's and every entity's document list by `order` (unknown ids last, stable)."""
        rank = {d: i for i, d in enumerate(dict.fromkeys(order))}

        def sort_key(d: str) -> int:
            return rank.get(d, len(rank))

        with self._lock, self._mutate(scope, name) as g:
            g.document_ids.sort(key=sort_key)
            for e in g.entities.values():
                e.document_ids.sort(key=sort_key)

    def record_stats(self, scope: str, name: str, stats: dict[str, Any]) -> None:
        with self._lock, self._mutate(scope, name) as g:
            g.stats = dict(stats)

    def entities(self, scope: str, name: str) -> list[Entity]:
        with self._lock:
            return [Entity.from_dict(e.to_dict()) for e in self._get(scope, name).entities.values()]

    def writer(self, scope: str, name: str) -> asyncio.Lock:
        with self._lock:
            return self._writers.setdefault((scope, name), asyncio.Lock())
