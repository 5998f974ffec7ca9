"""Entity resolution: decide which extracted candidates are already in the graph.

Identity is decided in three tiers, strongest first:

1. exact match on (label, type), case-insensitive;
2. explicit equivalence classes from the resolution examples;
3. groups proposed by the completion service (only when a resolution
   prompt is configured), never overriding tier 2.

The resolver only proposes. Ids are assigned by the store at commit time,
and existing entities are only ever extended, never removed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from rapidfuzz import fuzz, process

from ..errors import CompletionError
from .completion import CompletionClient, parse_resolution
from .models import (
    CandidateEntity,
    ChunkExtraction,
    Entity,
    EntityProposal,
    RelationshipProposal,
    normalize_label,
)
from .prompts import PromptConfig, ResolutionExample, ResolutionPrompt

logger = logging.getLogger(__name__)

Key = tuple[str, str]


@dataclass(slots=True)
class EquivalenceIndex:
    """Label aliases declared equivalent by resolution examples."""

    _classes: dict[tuple[str, str | None], int] = field(default_factory=dict)
    _canonical: dict[int, str] = field(default_factory=dict)

    @classmethod
    def from_examples(cls, examples: Iterable[ResolutionExample]) -> "EquivalenceIndex":
        idx = cls()
        for cid, ex in enumerate(examples):
            type_ = normalize_label(ex.type) if ex.type else None
            for label in ex.labels:
                idx._classes.setdefault((normalize_label(label), type_), cid)
            if ex.canonical:
                idx._classes.setdefault((normalize_label(ex.canonical), type_), cid)
                idx._canonical[cid] = ex.canonical
        return idx

    def class_of(self, label: str, type_: str) -> int | None:
        norm = normalize_label(label)
        cid = self._classes.get((norm, normalize_label(type_)))
        if cid is None:
            cid = self._classes.get((norm, None))
        return cid

    def canonical(self, cid: int) -> str | None:
        return self._canonical.get(cid)


@dataclass(slots=True)
class MergePlan:
    entities: list[EntityProposal] = field(default_factory=list)
    relationships: list[RelationshipProposal] = field(default_factory=list)
    dropped_relationships: int = 0
    degraded: bool = False

    @property
    def new_count(self) -> int:
        return sum(1 for p in self.entities if p.existing_id is None)

    @property
    def merge_count(self) -> int:
        return sum(1 for p in self.entities if p.existing_id is not None)


class _Plan:
    """Working state for one resolver pass."""

    def __init__(self, existing: list[Entity], eq: EquivalenceIndex):
        self.eq = eq
        self.existing = {e.id: e for e in existing}
        self.existing_by_key: dict[Key, str] = {}
        for e in existing:
            self.existing_by_key.setdefault(e.key, e.id)
        self.nodes: dict[str, EntityProposal] = {}
        self.nodes_by_key: dict[Key, str] = {}
        self.parent: dict[str, str] = {}
        self.contributions: list[tuple[str, CandidateEntity]] = []

    def find(self, handle: str) -> str:
        while handle in self.parent:
            handle = self.parent[handle]
        return handle

    def type_of(self, handle: str) -> str:
        node = self.nodes.get(handle)
        return normalize_label(node.type if node else self.existing[handle].type)

    def label_of(self, handle: str) -> str:
        node = self.nodes.get(handle)
        return node.label if node else self.existing[handle].label

    def attach(self, c: CandidateEntity) -> str:
        key = (normalize_label(c.label), normalize_label(c.type))
        handle = self.existing_by_key.get(key) or self.nodes_by_key.get(key)
        if handle is None:
            handle = f"new:{len(self.nodes)}"
            self.nodes[handle] = EntityProposal(ref=handle, label=c.label, type=c.type)
            self.nodes_by_key[key] = handle
        self.contributions.append((handle, c))
        return handle

    def explicit_conflict(self, a: str, b: str) -> bool:
        ca = self.eq.class_of(self.label_of(a), self.type_of(a))
        cb = self.eq.class_of(self.label_of(b), self.type_of(b))
        return ca is not None and cb is not None and ca != cb


class EntityResolver:
    """Builds a merge plan for a batch of candidates against the graph's entities."""

    def __init__(self, client: CompletionClient | None = None, *, existing_labels_per_label: int = 10):
        self.client = client
        self.existing_labels_per_label = existing_labels_per_label

    async def plan(
        self,
        existing: list[Entity],
        extractions: list[ChunkExtraction],
        prompts: PromptConfig,
    ) -> MergePlan:
        resolution = prompts.resolution
        eq = EquivalenceIndex.from_examples(resolution.examples if resolution else [])
        st = _Plan(existing, eq)

        chunk_labels: list[dict[str, str]] = []
        for ext in extractions:
            labels: dict[str, str] = {}
            for c in ext.entities:
                labels.setdefault(normalize_label(c.label), st.attach(c))
            chunk_labels.append(labels)

        self._apply_explicit(st)

        plan = MergePlan()
        if resolution is not None and self.client is not None:
            plan.degraded = not await self._apply_model_groups(st, resolution)

        plan.entities = self._proposals(st)
        self._relationships(st, extractions, chunk_labels, plan)
        return plan

    # --- tier 2 ---

    def _apply_explicit(self, st: _Plan) -> None:
        owners: dict[tuple[int, str], str] = {}
        for e in st.existing.values():
            cid = st.eq.class_of(e.label, e.type)
            if cid is not None:
                owners.setdefault((cid, normalize_label(e.type)), e.id)

        for ref, node in st.nodes.items():
            cid = st.eq.class_of(node.label, node.type)
            if cid is None:
                continue
            k = (cid, normalize_label(node.type))
            owner = owners.get(k)
            if owner is None:
                owners[k] = ref
                canonical = st.eq.canonical(cid)
                if canonical:
                    node.label = canonical
            else:
                st.parent[ref] = owner

    # --- tier 3 ---

    async def _apply_model_groups(self, st: _Plan, prompt: ResolutionPrompt) -> bool:
        """Returns False when the completion service could not be used."""
        pending = [ref for ref in st.nodes if ref not in st.parent]
        if not pending:
            return True

        labels_by_type: dict[str, list[str]] = {}
        display: dict[str, str] = {}
        for ref in pending:
            node = st.nodes[ref]
            t = normalize_label(node.type)
            display.setdefault(t, node.type)
            labels_by_type.setdefault(t, [])
            if node.label not in labels_by_type[t]:
                labels_by_type[t].append(node.label)

        for t, new_labels in labels_by_type.items():
            pool = [e.label for e in st.existing.values() if normalize_label(e.type) == t]
            if not pool:
                continue
            nearby: list[str] = []
            for label in new_labels:
                for match, _score, _idx in process.extract(
                    label, pool, scorer=fuzz.WRatio, limit=self.existing_labels_per_label
                ):
                    if match not in nearby and match not in new_labels:
                        nearby.append(match)
            new_labels.extend(nearby)

        try:
            raw = await self.client.complete(prompt.render({display[t]: v for t, v in labels_by_type.items()}))
            groups = parse_resolution(raw)
        except CompletionError as e:
            logger.warning("Resolution service unavailable, falling back to exact matching: %s", e)
            return False

        by_label: dict[str, list[str]] = {}
        for ref in pending:
            by_label.setdefault(normalize_label(st.nodes[ref].label), []).append(ref)
        for e in st.existing.values():
            if normalize_label(e.type) in labels_by_type:
                by_label.setdefault(normalize_label(e.label), []).append(e.id)

        for group in groups:
            buckets: dict[str, list[str]] = {}
            for label in group:
                for h in by_label.get(normalize_label(label), []):
                    root = st.find(h)
                    bucket = buckets.setdefault(st.type_of(root), [])
                    if root not in bucket:
                        bucket.append(root)
            for roots in buckets.values():
                if len(roots) < 2:
                    continue
                existing_roots = [r for r in roots if r in st.existing]
                target = existing_roots[0] if existing_roots else roots[0]
                for r in roots:
                    if r == target or r in st.existing:
                        continue
                    if st.explicit_conflict(r, target):
                        logger.debug("Ignoring model merge of %r into %r: explicit classes differ", r, target)
                        continue
                    st.parent[r] = target
        return True

    # --- output ---

    def _proposals(self, st: _Plan) -> list[EntityProposal]:
        merged: dict[str, EntityProposal] = {}
        for handle, c in st.contributions:
            root = st.find(handle)
            p = merged.get(root)
            if p is None:
                if root in st.existing:
                    e = st.existing[root]
                    p = EntityProposal(ref=root, label=e.label, type=e.type, existing_id=root)
                else:
                    p = st.nodes[root]
                merged[root] = p
            if c.document_id not in p.document_ids:
                p.document_ids.append(c.document_id)
            for k, v in c.properties.items():
                p.properties.setdefault(k, v)
        return list(merged.values())

    def _relationships(
        self,
        st: _Plan,
        extractions: list[ChunkExtraction],
        chunk_labels: list[dict[str, str]],
        plan: MergePlan,
    ) -> None:
        global_labels: dict[str, str] = {}
        for e in st.existing.values():
            global_labels.setdefault(normalize_label(e.label), e.id)
        for ref, node in st.nodes.items():
            global_labels.setdefault(normalize_label(node.label), ref)

        seen: set[tuple[str, str, str]] = set()
        for ext, labels in zip(extractions, chunk_labels):
            for r in ext.relationships:
                src = labels.get(normalize_label(r.source_label)) or global_labels.get(normalize_label(r.source_label))
                dst = labels.get(normalize_label(r.target_label)) or global_labels.get(normalize_label(r.target_label))
                if src is None or dst is None:
                    plan.dropped_relationships += 1
                    logger.warning(
                        "Dropping relationship %r -[%s]-> %r from %s: unknown endpoint",
                        r.source_label,
                        r.type,
                        r.target_label,
                        r.document_id,
                    )
                    continue
                src, dst = st.find(src), st.find(dst)
                key = (src, dst, normalize_label(r.type))
                if key in seen:
                    continue
                seen.add(key)
                plan.relationships.append(RelationshipProposal(source=src, target=dst, type=r.type))
