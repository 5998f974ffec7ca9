"""Shared fakes and fixtures for the graph-foundry test suite."""

import asyncio
import json

import pytest

from graph_foundry.knowledge_graph.documents import InMemoryDocumentStore
from graph_foundry.knowledge_graph.models import Entity, Graph, GraphStatus, Relationship
from graph_foundry.knowledge_graph.store import InMemoryGraphStore
from graph_foundry.settings import GraphFoundrySettings

RESOLUTION_MARKER = "You decide which entity labels"


def extraction(entities=(), relationships=()):
    """Completion payload in the shape the extraction prompt asks for."""
    return {
        "entities": [{"label": label, "type": type_} for label, type_ in entities],
        "relationships": [{"source": s, "target": t, "type": ty} for s, t, ty in relationships],
    }


class FakeCompletionClient:
    """Answers extraction prompts by chunk text and resolution prompts with a fixed reply.

    Values may be a dict (sent as JSON), a raw string, or an exception to raise.
    When `gate` is set, every call waits on it first. Chunk texts listed in
    `hang` never get an answer.
    """

    def __init__(self, extractions=None, resolution=None, gate=None, hang=()):
        self.extractions = dict(extractions or {})
        self.resolution = resolution
        self.gate = gate
        self.hang = set(hang)
        self.prompts = []

    @staticmethod
    def _reply(value):
        if isinstance(value, BaseException):
            raise value
        if isinstance(value, str):
            return value
        return json.dumps(value)

    async def complete(self, prompt):
        self.prompts.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if prompt.startswith(RESOLUTION_MARKER):
            return self._reply(self.resolution if self.resolution is not None else {"groups": []})
        text = prompt.rsplit("Text:\n", 1)[-1].strip()
        if text in self.hang:
            await asyncio.sleep(3600)
        return self._reply(self.extractions.get(text, extraction()))

    @property
    def resolution_calls(self):
        return [p for p in self.prompts if p.startswith(RESOLUTION_MARKER)]


def build_graph(entities, relationships=(), *, status=GraphStatus.COMPLETED, name="g"):
    """Graph snapshot with ids derived from labels: entity 'AI' gets id 'e-AI'."""
    g = Graph(scope="s", name=name, status=status)
    for item in entities:
        label, type_ = item[0], item[1]
        props = item[2] if len(item) > 2 else {}
        g.entities[f"e-{label}"] = Entity(id=f"e-{label}", label=label, type=type_, properties=props)
    for i, (s, t, ty) in enumerate(relationships):
        g.relationships[f"r{i}"] = Relationship(id=f"r{i}", source_id=f"e-{s}", target_id=f"e-{t}", type=ty)
    return g


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store():
    return InMemoryGraphStore()


@pytest.fixture
def documents():
    return InMemoryDocumentStore()


@pytest.fixture
def cfg():
    return GraphFoundrySettings(worker_count=2, extraction_concurrency=2, build_timeout_s=5.0)
