import json

import pytest

from graph_foundry.cli.main import _parse_metadata, app, build_parser
from graph_foundry.knowledge_graph.documents import DocumentFilter, InMemoryDocumentStore, JsonlDocumentStore
from graph_foundry.knowledge_graph.sqlite_store import SQLiteGraphStore


@pytest.fixture
def docs():
    store = InMemoryDocumentStore()
    store.add("a", ["one", "two"], {"topic": "nlp", "year": 2019})
    store.add("b", "three", {"topic": "vision"})
    store.add("c", "four", {"topic": "nlp", "year": 2020})
    return store


def test_chunks_for_known_and_unknown_documents(docs):
    assert [c.text for c in docs.get_chunks("a")] == ["one", "two"]
    assert all(c.document_id == "a" for c in docs.get_chunks("a"))
    assert docs.get_chunks("zzz") == []


@pytest.mark.parametrize(
    "flt, expected",
    [
        (DocumentFilter(), []),
        (DocumentFilter(metadata={"topic": "nlp"}), ["a", "c"]),
        (DocumentFilter(metadata={"topic": "nlp", "year": 2020}), ["c"]),
        (DocumentFilter(document_ids=["b", "c"]), ["b", "c"]),
        (DocumentFilter(document_ids=["b", "c"], metadata={"topic": "nlp"}), ["c"]),
        (DocumentFilter(document_ids=["nope"]), []),
    ],
)
def test_find_documents(docs, flt, expected):
    assert docs.find_documents(flt) == expected


def test_jsonl_store(tmp_path):
    path = tmp_path / "docs.jsonl"
    rows = [
        {"document_id": "d1", "text": "BERT is a model.", "metadata": {"topic": "nlp"}},
        {"document_id": "d2", "chunks": ["first", "second"]},
        {"text": "no id"},
    ]
    path.write_text("\n".join(json.dumps(r) for r in rows) + "\n\n", encoding="utf-8")
    store = JsonlDocumentStore(path)
    assert store.document_ids() == ["d1", "d2"]
    assert [c.text for c in store.get_chunks("d2")] == ["first", "second"]
    assert store.find_documents(DocumentFilter(metadata={"topic": "nlp"})) == ["d1"]


def test_cli_metadata_pairs():
    assert _parse_metadata(["topic=nlp", "year=2020"]) == {"topic": "nlp", "year": "2020"}
    with pytest.raises(SystemExit):
        _parse_metadata(["oops"])


def test_cli_parser():
    args = build_parser().parse_args(
        ["build", "--name", "g", "--documents", "docs.jsonl", "--document-id", "d1", "--document-id", "d2"]
    )
    assert args.scope == "default" and args.document_id == ["d1", "d2"]
    q = build_parser().parse_args(["query", "path", "BERT", "GPT-2", "--max-depth", "2"])
    assert q.name is None and q.start_node == ["BERT", "GPT-2"] and q.max_depth == 2


def test_cli_reports_unknown_graph(tmp_path, capsys):
    db = str(tmp_path / "graphs.db")
    with pytest.raises(SystemExit) as info:
        app(["status", "--name", "missing", "--db-path", db])
    assert info.value.code == 1
    assert "error: Graph 'missing' not found" in capsys.readouterr().err


def test_cli_reports_graph_not_ready(tmp_path, capsys):
    db = str(tmp_path / "graphs.db")
    SQLiteGraphStore(db).create("default", "g")
    with pytest.raises(SystemExit) as info:
        app(["query", "entity", "BERT", "--name", "g", "--db-path", db])
    assert info.value.code == 1
    assert "not ready for queries" in capsys.readouterr().err
