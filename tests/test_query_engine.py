"""Query engine over a small, fixed graph.

    AI <-SUBFIELD_OF- Machine Learning <-SUBFIELD_OF- Deep Learning -USES-> Neural Network -TRAINED_WITH-> Backpropagation
    AI -INCLUDES-> Deep Learning
    Isolated
"""

import pytest

from graph_foundry.errors import GraphNotReadyError, NotFoundError, ValidationError
from graph_foundry.knowledge_graph.models import GraphStatus
from graph_foundry.knowledge_graph.query_engine import GraphQueryEngine

from .conftest import build_graph

ENTITIES = [
    ("AI", "Field"),
    ("Machine Learning", "Field"),
    ("Deep Learning", "Method"),
    ("Neural Network", "Method", {"aka": "NN"}),
    ("Backpropagation", "Algorithm"),
    ("Isolated", "Thing"),
]
RELATIONSHIPS = [
    ("Machine Learning", "AI", "SUBFIELD_OF"),
    ("Deep Learning", "Machine Learning", "SUBFIELD_OF"),
    ("Deep Learning", "Neural Network", "USES"),
    ("Neural Network", "Backpropagation", "TRAINED_WITH"),
    ("AI", "Deep Learning", "INCLUDES"),
]


@pytest.fixture
def engine():
    return GraphQueryEngine(build_graph(ENTITIES, RELATIONSHIPS), max_depth_limit=6)


@pytest.mark.parametrize("status", [GraphStatus.QUEUED, GraphStatus.PROCESSING, GraphStatus.FAILED])
def test_only_completed_graphs_are_queryable(status):
    with pytest.raises(GraphNotReadyError):
        GraphQueryEngine(build_graph(ENTITIES, RELATIONSHIPS, status=status))


# ---------------------------------------------------------------------------
# list_entities
# ---------------------------------------------------------------------------


def test_list_entities_ranks_exact_label_first(engine):
    out = engine.list_entities("neural network")
    assert out[0].entity.label == "Neural Network"
    assert out[0].score == 1.0
    scores = [s.score for s in out]
    assert scores == sorted(scores, reverse=True)
    assert len(out) == len(ENTITIES)


def test_list_entities_matches_property_values(engine):
    out = engine.list_entities("NN")
    assert out[0].entity.label == "Neural Network"
    assert out[0].score == pytest.approx(0.9)


def test_list_entities_ties_keep_insertion_order():
    engine = GraphQueryEngine(build_graph([("Python", "Language"), ("Cobra", "Animal"), ("python", "Snake")]))
    out = engine.list_entities("Python")
    assert [s.entity.id for s in out[:2]] == ["e-Python", "e-python"]


def test_list_entities_limit():
    engine = GraphQueryEngine(build_graph(ENTITIES), list_limit=2)
    assert len(engine.list_entities("learning")) == 2


def test_list_entities_needs_a_term(engine):
    with pytest.raises(ValidationError):
        engine.list_entities("  ")


# ---------------------------------------------------------------------------
# entity
# ---------------------------------------------------------------------------


def test_entity_by_label_includes_incident_relationships(engine):
    out = engine.entity("Deep Learning")
    assert out["id"] == "e-Deep Learning"
    types = sorted(r["type"] for r in out["relationships"])
    assert types == ["INCLUDES", "SUBFIELD_OF", "USES"]
    uses = next(r for r in out["relationships"] if r["type"] == "USES")
    assert uses["source_label"] == "Deep Learning" and uses["target_label"] == "Neural Network"


def test_entity_by_id_and_by_close_spelling(engine):
    assert engine.entity("e-AI")["label"] == "AI"
    assert engine.entity("Deep Lerning")["label"] == "Deep Learning"


def test_entity_without_match_is_not_found(engine):
    with pytest.raises(NotFoundError):
        engine.entity("Quantum Chromodynamics")


def test_entity_without_relationships(engine):
    assert engine.entity("Isolated")["relationships"] == []


# ---------------------------------------------------------------------------
# path
# ---------------------------------------------------------------------------


def test_path_returns_all_simple_paths_shortest_first(engine):
    assert engine.path("AI", "Neural Network", max_depth=3) == [
        ["AI", "Deep Learning", "Neural Network"],
        ["AI", "Machine Learning", "Deep Learning", "Neural Network"],
    ]


def test_path_respects_depth_bound(engine):
    for depth in range(1, 5):
        paths = engine.path("AI", "Backpropagation", max_depth=depth)
        assert all(len(p) - 1 <= depth for p in paths)
    assert engine.path("AI", "Neural Network", max_depth=1) == []
    assert engine.path("AI", "Neural Network", max_depth=2) == [["AI", "Deep Learning", "Neural Network"]]


def test_path_follows_edges_both_ways(engine):
    assert ["Backpropagation", "Neural Network", "Deep Learning"] in engine.path("Backpropagation", "Deep Learning")


def test_path_between_unconnected_entities_is_empty(engine):
    assert engine.path("AI", "Isolated") == []


def test_path_to_self(engine):
    assert engine.path("AI", "ai", max_depth=0) == [["AI"]]
    assert engine.path("AI", "AI") == [["AI"]]


def test_path_depth_zero_between_different_entities_is_invalid(engine):
    with pytest.raises(ValidationError):
        engine.path("AI", "Deep Learning", max_depth=0)


@pytest.mark.parametrize("depth", [-1, 7, "2", True])
def test_path_depth_out_of_range(engine, depth):
    with pytest.raises(ValidationError):
        engine.path("AI", "Deep Learning", max_depth=depth)


# ---------------------------------------------------------------------------
# subgraph
# ---------------------------------------------------------------------------


def test_subgraph_one_hop(engine):
    out = engine.subgraph("Deep Learning", max_depth=1)
    labels = {e.label for e in out.entities}
    assert labels == {"Deep Learning", "Machine Learning", "Neural Network", "AI"}
    assert sorted(r.type for r in out.relationships) == ["INCLUDES", "SUBFIELD_OF", "USES"]


def test_subgraph_is_closed_over_its_entities(engine):
    for depth in range(0, 4):
        out = engine.subgraph("AI", max_depth=depth)
        ids = {e.id for e in out.entities}
        assert all(r.source_id in ids and r.target_id in ids for r in out.relationships)


def test_subgraph_depth_zero_is_the_focus_alone(engine):
    out = engine.subgraph("AI", max_depth=0).to_dict()
    assert [e["label"] for e in out["entities"]] == ["AI"]
    assert out["relationships"] == []


def test_subgraph_unknown_focus(engine):
    with pytest.raises(NotFoundError):
        engine.subgraph("Nothing like it at all")


# ---------------------------------------------------------------------------
# dispatch
# ---------------------------------------------------------------------------


def test_run_dispatches_by_type(engine):
    assert "entities" in engine.run("list_entities", ["AI"])
    assert engine.run("entity", ["AI"])["entity"]["label"] == "AI"
    assert engine.run("path", ["AI", "Machine Learning"], max_depth=1) == {"paths": [["AI", "Machine Learning"]]}
    assert set(engine.run("subgraph", ["AI"], max_depth=1)) == {"entities", "relationships"}


@pytest.mark.parametrize(
    "query_type, start_nodes",
    [
        ("shortest_path", ["AI", "ML"]),
        ("path", ["AI"]),
        ("entity", ["AI", "ML"]),
        ("subgraph", []),
        ("list_entities", [""]),
    ],
)
def test_run_rejects_bad_requests(engine, query_type, start_nodes):
    with pytest.raises(ValidationError):
        engine.run(query_type, start_nodes)
