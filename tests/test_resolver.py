"""Entity resolution tiers: exact keys, explicit classes, model-proposed groups."""

import pytest

from graph_foundry.errors import CompletionError
from graph_foundry.knowledge_graph.models import CandidateEntity, CandidateRelationship, ChunkExtraction, Entity
from graph_foundry.knowledge_graph.prompts import PromptConfig, ResolutionExample, ResolutionPrompt
from graph_foundry.knowledge_graph.resolver import EntityResolver, EquivalenceIndex

from .conftest import FakeCompletionClient, run


def _ext(doc, entities, relationships=()):
    return ChunkExtraction(
        document_id=doc,
        entities=[CandidateEntity(label=l, type=t, document_id=doc) for l, t in entities],
        relationships=[CandidateRelationship(s, t, ty, doc) for s, t, ty in relationships],
    )


def _existing(*items):
    return [Entity(id=f"e-{label}", label=label, type=type_, document_ids=["doc0"]) for label, type_ in items]


def _prompts(*classes):
    examples = [ResolutionExample(**c) for c in classes]
    return PromptConfig(resolution=ResolutionPrompt(examples=examples))


# ---------------------------------------------------------------------------
# tier 1: exact keys
# ---------------------------------------------------------------------------


def test_exact_match_merges_into_existing_entity():
    plan = run(EntityResolver().plan(_existing(("BERT", "Method")), [_ext("doc2", [(" bert", "METHOD")])], PromptConfig()))
    (p,) = plan.entities
    assert p.existing_id == "e-BERT"
    assert p.document_ids == ["doc2"]
    assert plan.new_count == 0 and plan.merge_count == 1


def test_same_label_different_type_stays_separate():
    plan = run(EntityResolver().plan(_existing(("Python", "Language")), [_ext("d", [("Python", "Animal")])], PromptConfig()))
    (p,) = plan.entities
    assert p.existing_id is None and p.label == "Python"


def test_repeats_across_chunks_become_one_new_entity():
    exts = [_ext("doc1", [("GPT-2", "Method")]), _ext("doc2", [("gpt-2", "Method")])]
    plan = run(EntityResolver().plan([], exts, PromptConfig()))
    (p,) = plan.entities
    assert p.label == "GPT-2"
    assert p.document_ids == ["doc1", "doc2"]


def test_without_resolution_prompt_the_service_is_not_asked():
    client = FakeCompletionClient(resolution={"groups": [["NN", "Neural Network"]]})
    plan = run(EntityResolver(client).plan([], [_ext("d", [("NN", "Method"), ("Neural Network", "Method")])], PromptConfig()))
    assert len(plan.entities) == 2
    assert client.prompts == []


# ---------------------------------------------------------------------------
# tier 2: explicit classes
# ---------------------------------------------------------------------------


def test_explicit_class_merges_new_aliases_under_canonical_label():
    prompts = _prompts({"labels": ["NN", "neural net"], "canonical": "Neural Network"})
    plan = run(EntityResolver().plan([], [_ext("d", [("NN", "Method"), ("neural net", "Method")])], prompts))
    (p,) = plan.entities
    assert p.label == "Neural Network"


def test_explicit_class_merges_into_existing_entity():
    prompts = _prompts({"labels": ["NN", "Neural Network"]})
    plan = run(EntityResolver().plan(_existing(("Neural Network", "Method")), [_ext("d", [("NN", "Method")])], prompts))
    (p,) = plan.entities
    assert p.existing_id == "e-Neural Network"


def test_typed_class_only_applies_to_its_type():
    idx = EquivalenceIndex.from_examples([ResolutionExample(labels=["Java", "Java language"], type="Language")])
    assert idx.class_of("java", "language") is not None
    assert idx.class_of("Java", "Island") is None


# ---------------------------------------------------------------------------
# tier 3: model groups
# ---------------------------------------------------------------------------


def test_model_group_merges_into_existing():
    client = FakeCompletionClient(resolution={"groups": [["GPT2", "GPT-2"]]})
    plan = run(EntityResolver(client).plan(_existing(("GPT-2", "Method")), [_ext("d", [("GPT2", "Method")])], _prompts()))
    (p,) = plan.entities
    assert p.existing_id == "e-GPT-2"
    assert len(client.resolution_calls) == 1
    assert "- GPT-2" in client.resolution_calls[0]


def test_model_group_never_overrides_explicit_classes():
    client = FakeCompletionClient(resolution={"groups": [["NN", "NLL"]]})
    prompts = _prompts({"labels": ["NN", "Neural Network"]}, {"labels": ["NLL", "Negative Log Likelihood"]})
    plan = run(EntityResolver(client).plan([], [_ext("d", [("NN", "Method"), ("NLL", "Method")])], prompts))
    assert sorted(p.label for p in plan.entities) == ["NLL", "NN"]


def test_model_group_never_merges_two_existing_entities():
    client = FakeCompletionClient(resolution={"groups": [["Transformer", "Transformers", "transformer model"]]})
    existing = _existing(("Transformer", "Method"), ("Transformers", "Method"))
    plan = run(EntityResolver(client).plan(existing, [_ext("d", [("transformer model", "Method")])], _prompts()))
    (p,) = plan.entities
    assert p.existing_id == "e-Transformer"


def test_model_group_ignores_type_mismatch():
    client = FakeCompletionClient(resolution={"groups": [["Python", "python snake"]]})
    exts = [_ext("d", [("Python", "Language"), ("python snake", "Animal")])]
    plan = run(EntityResolver(client).plan([], exts, _prompts()))
    assert len(plan.entities) == 2


def test_resolution_failure_degrades_to_exact_matching():
    client = FakeCompletionClient(resolution=CompletionError("down"))
    existing = _existing(("BERT", "Method"))
    plan = run(EntityResolver(client).plan(existing, [_ext("d", [("BERT", "Method"), ("GPT2", "Method")])], _prompts()))
    assert plan.degraded
    assert plan.merge_count == 1 and plan.new_count == 1


@pytest.mark.parametrize("reply", [{"groups": 5}, {"groups": "GPT2, GPT-2"}, "{\"groups\": [[\"a\", \"b\"]"])
def test_unusable_resolution_reply_degrades(reply):
    client = FakeCompletionClient(resolution=reply)
    existing = _existing(("GPT-2", "Method"))
    plan = run(EntityResolver(client).plan(existing, [_ext("d", [("GPT2", "Method"), ("gpt-2", "method")])], _prompts()))
    assert plan.degraded
    assert [(p.label, p.existing_id) for p in plan.entities] == [("GPT2", None), ("GPT-2", "e-GPT-2")]


# ---------------------------------------------------------------------------
# relationships
# ---------------------------------------------------------------------------


def test_relationship_endpoints_resolve_to_existing_and_new():
    exts = [_ext("d", [("BERT", "Method"), ("BooksCorpus", "Dataset")], [("BERT", "BooksCorpus", "TRAINED_ON")])]
    plan = run(EntityResolver().plan(_existing(("BERT", "Method")), exts, PromptConfig()))
    (r,) = plan.relationships
    assert r.source == "e-BERT"
    assert r.target == next(p.ref for p in plan.entities if p.label == "BooksCorpus")


def test_relationship_may_point_at_existing_entity_not_in_chunk():
    exts = [_ext("d", [("RoBERTa", "Method")], [("RoBERTa", "bert", "EXTENDS")])]
    plan = run(EntityResolver().plan(_existing(("BERT", "Method")), exts, PromptConfig()))
    (r,) = plan.relationships
    assert r.target == "e-BERT"


def test_dangling_relationship_is_dropped():
    exts = [_ext("d", [("BERT", "Method")], [("BERT", "Nowhere", "USES"), ("BERT", "BERT", "IS")])]
    plan = run(EntityResolver().plan([], exts, PromptConfig()))
    assert plan.dropped_relationships == 1
    assert len(plan.relationships) == 1


def test_relationships_follow_merges():
    prompts = _prompts({"labels": ["NN", "Neural Network"]})
    exts = [_ext("d", [("NN", "Method"), ("MNIST", "Dataset")], [("NN", "MNIST", "EVALUATED_ON")])]
    plan = run(EntityResolver().plan(_existing(("Neural Network", "Method")), exts, prompts))
    (r,) = plan.relationships
    assert r.source == "e-Neural Network"
