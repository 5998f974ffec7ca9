"""Prompt configuration for extraction and resolution.

Overrides arrive as untyped payloads at the service boundary and are turned
into a `PromptConfig` by `build_prompt_config`; nothing downstream sees raw
dicts. Templates use `{text}`, `{examples}` and `{labels}` placeholders and
are filled by plain substitution, so literal JSON braces in a template are
safe.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import PromptConfigError

DEFAULT_EXTRACTION_TEMPLATE = """You extract a knowledge graph from text.
Identify the important entities (concepts, methods, datasets, organizations,
people, places, ...) and the relationships between them.

Return ONLY a JSON object of the form:
{"entities": [{"label": "...", "type": "...", "properties": {"key": "value"}}],
 "relationships": [{"source": "<entity label>", "target": "<entity label>", "type": "..."}]}

Every relationship source and target must be the label of an entity you listed.

{examples}

Text:
{text}
"""

DEFAULT_RESOLUTION_TEMPLATE = """You decide which entity labels refer to the same real-world entity.
Labels are grouped by entity type; only labels of the same type can match.

{examples}

Labels:
{labels}

Return ONLY a JSON object of the form:
{"groups": [["label A", "label B"], ...]}
listing each set of labels that name the same entity. Omit labels with no match.
"""


class ExampleEntity(BaseModel):
    label: str = Field(min_length=1)
    type: str = Field(min_length=1)
    properties: dict[str, str | int | float | bool | None] = Field(default_factory=dict)


class ExampleRelationship(BaseModel):
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    type: str = Field(min_length=1)


class ExtractionExample(BaseModel):
    """A worked example: input text and the graph expected from it."""

    text: str = Field(min_length=1)
    entities: list[ExampleEntity] = Field(default_factory=list)
    relationships: list[ExampleRelationship] = Field(default_factory=list)

    @model_validator(mode="after")
    def _relationships_reference_entities(self) -> "ExtractionExample":
        labels = {e.label for e in self.entities}
        for r in self.relationships:
            if r.source not in labels or r.target not in labels:
                raise ValueError(f"example relationship {r.source!r} -> {r.target!r} references an unlisted entity")
        return self


class ResolutionExample(BaseModel):
    """An explicit equivalence class of labels.

    `type`, when given, limits the class to entities of that type.
    """

    labels: list[str] = Field(min_length=2)
    canonical: str | None = None
    type: str | None = None

    @field_validator("labels")
    @classmethod
    def _non_blank(cls, v: list[str]) -> list[str]:
        if any(not s.strip() for s in v):
            raise ValueError("resolution example labels must be non-blank")
        return v


DEFAULT_EXTRACTION_EXAMPLES: tuple[ExtractionExample, ...] = (
    ExtractionExample(
        text="BERT is a language model trained on BooksCorpus and English Wikipedia.",
        entities=[
            ExampleEntity(label="BERT", type="Method"),
            ExampleEntity(label="BooksCorpus", type="Dataset"),
            ExampleEntity(label="English Wikipedia", type="Dataset"),
        ],
        relationships=[
            ExampleRelationship(source="BERT", target="BooksCorpus", type="TRAINED_ON"),
            ExampleRelationship(source="BERT", target="English Wikipedia", type="TRAINED_ON"),
        ],
    ),
)


class ExtractionPrompt(BaseModel):
    model_config = ConfigDict(extra="forbid")

    template: str = DEFAULT_EXTRACTION_TEMPLATE
    examples: list[ExtractionExample] = Field(default_factory=lambda: list(DEFAULT_EXTRACTION_EXAMPLES))

    @field_validator("template")
    @classmethod
    def _has_text_slot(cls, v: str) -> str:
        if "{text}" not in v:
            raise ValueError("extraction template must contain a {text} placeholder")
        return v

    def render(self, text: str) -> str:
        return self.template.replace("{examples}", _format_extraction_examples(self.examples)).replace("{text}", text)


class ResolutionPrompt(BaseModel):
    model_config = ConfigDict(extra="forbid")

    template: str = DEFAULT_RESOLUTION_TEMPLATE
    examples: list[ResolutionExample] = Field(default_factory=list)

    @field_validator("template")
    @classmethod
    def _has_labels_slot(cls, v: str) -> str:
        if "{labels}" not in v:
            raise ValueError("resolution template must contain a {labels} placeholder")
        return v

    def render(self, labels_by_type: dict[str, list[str]]) -> str:
        lines = []
        for type_, labels in labels_by_type.items():
            lines.append(f"[{type_}]")
            lines.extend(f"- {label}" for label in labels)
        return self.template.replace("{examples}", _format_resolution_examples(self.examples)).replace(
            "{labels}", "\n".join(lines)
        )


class PromptConfig(BaseModel):
    """Prompts a graph is built with.

    Resolution is exact-match only unless a resolution prompt is supplied.
    """

    model_config = ConfigDict(extra="forbid")

    extraction: ExtractionPrompt = Field(default_factory=ExtractionPrompt)
    resolution: ResolutionPrompt | None = None


def _format_extraction_examples(examples: list[ExtractionExample]) -> str:
    if not examples:
        return ""
    parts = ["Examples:"]
    for i, ex in enumerate(examples, start=1):
        expected = {
            "entities": [e.model_dump(exclude_defaults=True) for e in ex.entities],
            "relationships": [r.model_dump() for r in ex.relationships],
        }
        parts.append(f"Example {i} text:\n{ex.text}\nExample {i} output:\n{json.dumps(expected, ensure_ascii=False)}")
    return "\n\n".join(parts)


def _format_resolution_examples(examples: list[ResolutionExample]) -> str:
    if not examples:
        return ""
    lines = ["Known equivalent labels:"]
    for ex in examples:
        scope = f" ({ex.type})" if ex.type else ""
        lines.append(f"- {' = '.join(ex.labels)}{scope}")
    return "\n".join(lines)


def build_prompt_config(overrides: PromptConfig | dict[str, Any] | None) -> PromptConfig:
    """Validate caller-supplied overrides, filling anything omitted with defaults."""
    if overrides is None:
        return PromptConfig()
    if isinstance(overrides, PromptConfig):
        return overrides
    try:
        return PromptConfig.model_validate(overrides)
    except PydanticValidationError as e:
        raise PromptConfigError("Invalid prompt overrides", {"errors": e.errors(include_url=False)}) from e
