"""Completion-service adapter.

The service is reached only through `CompletionClient.complete(prompt)`.
All parsing of its (non-deterministic) output lives here, so callers only
ever see typed candidates or a `CompletionError`.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

import httpx

from ..errors import CompletionError
from ..http import RETRY_STATUS, HttpClientFactory, RetryableStatusError, transient_retry
from .models import CandidateEntity, CandidateRelationship, ChunkExtraction, Scalar

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete(self, prompt: str) -> str: ...


class HttpCompletionClient:
    """OpenAI-compatible chat-completions client.

    Network errors and throttling statuses are retried; whatever is still
    failing afterwards surfaces as CompletionError.
    """

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        temperature: float = 0.0,
        max_tokens: int = 2048,
        timeout_s: float = 120.0,
        retries: int = 5,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or HttpClientFactory.client(base_url, api_key=api_key, read_timeout_s=timeout_s)
        self._post_with_retry = transient_retry(max(1, retries))(self._post)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        resp = await self._client.post("/chat/completions", json=payload)
        if resp.status_code in RETRY_STATUS:
            raise RetryableStatusError(resp)
        return resp

    async def complete(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            resp = await self._post_with_retry(payload)
        except RetryableStatusError as e:
            resp = e.response
        except httpx.HTTPError as e:
            raise CompletionError(f"Completion request failed: {e}") from e

        if resp.status_code >= 400:
            raise CompletionError(
                f"Completion service returned HTTP {resp.status_code}",
                {"status_code": resp.status_code, "body": resp.text[:500]},
            )
        try:
            return resp.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CompletionError("Malformed completion envelope") from e


def build_completion_client(cfg) -> HttpCompletionClient:
    """Build the HTTP client from settings."""
    return HttpCompletionClient(
        base_url=cfg.llm_base_url,
        model=cfg.llm_model,
        api_key=cfg.llm_api_key,
        temperature=cfg.llm_temperature,
        max_tokens=cfg.llm_max_tokens,
        timeout_s=cfg.llm_timeout_s,
        retries=cfg.llm_retries,
    )


# --- output parsing --------------------------------------------------------

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _load_json_object(raw: str) -> dict[str, Any]:
    if not raw or not raw.strip():
        raise CompletionError("Empty completion")

    candidates = [m.group(1) for m in _FENCE.finditer(raw)]
    candidates.append(raw)
    # Last resort: outermost braces of free text.
    start, end = raw.find("{"), raw.rfind("}")
    if 0 <= start < end:
        candidates.append(raw[start : end + 1])

    for c in candidates:
        try:
            obj = json.loads(c.strip())
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj
    raise CompletionError("Completion did not contain a JSON object", {"preview": raw[:200]})


def _items(obj: dict[str, Any], key: str) -> list[Any]:
    """The list stored under `key`; a missing or null field is empty, any other shape is unusable."""
    v = obj.get(key)
    if v is None:
        return []
    if not isinstance(v, list):
        raise CompletionError(
            f"Completion field '{key}' is not a list", {"field": key, "type": type(v).__name__}
        )
    return v


def _text(v: Any) -> str:
    return v.strip() if isinstance(v, str) else ""


def _scalar_props(v: Any) -> dict[str, Scalar]:
    if not isinstance(v, dict):
        return {}
    return {str(k): x for k, x in v.items() if x is None or isinstance(x, (str, int, float, bool))}


def parse_extraction(raw: str, *, document_id: str) -> ChunkExtraction:
    """Turn an extraction completion into candidates for one chunk.

    Items missing a label/type (entities) or source/target/type
    (relationships) are skipped. Type tags are kept as written.
    """
    obj = _load_json_object(raw)
    out = ChunkExtraction(document_id=document_id)

    entity_items, relationship_items = _items(obj, "entities"), _items(obj, "relationships")

    for item in entity_items:
        if not isinstance(item, dict):
            continue
        label, type_ = _text(item.get("label") or item.get("name")), _text(item.get("type"))
        if not label or not type_:
            continue
        out.entities.append(
            CandidateEntity(label=label, type=type_, document_id=document_id, properties=_scalar_props(item.get("properties")))
        )

    for item in relationship_items:
        if not isinstance(item, dict):
            continue
        src, dst, type_ = _text(item.get("source")), _text(item.get("target")), _text(item.get("type"))
        if not src or not dst or not type_:
            continue
        out.relationships.append(
            CandidateRelationship(source_label=src, target_label=dst, type=type_, document_id=document_id)
        )

    return out


def parse_resolution(raw: str) -> list[list[str]]:
    """Equivalence groups proposed by the model; groups of fewer than two labels are dropped."""
    obj = _load_json_object(raw)
    groups: list[list[str]] = []
    for g in _items(obj, "groups"):
        if not isinstance(g, list):
            continue
        labels = [s for s in (_text(x) for x in g) if s]
        if len(labels) >= 2:
            groups.append(labels)
    return groups
