from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GraphFoundrySettings(BaseSettings):
    """Unified configuration for graph-foundry.

    Environment variables are prefixed with GRAPH_FOUNDRY_.
    """

    model_config = SettingsConfigDict(env_prefix="GRAPH_FOUNDRY_", extra="ignore")

    # --- Core ---
    log_level: str = Field(default="INFO", description="Python logging level")

    # --- Build lifecycle ---
    worker_count: int = Field(default=2, ge=1, description="Parallel build workers")
    extraction_concurrency: int = Field(default=4, ge=1, description="Chunks in flight per build")
    build_timeout_s: float = Field(default=600.0, gt=0, description="Wall-clock ceiling per build/update")

    # --- Queries ---
    default_max_depth: int = 3
    max_depth_limit: int = Field(default=6, ge=0, description="Largest max_depth accepted by path/subgraph")
    entity_match_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    list_entities_limit: int = 50
    default_graph_name: str = "graph_main"

    # --- Completion service (OpenAI-compatible) ---
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.0
    llm_max_tokens: int = 2048
    llm_timeout_s: float = Field(default=120.0, gt=0, description="Read timeout per completion request")
    llm_retries: int = Field(default=5, ge=1, description="Attempts for network errors and 429/5xx throttling")

    # --- Documents ---
    documents_path: str | None = Field(default=None, description="JSONL document store for the CLI and server")

    # --- Storage ---
    store_backend: str = Field(default="memory", description="memory|sqlite")
    sqlite_path: str = Field(default="~/.graph_foundry/graphs.db")

    # --- HTTP ---
    bind_host: str = "0.0.0.0"
    bind_port: int = 8090


settings = GraphFoundrySettings()
