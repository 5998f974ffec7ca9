from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from .models import Graph, GraphStatus
from .store import InMemoryGraphStore

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS graphs (
  scope TEXT NOT NULL,
  name TEXT NOT NULL,
  status TEXT NOT NULL,
  record_json TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  PRIMARY KEY (scope, name)
);

CREATE INDEX IF NOT EXISTS idx_graphs_scope ON graphs(scope);
"""

INTERRUPTED = "build interrupted by shutdown"


class SQLiteGraphStore(InMemoryGraphStore):
    """Write-through SQLite persistence for the in-memory store.

    Each graph is one JSON record keyed by (scope, name). Graphs that were
    queued or processing when the process stopped come back as failed.
    """

    _persistent = True

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = str(Path(path).expanduser())
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.init()
        self._load()

    def connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path)

    def init(self) -> None:
        con = self.connect()
        try:
            con.executescript(SCHEMA)
            con.commit()
        finally:
            con.close()

    def _load(self) -> None:
        con = self.connect()
        try:
            rows = con.execute("SELECT record_json FROM graphs").fetchall()
        finally:
            con.close()

        for (record_json,) in rows:
            g = Graph.from_record(json.loads(record_json))
            self._graphs[(g.scope, g.name)] = g
            if not g.status.is_terminal:
                logger.warning("Graph %s/%s was %s at shutdown; marking failed", g.scope, g.name, g.status.value)
                g.status = GraphStatus.FAILED
                g.error = INTERRUPTED
                self._on_change(g)
        logger.info("Loaded %d graphs from %s", len(rows), self.path)

    def _on_change(self, graph: Graph) -> None:
        con = self.connect()
        try:
            con.execute(
                """
                INSERT INTO graphs(scope, name, status, record_json, updated_at)
                VALUES(?,?,?,?,?)
                ON CONFLICT(scope, name)
                DO UPDATE SET status=excluded.status, record_json=excluded.record_json, updated_at=excluded.updated_at
                """,
                (
                    graph.scope,
                    graph.name,
                    graph.status.value,
                    json.dumps(graph.to_record(), ensure_ascii=False),
                    graph.updated_at.isoformat(),
                ),
            )
            con.commit()
        finally:
            con.close()

    def _on_delete(self, scope: str, name: str) -> None:
        con = self.connect()
        try:
            con.execute("DELETE FROM graphs WHERE scope=? AND name=?", (scope, name))
            con.commit()
        finally:
            con.close()


def build_store(cfg) -> InMemoryGraphStore:
    """Pick the store backend from settings."""
    backend = (cfg.store_backend or "memory").lower()
    if backend == "sqlite":
        return SQLiteGraphStore(cfg.sqlite_path)
    if backend != "memory":
        raise ValueError(f"Unknown store backend: {cfg.store_backend}")
    return InMemoryGraphStore()
