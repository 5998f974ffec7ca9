"""Knowledge graph subsystem.

This module provides:
- LLM-driven entity+relationship extraction over document chunks
- Entity resolution against the graph's existing entities
- A graph store abstraction with in-memory and SQLite implementations
- A query engine for entity lookup, path finding and subgraph expansion
"""

from .models import Entity, Graph, GraphStatus, Relationship
from .pipeline import BuildJob, GraphBuilder
from .query_engine import GraphQueryEngine, QueryType
from .store import GraphStore, InMemoryGraphStore

__all__ = [
    "Entity",
    "Graph",
    "GraphStatus",
    "Relationship",
    "BuildJob",
    "GraphBuilder",
    "GraphQueryEngine",
    "QueryType",
    "GraphStore",
    "InMemoryGraphStore",
]
