"""Build lifecycle workers, the service facade and its HTTP binding."""

from .service import GraphHandle, GraphService
from .worker import BuildWorkerPool

__all__ = ["GraphHandle", "GraphService", "BuildWorkerPool"]
