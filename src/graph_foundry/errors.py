"""
Exception taxonomy for graph-foundry.

Build-time failures of a single chunk or a single resolution call are
recovered where they happen and only logged. Everything here that reaches a
caller is either a synchronous query/request error or the reason recorded
on a failed graph.
"""

from __future__ import annotations

from typing import Any


class GraphFoundryError(Exception):
    """Base exception for all graph-foundry errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# Store / lifecycle
# =============================================================================


class NotFoundError(GraphFoundryError):
    """Graph or entity absent."""


class AlreadyExistsError(GraphFoundryError):
    """A graph with the same (scope, name) already exists."""

    def __init__(self, scope: str, name: str) -> None:
        super().__init__(
            f"Graph '{name}' already exists in scope '{scope}'",
            {"scope": scope, "name": name},
        )


class GraphIntegrityError(GraphFoundryError):
    """A commit referenced an entity that is not part of the graph."""


class InvalidTransitionError(GraphFoundryError):
    """Illegal lifecycle status change."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot transition graph from '{current}' to '{requested}'",
            {"current": current, "requested": requested},
        )


class ConcurrentBuildInProgressError(GraphFoundryError):
    """An update was requested while the graph is still queued or processing."""

    def __init__(self, scope: str, name: str, status: str) -> None:
        super().__init__(
            f"Graph '{name}' is {status}; wait for it to finish before updating",
            {"scope": scope, "name": name, "status": status},
        )


class GraphNotReadyError(GraphFoundryError):
    """Query against a graph that is not completed."""

    def __init__(self, name: str, status: str) -> None:
        super().__init__(
            f"Graph '{name}' is not ready for queries (status: {status})",
            {"name": name, "status": status},
        )


# =============================================================================
# Build pipeline
# =============================================================================


class ExtractionFailureError(GraphFoundryError):
    """Every chunk of a build failed to yield usable output."""


class BuildTimeoutError(GraphFoundryError):
    """A build or update exceeded its wall-clock ceiling."""

    def __init__(self, timeout_s: float) -> None:
        super().__init__(f"Build exceeded timeout of {timeout_s:g}s", {"timeout_s": timeout_s})


class CompletionError(GraphFoundryError):
    """The completion service failed or returned unusable output."""


# =============================================================================
# Validation
# =============================================================================


class ValidationError(GraphFoundryError):
    """Malformed request or query parameters."""


class PromptConfigError(ValidationError):
    """Invalid prompt override."""
