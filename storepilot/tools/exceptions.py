from __future__ import annotations


class ToolError(RuntimeError):
    """Base class for tool collaborator failures."""

    def __init__(self, message: str, *, tool: str | None = None) -> None:
        super().__init__(message)
        self.tool = tool


class ToolInvocationError(ToolError):
    """A tool reported failure or its adapter raised."""


class ToolTimeoutError(ToolInvocationError):
    """A single tool attempt exceeded its timeout."""


class ToolNotFoundError(ToolError):
    """No adapter is registered under the requested tool id."""


class CircuitBreakerOpenError(ToolInvocationError):
    """The tool's circuit breaker is refusing calls during its cool-down."""
