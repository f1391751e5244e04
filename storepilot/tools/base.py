from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Protocol, runtime_checkable

from pydantic import BaseModel

__all__ = [
    "ToolInvocationResult",
    "ToolInvoker",
    "ToolAdapter",
    "FunctionToolAdapter",
    "json_safe",
]


@dataclass(slots=True)
class ToolInvocationResult:
    """Uniform reply of a tool collaborator: success flag, payload or error, latency."""

    success: bool
    result: Any = None
    error: str | None = None
    latency_ms: float = 0.0
    timed_out: bool = False
    retryable: bool = True

    @classmethod
    def ok(cls, result: Any, *, latency_ms: float = 0.0) -> "ToolInvocationResult":
        return cls(success=True, result=result, latency_ms=latency_ms)

    @classmethod
    def failed(
        cls,
        error: str,
        *,
        latency_ms: float = 0.0,
        timed_out: bool = False,
        retryable: bool = True,
    ) -> "ToolInvocationResult":
        return cls(
            success=False,
            error=error,
            latency_ms=latency_ms,
            timed_out=timed_out,
            retryable=retryable,
        )

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "latency_ms": round(self.latency_ms, 3)}
        if self.success:
            payload["result"] = self.result
        else:
            payload["error"] = self.error
        return payload


@runtime_checkable
class ToolInvoker(Protocol):
    async def invoke(
        self,
        tool_id: str,
        parameters: Mapping[str, Any],
        *,
        timeout: float,
    ) -> ToolInvocationResult:
        ...


class ToolAdapter:
    """Base class for in-process tool collaborators registered with a ToolRegistry."""

    name: str = "unnamed.tool"
    description: str = ""

    async def __call__(self, payload: Mapping[str, Any]) -> Any:
        result = await self._run(dict(payload))
        return normalize_result(result)

    async def _run(self, payload: Dict[str, Any]) -> Any:  # pragma: no cover - implemented by subclasses
        raise NotImplementedError


class FunctionToolAdapter(ToolAdapter):
    def __init__(self, name: str, func: Callable[[Dict[str, Any]], Awaitable[Any]], *, description: str = "") -> None:
        self.name = name
        self.description = description
        self._func = func

    async def _run(self, payload: Dict[str, Any]) -> Any:
        return await self._func(payload)


def normalize_result(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return json_safe(result.model_dump())
    if isinstance(result, Mapping):
        return json_safe(dict(result))
    return json_safe(result)


def json_safe(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return json_safe(value.model_dump())
    if isinstance(value, Mapping):
        return {str(key): json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return [json_safe(item) for item in sorted(value, key=lambda item: repr(item))]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)
