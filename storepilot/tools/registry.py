from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, Mapping, Tuple

from ..core.config import ToolSettings
from ..core.logging import get_logger
from ..core.metrics import increment_circuit_open, record_tool_invocation
from .base import ToolInvocationResult, json_safe
from .exceptions import CircuitBreakerOpenError, ToolNotFoundError, ToolTimeoutError

__all__ = ["normalize_tool_name", "ToolHealth", "ToolRegistry"]

logger = get_logger(name=__name__)

_NAME_PATTERN = re.compile(r"[\\/\s]+")
_ALIAS_COLLAPSE = re.compile(r"\.+")

ToolCallable = Callable[[Mapping[str, Any]], Awaitable[Any]]


def normalize_tool_name(name: str) -> str:
    """Return a normalized identifier used for registry lookups."""
    if not isinstance(name, str):
        raise TypeError("Tool name must be a string")
    collapsed = _NAME_PATTERN.sub(".", name.strip())
    collapsed = _ALIAS_COLLAPSE.sub(".", collapsed)
    return collapsed.strip(".").lower()


@dataclass(slots=True)
class ToolHealth:
    tool: str
    status: str
    invocations: int
    failures: int
    consecutive_failures: int
    circuit_open: bool
    average_latency_ms: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tool": self.tool,
            "status": self.status,
            "invocations": self.invocations,
            "failures": self.failures,
            "consecutive_failures": self.consecutive_failures,
            "circuit_open": self.circuit_open,
            "average_latency_ms": round(self.average_latency_ms, 3),
        }


@dataclass(slots=True)
class _ToolStats:
    invocations: int = 0
    failures: int = 0
    total_latency_ms: float = 0.0


class ToolRegistry:
    """Named tool collaborators behind the uniform invoke contract, with per-tool circuit breakers."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_seconds: float = 30.0,
        degraded_failure_rate: float = 0.2,
    ) -> None:
        self._registry: Dict[str, ToolCallable] = {}
        self._canonical: Dict[str, str] = {}
        self._alias_index: Dict[str, str] = {}
        self._failure_threshold = max(1, int(failure_threshold))
        self._cooldown_seconds = max(0.0, float(reset_seconds))
        self._degraded_failure_rate = degraded_failure_rate
        self._failures: Dict[str, int] = {}
        self._open_until: Dict[str, float] = {}
        self._stats: Dict[str, _ToolStats] = {}

    @classmethod
    def from_settings(cls, settings: ToolSettings) -> "ToolRegistry":
        return cls(
            failure_threshold=settings.circuit_breaker_threshold,
            reset_seconds=settings.circuit_breaker_reset_seconds,
        )

    def register(self, name: str, adapter: ToolCallable, *, aliases: Iterable[str] | None = None) -> None:
        key = normalize_tool_name(name)
        self._registry[key] = adapter
        self._canonical[key] = name.strip()
        self._failures.pop(key, None)
        self._open_until.pop(key, None)
        self._stats[key] = _ToolStats()
        for alias in aliases or ():
            self.register_alias(alias, name)

    def register_alias(self, alias: str, target: str) -> None:
        alias_key = normalize_tool_name(alias)
        target_key = normalize_tool_name(target)
        if not alias_key or alias_key == target_key:
            return
        self._alias_index[alias_key] = target_key

    def unregister(self, name: str) -> None:
        key = self._resolve_key(name)
        if key is None:
            return
        self._registry.pop(key, None)
        self._canonical.pop(key, None)
        self._failures.pop(key, None)
        self._open_until.pop(key, None)
        self._stats.pop(key, None)
        for alias_key, target_key in list(self._alias_index.items()):
            if target_key == key:
                del self._alias_index[alias_key]

    def get(self, name: str) -> ToolCallable | None:
        key = self._resolve_key(name)
        if key is None:
            return None
        return self._registry.get(key)

    def resolve(self, name: str) -> str | None:
        key = self._resolve_key(name)
        if key is None:
            return None
        return self._canonical.get(key)

    def list(self) -> list[str]:
        return sorted(self._canonical[key] for key in self._registry)

    def items(self) -> Iterator[Tuple[str, ToolCallable]]:
        for key, adapter in self._registry.items():
            yield self._canonical.get(key, key), adapter

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._resolve_key(name) is not None

    async def invoke(
        self,
        tool_id: str,
        parameters: Mapping[str, Any],
        *,
        timeout: float,
    ) -> ToolInvocationResult:
        """Run one attempt of a tool; adapter failures come back as unsuccessful results."""
        key = self._resolve_key(tool_id)
        if key is None:
            error = ToolNotFoundError(f"Tool '{tool_id}' is not registered", tool=tool_id)
            record_tool_invocation(tool=tool_id, outcome="not_found", latency=0.0)
            logger.warning("tool_not_found", tool=tool_id)
            return ToolInvocationResult.failed(str(error), retryable=False)

        tool_name = self._canonical[key]
        if self.is_circuit_open(tool_name):
            error = CircuitBreakerOpenError(f"Tool '{tool_name}' is temporarily unavailable", tool=tool_name)
            record_tool_invocation(tool=tool_name, outcome="circuit_open", latency=0.0)
            return ToolInvocationResult.failed(str(error), retryable=False)

        adapter = self._registry[key]
        start = time.perf_counter()
        try:
            raw = await asyncio.wait_for(adapter(dict(parameters)), timeout=max(0.001, float(timeout)))
        except asyncio.TimeoutError:
            latency_ms = (time.perf_counter() - start) * 1000.0
            self._record(key, success=False, latency_ms=latency_ms)
            record_tool_invocation(tool=tool_name, outcome="timeout", latency=latency_ms / 1000.0)
            return ToolInvocationResult.failed(
                f"Tool '{tool_name}' timed out after {timeout:.3f}s",
                latency_ms=latency_ms,
                timed_out=True,
            )
        except ToolTimeoutError as exc:
            latency_ms = (time.perf_counter() - start) * 1000.0
            self._record(key, success=False, latency_ms=latency_ms)
            record_tool_invocation(tool=tool_name, outcome="timeout", latency=latency_ms / 1000.0)
            return ToolInvocationResult.failed(str(exc), latency_ms=latency_ms, timed_out=True)
        except Exception as exc:
            latency_ms = (time.perf_counter() - start) * 1000.0
            self._record(key, success=False, latency_ms=latency_ms)
            record_tool_invocation(tool=tool_name, outcome="failure", latency=latency_ms / 1000.0)
            logger.warning("tool_invocation_failed", tool=tool_name, error=str(exc))
            return ToolInvocationResult.failed(f"Tool '{tool_name}' failed: {exc}", latency_ms=latency_ms)

        latency_ms = (time.perf_counter() - start) * 1000.0
        if isinstance(raw, ToolInvocationResult):
            result = raw
            result.latency_ms = result.latency_ms or latency_ms
        else:
            result = ToolInvocationResult.ok(json_safe(raw), latency_ms=latency_ms)
        self._record(key, success=result.success, latency_ms=latency_ms)
        record_tool_invocation(
            tool=tool_name,
            outcome="success" if result.success else "failure",
            latency=latency_ms / 1000.0,
        )
        return result

    def configure_circuit(self, *, threshold: int, reset_seconds: float) -> None:
        self._failure_threshold = max(1, int(threshold))
        self._cooldown_seconds = max(0.0, float(reset_seconds))

    def record_failure(self, name: str) -> bool:
        key = self._resolve_key(name)
        if key is None:
            return False
        count = self._failures.get(key, 0) + 1
        self._failures[key] = count
        if count >= self._failure_threshold and self._cooldown_seconds > 0 and key not in self._open_until:
            self._open_until[key] = self._monotonic() + self._cooldown_seconds
            increment_circuit_open(tool=self._canonical.get(key, key))
            logger.warning("tool_circuit_opened", tool=self._canonical.get(key, key), failures=count)
            return True
        return False

    def record_success(self, name: str) -> None:
        key = self._resolve_key(name)
        if key is None:
            return
        self._failures.pop(key, None)
        self._open_until.pop(key, None)

    def is_circuit_open(self, name: str) -> bool:
        key = self._resolve_key(name)
        if key is None:
            return False
        expires_at = self._open_until.get(key)
        if expires_at is None:
            return False
        if self._monotonic() >= expires_at:
            self._open_until.pop(key, None)
            self._failures.pop(key, None)
            return False
        return True

    def tool_health(self, name: str) -> ToolHealth | None:
        key = self._resolve_key(name)
        if key is None:
            return None
        stats = self._stats.get(key, _ToolStats())
        circuit_open = self.is_circuit_open(name)
        failure_rate = stats.failures / stats.invocations if stats.invocations else 0.0
        if circuit_open:
            status = "unhealthy"
        elif failure_rate >= self._degraded_failure_rate:
            status = "degraded"
        else:
            status = "healthy"
        average = stats.total_latency_ms / stats.invocations if stats.invocations else 0.0
        return ToolHealth(
            tool=self._canonical.get(key, key),
            status=status,
            invocations=stats.invocations,
            failures=stats.failures,
            consecutive_failures=self._failures.get(key, 0),
            circuit_open=circuit_open,
            average_latency_ms=average,
        )

    def system_health(self) -> Dict[str, Any]:
        reports = [self.tool_health(name) for name in self.list()]
        tools = [report for report in reports if report is not None]
        unhealthy = sum(1 for report in tools if report.status == "unhealthy")
        degraded = sum(1 for report in tools if report.status == "degraded")
        if tools and unhealthy == len(tools):
            status = "unhealthy"
        elif unhealthy or degraded:
            status = "degraded"
        else:
            status = "healthy"
        return {"status": status, "tools": [report.as_dict() for report in tools]}

    def _record(self, key: str, *, success: bool, latency_ms: float) -> None:
        stats = self._stats.setdefault(key, _ToolStats())
        stats.invocations += 1
        stats.total_latency_ms += latency_ms
        if success:
            self.record_success(key)
        else:
            stats.failures += 1
            self.record_failure(key)

    def _resolve_key(self, name: str) -> str | None:
        key = normalize_tool_name(name)
        seen: set[str] = set()
        while key not in self._registry:
            target = self._alias_index.get(key)
            if target is None or target in seen:
                return None
            seen.add(target)
            key = target
        return key

    @staticmethod
    def _monotonic() -> float:
        return time.monotonic()
