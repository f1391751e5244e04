from __future__ import annotations

import asyncio
import contextlib
from asyncio import Queue
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Protocol

from ..core.logging import get_logger
from ..core.metrics import increment_telemetry_dropped

__all__ = ["TelemetryEvent", "TelemetrySink", "LoggingTelemetrySink", "TelemetryChannel"]

logger = get_logger(name=__name__)

QUERY_RECEIVED = "query_received"
STEP_OUTCOME = "step_outcome"
GROUNDING_VERDICT = "grounding_verdict"
PIPELINE_COMPLETED = "pipeline_completed"


@dataclass(slots=True)
class TelemetryEvent:
    event_type: str
    payload: Dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "payload": dict(self.payload),
            "created_at": self.created_at.isoformat(),
        }


class TelemetrySink(Protocol):
    async def send(self, event: TelemetryEvent) -> None:
        ...


class LoggingTelemetrySink:
    async def send(self, event: TelemetryEvent) -> None:
        logger.info("telemetry_event", **event.as_dict())


class TelemetryChannel:
    """Bounded queue decoupling audit/metrics delivery from the request path.

    ``emit`` never blocks and never raises; events that cannot be queued are dropped and counted.
    A background consumer hands queued events to the sink.
    """

    def __init__(self, sink: TelemetrySink | None = None, *, max_queue_size: int = 1000) -> None:
        self._sink = sink or LoggingTelemetrySink()
        self._queue: Queue[TelemetryEvent] = Queue(maxsize=max_queue_size)
        self._consumer_task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._consumer_task is not None and not self._consumer_task.done()

    def emit(self, event_type: str, **payload: Any) -> bool:
        event = TelemetryEvent(event_type=event_type, payload=payload)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            increment_telemetry_dropped(reason="queue_full")
            logger.warning("telemetry_dropped", event_type=event_type, reason="queue_full")
            return False
        return True

    async def _consumer(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._sink.send(event)
            except Exception as exc:
                increment_telemetry_dropped(reason="sink_error")
                logger.warning("telemetry_delivery_failed", event_type=event.event_type, error=str(exc))
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        if not self.running:
            self._consumer_task = asyncio.create_task(self._consumer())

    async def flush(self, timeout: float = 1.0) -> None:
        if not self.running:
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def stop(self, *, drain: bool = True) -> None:
        if self._consumer_task is None:
            return
        if drain:
            await self.flush()
        self._consumer_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._consumer_task
        self._consumer_task = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["TelemetryChannel"]:
        await self.start()
        try:
            yield self
        finally:
            await self.stop()
