from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_incrementing

from ..core.config import SchedulingSettings
from ..core.logging import get_logger
from ..core.metrics import increment_step_retry, mark_plan_completed, mark_plan_started, record_step_outcome
from ..queue.telemetry import STEP_OUTCOME, TelemetryChannel
from ..schemas.intent import PlanningContext
from ..schemas.plan import (
    CoordinatedResult,
    ExecutionPlan,
    ExecutionStep,
    FailureKind,
    PlanStatus,
    RetryPolicy,
    StepOutcome,
    StepStatus,
)
from ..tools.base import ToolInvoker

__all__ = ["ToolCoordinator", "backoff_delay"]

logger = get_logger(name=__name__)


class _AttemptFailed(Exception):
    def __init__(self, message: str, *, kind: FailureKind, retryable: bool = True) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, _AttemptFailed) and exc.retryable


def backoff_delay(policy: RetryPolicy, attempt_number: int) -> float:
    """Delay slept after the given (1-based) failed attempt before the next one."""
    return policy.backoff_base_seconds * max(1, attempt_number)


@dataclass(slots=True)
class _StepSlot:
    index: int
    step: ExecutionStep
    dependency_slots: tuple[int, ...]
    done: asyncio.Event = field(default_factory=asyncio.Event)
    state: StepStatus = StepStatus.PENDING
    attempts: int = 0
    dispatched_at: float | None = None


@dataclass(slots=True)
class _PlanArena:
    """Per-plan tables addressed by slot index; each slot is written only by its own task."""

    plan: ExecutionPlan
    slots: list[_StepSlot]
    outcomes: list[StepOutcome | None]
    first_dispatch: float | None = None
    last_terminal: float | None = None

    @classmethod
    def build(cls, plan: ExecutionPlan) -> "_PlanArena":
        index_of = {step.id: index for index, step in enumerate(plan.steps)}
        slots = [
            _StepSlot(
                index=index,
                step=step,
                dependency_slots=tuple(index_of[dependency] for dependency in step.dependencies),
            )
            for index, step in enumerate(plan.steps)
        ]
        return cls(plan=plan, slots=slots, outcomes=[None] * len(slots))

    def mark_dispatch(self, now: float) -> None:
        if self.first_dispatch is None or now < self.first_dispatch:
            self.first_dispatch = now

    def mark_terminal(self, now: float) -> None:
        if self.last_terminal is None or now > self.last_terminal:
            self.last_terminal = now


class ToolCoordinator:
    """Executes a plan's steps as asyncio tasks over its dependency graph."""

    def __init__(
        self,
        invoker: ToolInvoker,
        *,
        settings: SchedulingSettings | None = None,
        telemetry: TelemetryChannel | None = None,
    ) -> None:
        self._invoker = invoker
        self._settings = settings or SchedulingSettings()
        self._telemetry = telemetry

    async def execute_coordinated_plan(
        self,
        plan: ExecutionPlan,
        caller_context: PlanningContext | Mapping[str, Any] | None = None,
        *,
        deadline: float | None = None,
    ) -> CoordinatedResult:
        arena = _PlanArena.build(plan)
        caller_parameters = self._caller_parameters(caller_context)
        semaphore = asyncio.Semaphore(self._settings.max_concurrency)
        timeout = self._resolve_deadline(plan, deadline)

        mark_plan_started()
        logger.info(
            "plan_state_changed",
            plan_id=plan.plan_id,
            previous=PlanStatus.PENDING.value,
            state=PlanStatus.RUNNING.value,
            steps=len(plan.steps),
            deadline_seconds=timeout,
        )

        # Launch by priority; dependency events gate the actual start
        order = sorted(arena.slots, key=lambda slot: (slot.step.priority, slot.index))
        tasks = [
            asyncio.create_task(self._run_slot(slot, arena, semaphore, caller_parameters), name=f"step:{slot.step.id}")
            for slot in order
        ]

        deadline_exceeded = False
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                deadline_exceeded = True
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    "plan_deadline_exceeded",
                    plan_id=plan.plan_id,
                    deadline_seconds=timeout,
                    cancelled=len(pending),
                )

        # Unfinished steps were cut off by the deadline
        now = time.perf_counter()
        for slot in arena.slots:
            if not slot.state.terminal:
                self._finish(
                    arena,
                    slot,
                    StepStatus.CANCELLED,
                    error="Step cancelled at the plan deadline",
                    failure_kind=FailureKind.DEADLINE_EXCEEDED,
                    now=now,
                )

        return self._aggregate(arena, deadline_exceeded=deadline_exceeded)

    async def _run_slot(
        self,
        slot: _StepSlot,
        arena: _PlanArena,
        semaphore: asyncio.Semaphore,
        caller_parameters: Mapping[str, Any],
    ) -> None:
        try:
            if slot.dependency_slots:
                await asyncio.gather(*(arena.slots[index].done.wait() for index in slot.dependency_slots))
                blocked = [
                    arena.slots[index].step.id
                    for index in slot.dependency_slots
                    if not self._succeeded(arena.outcomes[index])
                ]
                if blocked:
                    self._finish(
                        arena,
                        slot,
                        StepStatus.SKIPPED,
                        error=f"Skipped because dependencies did not succeed: {', '.join(blocked)}",
                        failure_kind=FailureKind.DEPENDENCY_FAILED,
                    )
                    return
            await self._execute(slot, arena, semaphore, caller_parameters)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("step_execution_crashed", plan_id=arena.plan.plan_id, step_id=slot.step.id)
            if not slot.state.terminal:
                self._finish(
                    arena,
                    slot,
                    StepStatus.FAILED,
                    error=f"Step crashed: {type(exc).__name__}",
                    failure_kind=FailureKind.ERROR,
                )
        finally:
            slot.done.set()

    async def _execute(
        self,
        slot: _StepSlot,
        arena: _PlanArena,
        semaphore: asyncio.Semaphore,
        caller_parameters: Mapping[str, Any],
    ) -> None:
        step = slot.step
        parameters = dict(step.parameters)
        # Caller identity never overrides explicit step parameters
        for key, value in caller_parameters.items():
            parameters.setdefault(key, value)

        policy = step.retry_policy
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_incrementing(start=policy.backoff_base_seconds, increment=policy.backoff_base_seconds),
            retry=retry_if_exception(_is_retryable),
            before_sleep=lambda state: self._before_retry(slot, arena, state),
            reraise=True,
        )
        output: Any = None
        try:
            async for attempt in retrying:
                with attempt:
                    output = await self._attempt(slot, arena, semaphore, parameters)
        except _AttemptFailed as exc:
            self._finish(arena, slot, StepStatus.FAILED, error=str(exc), failure_kind=exc.kind)
            return
        self._finish(arena, slot, StepStatus.SUCCEEDED, output=output)

    async def _attempt(
        self,
        slot: _StepSlot,
        arena: _PlanArena,
        semaphore: asyncio.Semaphore,
        parameters: Mapping[str, Any],
    ) -> Any:
        step = slot.step
        async with semaphore:
            slot.attempts += 1
            now = time.perf_counter()
            if slot.dispatched_at is None:
                slot.dispatched_at = now
            arena.mark_dispatch(now)
            self._transition(arena, slot, StepStatus.DISPATCHED)
            try:
                result = await asyncio.wait_for(
                    self._invoker.invoke(step.tool, dict(parameters), timeout=step.timeout_seconds),
                    timeout=step.timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                logger.warning(
                    "step_timeout",
                    plan_id=arena.plan.plan_id,
                    step_id=step.id,
                    attempt=slot.attempts,
                    timeout_seconds=step.timeout_seconds,
                )
                raise _AttemptFailed(
                    f"Step '{step.id}' timed out after {step.timeout_seconds:.3f}s",
                    kind=FailureKind.TIMEOUT,
                ) from exc
            except Exception as exc:
                raise _AttemptFailed(
                    f"Tool '{step.tool}' raised {type(exc).__name__}: {exc}",
                    kind=FailureKind.ERROR,
                ) from exc

        if not result.success:
            kind = FailureKind.TIMEOUT if result.timed_out else FailureKind.ERROR
            raise _AttemptFailed(result.error or "tool reported failure", kind=kind, retryable=result.retryable)
        return result.result

    def _before_retry(self, slot: _StepSlot, arena: _PlanArena, state: RetryCallState) -> None:
        self._transition(arena, slot, StepStatus.RETRYING)
        increment_step_retry(tool=slot.step.tool)
        error = state.outcome.exception() if state.outcome is not None else None
        logger.info(
            "step_retry_scheduled",
            plan_id=arena.plan.plan_id,
            step_id=slot.step.id,
            attempt=state.attempt_number,
            delay_seconds=backoff_delay(slot.step.retry_policy, state.attempt_number),
            error=str(error) if error else None,
        )

    def _transition(self, arena: _PlanArena, slot: _StepSlot, state: StepStatus) -> None:
        previous = slot.state
        slot.state = state
        logger.debug(
            "step_state_changed",
            plan_id=arena.plan.plan_id,
            step_id=slot.step.id,
            previous=previous.value,
            state=state.value,
            attempt=slot.attempts,
        )

    def _finish(
        self,
        arena: _PlanArena,
        slot: _StepSlot,
        status: StepStatus,
        *,
        output: Any = None,
        error: str | None = None,
        failure_kind: FailureKind | None = None,
        now: float | None = None,
    ) -> None:
        finished_at = now if now is not None else time.perf_counter()
        latency_ms = (finished_at - slot.dispatched_at) * 1000.0 if slot.dispatched_at is not None else 0.0
        outcome = StepOutcome(
            step_id=slot.step.id,
            tool=slot.step.tool,
            status=status,
            output=output,
            error=error,
            failure_kind=failure_kind,
            attempts=slot.attempts,
            latency_ms=max(latency_ms, 0.0),
            optional=slot.step.optional,
        )
        arena.outcomes[slot.index] = outcome
        arena.mark_terminal(finished_at)
        self._transition(arena, slot, status)

        record_step_outcome(tool=slot.step.tool, status=status.value, latency=outcome.latency_ms / 1000.0)
        if status is not StepStatus.SUCCEEDED:
            logger.warning(
                "step_failed",
                plan_id=arena.plan.plan_id,
                step_id=slot.step.id,
                status=status.value,
                failure_kind=failure_kind.value if failure_kind else None,
                attempts=slot.attempts,
                error=error,
            )
        if self._telemetry is not None:
            self._telemetry.emit(
                STEP_OUTCOME,
                plan_id=arena.plan.plan_id,
                step_id=slot.step.id,
                tool=slot.step.tool,
                status=status.value,
                failure_kind=failure_kind.value if failure_kind else None,
                attempts=slot.attempts,
                latency_ms=round(outcome.latency_ms, 3),
            )

    def _aggregate(self, arena: _PlanArena, *, deadline_exceeded: bool) -> CoordinatedResult:
        outcomes = [outcome for outcome in arena.outcomes if outcome is not None]
        success = all(outcome.success for outcome in outcomes if not outcome.optional)
        failed_steps = [outcome.step_id for outcome in outcomes if not outcome.success]
        if success:
            status = PlanStatus.SUCCESS
        elif any(outcome.success for outcome in outcomes):
            status = PlanStatus.PARTIAL
        else:
            status = PlanStatus.FAILED

        total_latency_ms = 0.0
        if arena.first_dispatch is not None and arena.last_terminal is not None:
            total_latency_ms = max(0.0, (arena.last_terminal - arena.first_dispatch) * 1000.0)

        mark_plan_completed(status=status.value, latency=total_latency_ms / 1000.0)
        logger.info(
            "plan_state_changed",
            plan_id=arena.plan.plan_id,
            previous=PlanStatus.RUNNING.value,
            state=status.value,
            failed_steps=failed_steps,
            total_latency_ms=round(total_latency_ms, 3),
            deadline_exceeded=deadline_exceeded,
        )
        return CoordinatedResult(
            plan_id=arena.plan.plan_id,
            status=status,
            success=success,
            outcomes=outcomes,
            failed_steps=failed_steps,
            total_latency_ms=total_latency_ms,
            deadline_exceeded=deadline_exceeded,
        )

    def _resolve_deadline(self, plan: ExecutionPlan, override: float | None) -> float | None:
        if override is not None:
            return max(0.0, override)
        if not self._settings.deadline_enabled:
            return None
        estimated = plan.estimated_latency_ms / 1000.0 * self._settings.deadline_multiplier
        return max(self._settings.min_deadline_seconds, estimated)

    @staticmethod
    def _succeeded(outcome: StepOutcome | None) -> bool:
        return outcome is not None and outcome.success

    @staticmethod
    def _caller_parameters(caller_context: PlanningContext | Mapping[str, Any] | None) -> dict[str, Any]:
        if caller_context is None:
            return {}
        if isinstance(caller_context, PlanningContext):
            return caller_context.caller_parameters()
        return {key: value for key, value in caller_context.items() if value is not None}
