from __future__ import annotations

from typing import Mapping, Sequence

from ..core.config import PlanningSettings
from ..core.logging import get_logger
from ..core.metrics import increment_plan_violation
from ..schemas.intent import PlanConstraints
from ..schemas.plan import ExecutionPlan, ExecutionStep, PlanValidationResult, PlanViolation, StepType

__all__ = ["PlanValidator", "can_parallelize", "critical_path_latency", "estimate_cost", "validate_plan"]

logger = get_logger(name=__name__)


def _steps_of(plan: ExecutionPlan | Sequence[ExecutionStep]) -> Sequence[ExecutionStep]:
    return plan.steps if isinstance(plan, ExecutionPlan) else plan


def can_parallelize(plan: ExecutionPlan | Sequence[ExecutionStep]) -> bool:
    """Return True when every dependency sits in a strictly earlier dispatch wave.

    Steps sharing a priority value form one wave, so a step may not depend on a step of its own
    wave or of a later one.
    """
    steps = _steps_of(plan)
    waves = {step.id: step.priority for step in steps}
    for step in steps:
        for dependency in step.dependencies:
            dependency_wave = waves.get(dependency)
            if dependency_wave is None or dependency_wave >= step.priority:
                return False
    return True


def _step_latency(step: ExecutionStep, nominal: Mapping[str, float]) -> float:
    if step.estimated_latency_ms > 0:
        return step.estimated_latency_ms
    return float(nominal.get(step.type.value, 0.0))


def critical_path_latency(
    plan: ExecutionPlan | Sequence[ExecutionStep],
    *,
    nominal_latency_ms: Mapping[str, float] | None = None,
) -> float:
    """Longest dependency chain of the plan measured in nominal step latency."""
    nominal = nominal_latency_ms if nominal_latency_ms is not None else PlanningSettings().nominal_latency_ms
    finish: dict[str, float] = {}
    for step in _steps_of(plan):
        ready_at = max((finish.get(dependency, 0.0) for dependency in step.dependencies), default=0.0)
        finish[step.id] = ready_at + _step_latency(step, nominal)
    return max(finish.values(), default=0.0)


def estimate_cost(
    plan: ExecutionPlan | Sequence[ExecutionStep],
    *,
    step_costs: Mapping[str, float] | None = None,
) -> float:
    costs = step_costs if step_costs is not None else PlanningSettings().step_costs
    total = 0.0
    for step in _steps_of(plan):
        total += step.estimated_cost if step.estimated_cost > 0 else float(costs.get(step.type.value, 0.0))
    return round(total, 6)


class PlanValidator:
    """Checks a plan against latency, cost and grounding constraints without running it."""

    def __init__(self, settings: PlanningSettings | None = None) -> None:
        self._settings = settings or PlanningSettings()

    def validate_plan(self, plan: ExecutionPlan, constraints: PlanConstraints) -> PlanValidationResult:
        details: list[PlanViolation] = []

        if constraints.max_latency_ms is not None:
            latency = critical_path_latency(plan, nominal_latency_ms=self._settings.nominal_latency_ms)
            if latency > constraints.max_latency_ms:
                details.append(
                    PlanViolation(
                        kind="latency",
                        message=f"Estimated latency {latency:.0f}ms exceeds limit {constraints.max_latency_ms:.0f}ms",
                        suggestion="Consider reducing the number of steps or using cached results",
                    )
                )

        if constraints.max_cost is not None:
            cost = estimate_cost(plan, step_costs=self._settings.step_costs)
            if cost > constraints.max_cost:
                details.append(
                    PlanViolation(
                        kind="cost",
                        message=f"Estimated cost ${cost:.4f} exceeds limit ${constraints.max_cost:.4f}",
                        suggestion="Consider using smaller models or reducing the number of API calls",
                    )
                )

        if constraints.require_grounding and not any(step.type is StepType.GROUNDING for step in plan.steps):
            details.append(
                PlanViolation(
                    kind="grounding",
                    message="Grounding validation is required but not included in plan",
                    suggestion="Add grounding validation step",
                )
            )

        for violation in details:
            increment_plan_violation(kind=violation.kind)
        if details:
            logger.info("plan_validation_violations", plan_id=plan.plan_id, kinds=[item.kind for item in details])

        return PlanValidationResult(
            valid=not details,
            violations=[item.message for item in details],
            suggestions=[item.suggestion for item in details],
            details=details,
        )


def validate_plan(
    plan: ExecutionPlan,
    constraints: PlanConstraints,
    *,
    settings: PlanningSettings | None = None,
) -> PlanValidationResult:
    return PlanValidator(settings).validate_plan(plan, constraints)
