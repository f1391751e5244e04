from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .intent import IntentType


class StepType(str, Enum):
    RETRIEVAL = "retrieval"
    PREDICTION = "prediction"
    GROUNDING = "grounding"
    CHECKOUT = "checkout"
    VALIDATION = "validation"


class StepStatus(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELLED}


class FailureKind(str, Enum):
    ERROR = "error"
    TIMEOUT = "timeout"
    DEPENDENCY_FAILED = "dependency_failed"
    DEADLINE_EXCEEDED = "deadline_exceeded"


class PlanStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RetryPolicy(_CamelModel):
    max_retries: int = Field(0, ge=0)
    backoff_base_seconds: float = Field(0.0, ge=0.0)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


class ExecutionStep(_CamelModel):
    id: str = Field(..., min_length=1)
    type: StepType
    tool: str = Field(..., min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: int = 1
    dependencies: list[str] = Field(default_factory=list)
    timeout_seconds: float = Field(..., gt=0.0)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    optional: bool = False
    estimated_latency_ms: float = Field(0.0, ge=0.0)
    estimated_cost: float = Field(0.0, ge=0.0)

    @field_validator("dependencies")
    @classmethod
    def _unique_dependencies(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            raise ValueError("dependencies must not repeat a step id")
        return value


class ExecutionPlan(_CamelModel):
    """Dependency-annotated steps answering one query turn."""

    plan_id: str
    intent: IntentType
    steps: list[ExecutionStep] = Field(default_factory=list)
    parallelizable: bool = True
    estimated_latency_ms: float = Field(0.0, ge=0.0)
    estimated_cost: float = Field(0.0, ge=0.0)
    fallback_plan: ExecutionPlan | None = None

    @model_validator(mode="after")
    def _check_dependency_graph(self) -> "ExecutionPlan":
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}'")
            for dependency in step.dependencies:
                if dependency == step.id:
                    raise ValueError(f"step '{step.id}' depends on itself")
                if dependency not in seen:
                    raise ValueError(
                        f"step '{step.id}' depends on '{dependency}' which is not an earlier step of the plan"
                    )
            seen.add(step.id)
        return self

    @property
    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]

    def get_step(self, step_id: str) -> ExecutionStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class StepOutcome(_CamelModel):
    step_id: str
    tool: str
    status: StepStatus
    output: Any = None
    error: str | None = None
    failure_kind: FailureKind | None = None
    attempts: int = Field(0, ge=0)
    latency_ms: float = Field(0.0, ge=0.0)
    optional: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return self.status is StepStatus.SUCCEEDED


class CoordinatedResult(_CamelModel):
    plan_id: str
    status: PlanStatus
    success: bool
    outcomes: list[StepOutcome] = Field(default_factory=list)
    failed_steps: list[str] = Field(default_factory=list)
    total_latency_ms: float = Field(0.0, ge=0.0)
    deadline_exceeded: bool = False

    def outcome_for(self, step_id: str) -> StepOutcome | None:
        for outcome in self.outcomes:
            if outcome.step_id == step_id:
                return outcome
        return None

    def successful_outputs(self) -> list[tuple[StepOutcome, Any]]:
        return [(outcome, outcome.output) for outcome in self.outcomes if outcome.success]


class PlanViolation(_CamelModel):
    kind: str
    message: str
    suggestion: str


class PlanValidationResult(_CamelModel):
    valid: bool
    violations: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    details: list[PlanViolation] = Field(default_factory=list)
