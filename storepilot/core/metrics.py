from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

INTENT_CLASSIFICATIONS_TOTAL = Counter(
    "storepilot_intent_classifications_total",
    "Intent classifications grouped by resolved intent and how it was produced",
    labelnames=("intent", "source"),
)

PLANS_GENERATED_TOTAL = Counter(
    "storepilot_plans_generated_total",
    "Execution plans generated per intent",
    labelnames=("intent", "fallback_attached"),
)

PLAN_STEPS = Histogram(
    "storepilot_plan_steps",
    "Number of steps per generated execution plan",
    labelnames=("intent",),
    buckets=(0, 1, 2, 3, 4, 5, 8, 13),
)

PLAN_VIOLATIONS_TOTAL = Counter(
    "storepilot_plan_violations_total",
    "Advisory plan validation violations by kind",
    labelnames=("kind",),
)

STEP_OUTCOMES_TOTAL = Counter(
    "storepilot_step_outcomes_total",
    "Terminal step outcomes grouped by tool and status",
    labelnames=("tool", "status"),
)

STEP_LATENCY_SECONDS = Histogram(
    "storepilot_step_latency_seconds",
    "Latency for a step including retries",
    labelnames=("tool",),
)

STEP_RETRIES_TOTAL = Counter(
    "storepilot_step_retries_total",
    "Retry attempts issued by the coordinator",
    labelnames=("tool",),
)

PLAN_EXECUTIONS_TOTAL = Counter(
    "storepilot_plan_executions_total",
    "Coordinated plan executions by terminal status",
    labelnames=("status",),
)

PLAN_EXECUTION_LATENCY_SECONDS = Histogram(
    "storepilot_plan_execution_latency_seconds",
    "Wall-clock latency from first dispatch to last terminal step",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
)

ACTIVE_PLANS = Gauge(
    "storepilot_plans_active",
    "Plans currently being executed by the coordinator",
)

TOOL_INVOCATIONS_TOTAL = Counter(
    "storepilot_tool_invocations_total",
    "Tool invocations grouped by tool and outcome",
    labelnames=("tool", "outcome"),
)

TOOL_LATENCY_SECONDS = Histogram(
    "storepilot_tool_latency_seconds",
    "Latency for individual tool invocations",
    labelnames=("tool",),
)

TOOL_CIRCUIT_OPEN_TOTAL = Counter(
    "storepilot_tool_circuit_open_total",
    "Times a tool circuit breaker opened",
    labelnames=("tool",),
)

GROUNDING_VERDICTS_TOTAL = Counter(
    "storepilot_grounding_verdicts_total",
    "Grounding verdicts for composed responses",
    labelnames=("grounded", "hallucination"),
)

GROUNDING_SCORE = Histogram(
    "storepilot_grounding_score",
    "Distribution of grounding scores",
    buckets=(0.0, 0.2, 0.4, 0.6, 0.7, 0.8, 0.85, 0.9, 1.0),
)

FALLBACK_RESPONSES_TOTAL = Counter(
    "storepilot_fallback_responses_total",
    "Fallback responses produced grouped by reason",
    labelnames=("reason",),
)

TELEMETRY_DROPPED_TOTAL = Counter(
    "storepilot_telemetry_dropped_total",
    "Telemetry events dropped before delivery",
    labelnames=("reason",),
)

PIPELINE_OUTCOMES_TOTAL = Counter(
    "storepilot_pipeline_outcomes_total",
    "Query pipeline outcomes",
    labelnames=("outcome",),
)

PIPELINE_LATENCY_SECONDS = Histogram(
    "storepilot_pipeline_latency_seconds",
    "End-to-end latency of answering one query",
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
)


def record_intent_classification(*, intent: str, source: str) -> None:
    INTENT_CLASSIFICATIONS_TOTAL.labels(intent=intent, source=source).inc()


def record_plan_generated(*, intent: str, steps: int, fallback_attached: bool) -> None:
    PLANS_GENERATED_TOTAL.labels(intent=intent, fallback_attached=str(fallback_attached).lower()).inc()
    PLAN_STEPS.labels(intent=intent).observe(steps)


def increment_plan_violation(*, kind: str) -> None:
    PLAN_VIOLATIONS_TOTAL.labels(kind=kind).inc()


def record_step_outcome(*, tool: str, status: str, latency: float) -> None:
    STEP_OUTCOMES_TOTAL.labels(tool=tool, status=status).inc()
    STEP_LATENCY_SECONDS.labels(tool=tool).observe(max(latency, 0.0))


def increment_step_retry(*, tool: str) -> None:
    STEP_RETRIES_TOTAL.labels(tool=tool).inc()


def mark_plan_started() -> None:
    ACTIVE_PLANS.inc()


def mark_plan_completed(*, status: str, latency: float) -> None:
    ACTIVE_PLANS.dec()
    PLAN_EXECUTIONS_TOTAL.labels(status=status).inc()
    PLAN_EXECUTION_LATENCY_SECONDS.observe(max(latency, 0.0))


def record_tool_invocation(*, tool: str, outcome: str, latency: float) -> None:
    TOOL_INVOCATIONS_TOTAL.labels(tool=tool, outcome=outcome).inc()
    TOOL_LATENCY_SECONDS.labels(tool=tool).observe(max(latency, 0.0))


def increment_circuit_open(*, tool: str) -> None:
    TOOL_CIRCUIT_OPEN_TOTAL.labels(tool=tool).inc()


def record_grounding_verdict(*, grounded: bool, hallucination: bool, score: float) -> None:
    GROUNDING_VERDICTS_TOTAL.labels(
        grounded=str(grounded).lower(),
        hallucination=str(hallucination).lower(),
    ).inc()
    GROUNDING_SCORE.observe(score)


def increment_fallback_response(*, reason: str) -> None:
    FALLBACK_RESPONSES_TOTAL.labels(reason=reason).inc()


def increment_telemetry_dropped(*, reason: str) -> None:
    TELEMETRY_DROPPED_TOTAL.labels(reason=reason).inc()


def record_pipeline_outcome(*, outcome: str, latency: float) -> None:
    PIPELINE_OUTCOMES_TOTAL.labels(outcome=outcome).inc()
    PIPELINE_LATENCY_SECONDS.observe(max(latency, 0.0))
