from __future__ import annotations

from typing import Any, Mapping

import pytest
from prometheus_client import REGISTRY

from storepilot.core.config import Settings
from storepilot.pipeline import PipelineResponse, QueryPipeline
from storepilot.queue.telemetry import GROUNDING_VERDICT, PIPELINE_COMPLETED, QUERY_RECEIVED, STEP_OUTCOME
from storepilot.schemas.grounding import FallbackReason
from storepilot.schemas.intent import IntentType
from storepilot.schemas.plan import PlanStatus
from storepilot.tools.base import ToolInvocationResult
from storepilot.tools.registry import ToolRegistry

from tests.helpers.stubs import RecordingSink, StubTextGenerator, intent_json

QUERY = "How much does the Acme X200 cost?"
GROUNDED_ANSWER = "The Acme X200 has 16GB RAM and costs $499."
CATALOG_HIT = {
    "results": [
        {
            "id": "doc-1",
            "content": "The Acme X200 has 16GB RAM and costs $499 at launch.",
            "score": 0.92,
            "metadata": {"sku": "X200"},
        }
    ]
}


def _registry(**tools: Any) -> tuple[ToolRegistry, list[dict[str, Any]]]:
    calls: list[dict[str, Any]] = []
    registry = ToolRegistry()

    def adapter_for(name: str, behaviour: Any):
        async def run(payload: Mapping[str, Any]) -> Any:
            calls.append({"tool": name, **payload})
            if callable(behaviour):
                return behaviour()
            return behaviour

        return run

    for name, behaviour in tools.items():
        registry.register(name, adapter_for(name, behaviour))
    return registry, calls


def _pipeline(
    generator: StubTextGenerator,
    registry: ToolRegistry,
    *,
    sink: RecordingSink | None = None,
    **overrides: Any,
) -> QueryPipeline:
    settings = Settings(**overrides)
    return QueryPipeline.from_settings(settings, generator=generator, registry=registry, telemetry_sink=sink)


@pytest.mark.asyncio
async def test_grounded_answer_is_returned_with_citations() -> None:
    sink = RecordingSink()
    generator = StubTextGenerator([intent_json("search", 0.92), GROUNDED_ANSWER])
    registry, calls = _registry(semanticRetrieval=CATALOG_HIT)
    pipeline = _pipeline(generator, registry, sink=sink)

    response = await pipeline.answer(QUERY, {"merchant_id": "shop-5", "session_id": "s-1"})
    await pipeline.aclose()

    assert isinstance(response, PipelineResponse)
    assert response.answer == GROUNDED_ANSWER
    assert response.fallback_used is False
    assert response.emergency is False
    assert response.intent.intent is IntentType.SEARCH
    assert response.plan.step_ids == ["semantic_search", "grounding_validation"]
    assert response.execution.status is PlanStatus.SUCCESS
    assert response.assessment.grounding.is_grounded is True
    assert [citation.document_id for citation in response.citations] == ["doc-1"]
    assert 0.0 < response.confidence <= 1.0
    assert calls[0]["merchant_id"] == "shop-5"
    assert calls[0]["session_id"] == "s-1"
    assert calls[0]["query"] == QUERY

    types = sink.types()
    assert types[0] == QUERY_RECEIVED
    assert types.count(STEP_OUTCOME) == 2
    assert GROUNDING_VERDICT in types
    assert types[-1] == PIPELINE_COMPLETED


@pytest.mark.asyncio
async def test_unsupported_answer_is_replaced_by_fallback() -> None:
    generator = StubTextGenerator([intent_json("search", 0.92), "The Acme X200 has 32GB RAM and costs $1299."])
    registry, _ = _registry(semanticRetrieval=CATALOG_HIT)
    pipeline = _pipeline(generator, registry)

    response = await pipeline.answer(QUERY)
    await pipeline.aclose()

    assert response.fallback_used is True
    assert response.fallback_reason is FallbackReason.HALLUCINATION
    assert response.answer.startswith("I found some relevant information")
    assert "$1299" not in response.answer
    assert [citation.document_id for citation in response.citations] == ["doc-1"]
    assert response.confidence == pytest.approx(0.4)
    assert response.assessment is not None
    assert response.assessment.fallback_recommended is True


@pytest.mark.asyncio
async def test_exhausted_execution_returns_emergency_response() -> None:
    labels = {"outcome": "emergency"}
    before = REGISTRY.get_sample_value("storepilot_pipeline_outcomes_total", labels) or 0.0
    generator = StubTextGenerator([intent_json("search", 0.92)])
    registry, _ = _registry(semanticRetrieval=ToolInvocationResult.failed("index offline", retryable=False))
    pipeline = _pipeline(generator, registry)

    response = await pipeline.answer("desk lamp")
    await pipeline.aclose()

    assert response.emergency is True
    assert response.fallback_reason is FallbackReason.EMERGENCY
    assert response.confidence == pytest.approx(0.1)
    assert "index offline" not in response.answer
    after = REGISTRY.get_sample_value("storepilot_pipeline_outcomes_total", labels)
    assert after == pytest.approx(before + 1.0)


@pytest.mark.asyncio
async def test_failed_primary_plan_runs_fallback_plan() -> None:
    attempts = {"count": 0}

    def flaky_catalog() -> Any:
        attempts["count"] += 1
        if attempts["count"] == 1:
            return ToolInvocationResult.failed("index warming up", retryable=False)
        return CATALOG_HIT

    generator = StubTextGenerator([intent_json("recommend", 0.4), GROUNDED_ANSWER])
    registry, calls = _registry(semanticRetrieval=flaky_catalog, productPrediction={"products": []})
    pipeline = _pipeline(generator, registry)

    response = await pipeline.answer(QUERY)
    await pipeline.aclose()

    assert response.emergency is False
    assert response.plan.step_ids == ["fallback_search"]
    assert response.execution.status is PlanStatus.SUCCESS
    assert [call["tool"] for call in calls if call["tool"] == "productPrediction"] == []
    assert attempts["count"] == 2


@pytest.mark.asyncio
async def test_violating_plan_is_swapped_for_fallback_when_configured() -> None:
    generator = StubTextGenerator([intent_json("recommend", 0.4), GROUNDED_ANSWER])
    registry, calls = _registry(semanticRetrieval=CATALOG_HIT, productPrediction={"products": []})
    pipeline = _pipeline(
        generator,
        registry,
        pipeline={"abort_on_violation": True, "max_latency_ms": 10},
    )

    response = await pipeline.answer(QUERY)
    await pipeline.aclose()

    assert response.plan_validation.valid is False
    assert response.plan.step_ids == ["fallback_search"]
    assert all(call["tool"] == "semanticRetrieval" for call in calls)


@pytest.mark.asyncio
async def test_violations_are_advisory_by_default() -> None:
    generator = StubTextGenerator([intent_json("search", 0.92), GROUNDED_ANSWER])
    registry, _ = _registry(semanticRetrieval=CATALOG_HIT)
    pipeline = _pipeline(generator, registry, pipeline={"max_latency_ms": 10})

    response = await pipeline.answer(QUERY)
    await pipeline.aclose()

    assert response.plan_validation.valid is False
    assert response.plan.step_ids == ["semantic_search", "grounding_validation"]
    assert response.answer == GROUNDED_ANSWER


@pytest.mark.asyncio
async def test_composer_failure_degrades_to_fallback() -> None:
    generator = StubTextGenerator([intent_json("search", 0.92), RuntimeError("model unavailable")])
    registry, _ = _registry(semanticRetrieval=CATALOG_HIT)
    pipeline = _pipeline(generator, registry)

    response = await pipeline.answer(QUERY)
    await pipeline.aclose()

    assert response.fallback_used is True
    assert response.fallback_reason is FallbackReason.LOW_QUALITY
    assert response.assessment is None
    assert "model unavailable" not in response.answer


@pytest.mark.asyncio
async def test_broken_telemetry_sink_does_not_affect_answers() -> None:
    generator = StubTextGenerator([intent_json("search", 0.92), GROUNDED_ANSWER])
    registry, _ = _registry(semanticRetrieval=CATALOG_HIT)
    pipeline = _pipeline(generator, registry, sink=RecordingSink(fail=True))

    response = await pipeline.answer(QUERY)
    await pipeline.aclose()

    assert response.answer == GROUNDED_ANSWER


@pytest.mark.asyncio
async def test_unexpected_error_never_escapes(monkeypatch: pytest.MonkeyPatch) -> None:
    generator = StubTextGenerator([intent_json("search", 0.92)])
    registry, _ = _registry(semanticRetrieval=CATALOG_HIT)
    pipeline = _pipeline(generator, registry)

    def explode(*args: Any, **kwargs: Any) -> Any:
        raise RuntimeError("planner bug")

    monkeypatch.setattr(pipeline._planner, "generate_execution_plan", explode)

    response = await pipeline.answer(QUERY)
    await pipeline.aclose()

    assert response.emergency is True
    assert "planner bug" not in response.answer


@pytest.mark.asyncio
async def test_response_serializes_with_camel_case_keys() -> None:
    generator = StubTextGenerator([intent_json("search", 0.92), GROUNDED_ANSWER])
    registry, _ = _registry(semanticRetrieval=CATALOG_HIT)
    pipeline = _pipeline(generator, registry)

    response = await pipeline.answer(QUERY)
    await pipeline.aclose()

    payload = response.model_dump(by_alias=True, mode="json")
    assert payload["fallbackUsed"] is False
    assert payload["plan"]["steps"][0]["retryPolicy"]["maxRetries"] == 2
    assert payload["assessment"]["grounding"]["isGrounded"] is True


@pytest.mark.asyncio
async def test_invalid_caller_context_yields_emergency_response() -> None:
    sink = RecordingSink()
    generator = StubTextGenerator([intent_json("search", 0.92), GROUNDED_ANSWER])
    registry, calls = _registry(semanticRetrieval=CATALOG_HIT)
    pipeline = _pipeline(generator, registry, sink=sink)

    response = await pipeline.answer(QUERY, {"merchant_id": 42})
    await pipeline.aclose()

    assert response.emergency is True
    assert response.confidence == pytest.approx(0.1)
    assert calls == []
    assert sink.types()[-1] == PIPELINE_COMPLETED


@pytest.mark.asyncio
async def test_malformed_retrieval_metadata_still_answers() -> None:
    catalog = {
        "results": [
            {
                "id": "doc-1",
                "content": "The Acme X200 has 16GB RAM and costs $499 at launch.",
                "score": 0.92,
                "metadata": "catalog",
            }
        ]
    }
    generator = StubTextGenerator([intent_json("search", 0.92), GROUNDED_ANSWER])
    registry, _ = _registry(semanticRetrieval=catalog)
    pipeline = _pipeline(generator, registry)

    response = await pipeline.answer(QUERY)
    await pipeline.aclose()

    assert response.emergency is False
    assert response.answer == GROUNDED_ANSWER
    assert [citation.document_id for citation in response.citations] == ["doc-1"]
