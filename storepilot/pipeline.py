from __future__ import annotations

import time
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from prometheus_client import start_http_server
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .core.config import PipelineSettings, Settings, get_settings
from .core.logging import configure_logging, get_logger
from .core.metrics import record_pipeline_outcome
from .grounding import FallbackResponder, GroundingValidator, collect_evidence
from .orchestration.coordinator import ToolCoordinator
from .orchestration.intent import IntentClassifier
from .orchestration.plan_validator import PlanValidator
from .orchestration.planner import ExecutionPlanner
from .queue.telemetry import (
    GROUNDING_VERDICT,
    PIPELINE_COMPLETED,
    QUERY_RECEIVED,
    TelemetryChannel,
    TelemetrySink,
)
from .schemas.grounding import (
    Citation,
    EvidenceDocument,
    FallbackReason,
    FallbackResponse,
    ResponseQualityAssessment,
)
from .schemas.intent import ParsedIntent, PlanConstraints, PlanningContext
from .schemas.plan import CoordinatedResult, ExecutionPlan, PlanStatus, PlanValidationResult
from .services.llm import LLMService, TextGenerator
from .tools.grounding import GROUNDING_TOOL, GroundingCheckpoint
from .tools.http import HttpToolGateway
from .tools.registry import ToolRegistry

__all__ = [
    "LLMResponseComposer",
    "PipelineExhaustedError",
    "PipelineResponse",
    "QueryPipeline",
    "ResponseComposer",
]

logger = get_logger(name=__name__)

_COMPOSER_SYSTEM_PROMPT = (
    "You are a shopping assistant for an online store. Answer only with facts found in the "
    "numbered sources. Cite sources as [Source: id]. If the sources do not answer the question, say so."
)


class PipelineExhaustedError(RuntimeError):
    """Raised when neither the primary plan nor its fallback produced a usable result."""


@runtime_checkable
class ResponseComposer(Protocol):
    async def compose(
        self,
        query: str,
        intent: ParsedIntent,
        documents: Sequence[EvidenceDocument],
    ) -> str:
        ...


class LLMResponseComposer:
    """Composes the answer text from retrieved evidence with the chat model."""

    def __init__(self, generator: TextGenerator, *, max_tokens: int | None = None) -> None:
        self._generator = generator
        self._max_tokens = max_tokens

    async def compose(
        self,
        query: str,
        intent: ParsedIntent,
        documents: Sequence[EvidenceDocument],
    ) -> str:
        prompt = self._build_prompt(query, intent, documents)
        text = await self._generator.generate(
            prompt,
            system_prompt=_COMPOSER_SYSTEM_PROMPT,
            max_tokens=self._max_tokens,
        )
        return text.strip()

    @staticmethod
    def _build_prompt(query: str, intent: ParsedIntent, documents: Sequence[EvidenceDocument]) -> str:
        lines = [f"Customer query: {query}", f"Detected intent: {intent.intent.value}", ""]
        if documents:
            lines.append("Sources:")
            for position, document in enumerate(documents, start=1):
                lines.append(f"{position}. [Source: {document.document_id}] {document.snippet}")
        else:
            lines.append("Sources: none were found.")
        lines.extend(["", "Write a concise answer grounded in the sources above."])
        return "\n".join(lines)


class PipelineResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    answer: str
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    intent: ParsedIntent | None = None
    plan: ExecutionPlan | None = None
    plan_validation: PlanValidationResult | None = None
    execution: CoordinatedResult | None = None
    assessment: ResponseQualityAssessment | None = None
    citations: list[Citation] = Field(default_factory=list)
    fallback_used: bool = False
    fallback_reason: FallbackReason | None = None
    emergency: bool = False
    latency_ms: float = Field(0.0, ge=0.0)


class QueryPipeline:
    """Runs one conversational turn end to end: classify, plan, execute, compose and validate."""

    def __init__(
        self,
        *,
        classifier: IntentClassifier,
        planner: ExecutionPlanner,
        validator: PlanValidator,
        coordinator: ToolCoordinator,
        grounding: GroundingValidator,
        fallback: FallbackResponder,
        composer: ResponseComposer,
        telemetry: TelemetryChannel,
        settings: PipelineSettings | None = None,
        gateway: HttpToolGateway | None = None,
    ) -> None:
        self._classifier = classifier
        self._planner = planner
        self._validator = validator
        self._coordinator = coordinator
        self._grounding = grounding
        self._fallback = fallback
        self._composer = composer
        self._telemetry = telemetry
        self._settings = settings or PipelineSettings()
        self._gateway = gateway

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        generator: TextGenerator | None = None,
        registry: ToolRegistry | None = None,
        telemetry_sink: TelemetrySink | None = None,
        configure_logs: bool = False,
    ) -> "QueryPipeline":
        settings = settings or get_settings()
        if configure_logs:
            configure_logging(settings.observability.log_level)
        if settings.observability.prometheus_enabled and settings.observability.metrics_port:
            start_http_server(settings.observability.metrics_port)

        generator = generator or LLMService.from_settings(settings.llm)
        registry = registry or ToolRegistry.from_settings(settings.tools)
        if GROUNDING_TOOL not in registry:
            registry.register(GROUNDING_TOOL, GroundingCheckpoint())

        gateway: HttpToolGateway | None = None
        if settings.tools.http.enabled:
            gateway = HttpToolGateway(settings.tools.http)
            for tool in settings.tools.http.tools:
                if tool not in registry:
                    registry.register(tool, gateway.adapter(tool))

        telemetry = TelemetryChannel(telemetry_sink, max_queue_size=settings.observability.telemetry_queue_size)
        return cls(
            classifier=IntentClassifier(generator, knowledge=registry, settings=settings.intent),
            planner=ExecutionPlanner(settings.planning),
            validator=PlanValidator(settings.planning),
            coordinator=ToolCoordinator(registry, settings=settings.scheduling, telemetry=telemetry),
            grounding=GroundingValidator(settings.grounding),
            fallback=FallbackResponder(settings.grounding),
            composer=LLMResponseComposer(generator, max_tokens=settings.llm.max_output_tokens),
            telemetry=telemetry,
            settings=settings.pipeline,
            gateway=gateway,
        )

    @property
    def telemetry(self) -> TelemetryChannel:
        return self._telemetry

    async def answer(
        self,
        query: str,
        context: PlanningContext | Mapping[str, Any] | None = None,
    ) -> PipelineResponse:
        """Answer one query; failures degrade to fallback or emergency responses instead of raising."""
        start = time.perf_counter()
        turn = PlanningContext(query=query)
        try:
            await self._telemetry.start()
            turn = self._context_for(query, context)
            self._telemetry.emit(
                QUERY_RECEIVED,
                query=query,
                merchant_id=turn.merchant_id,
                session_id=turn.session_id,
            )
            response = await self._run(query, turn)
            outcome = "fallback" if response.fallback_used else "answered"
        except PipelineExhaustedError as exc:
            logger.warning("pipeline_exhausted", merchant_id=turn.merchant_id, error=str(exc))
            response = self._emergency(query)
            outcome = "emergency"
        except Exception as exc:
            logger.exception("pipeline_failed", merchant_id=turn.merchant_id, error=str(exc))
            response = self._emergency(query)
            outcome = "emergency"

        elapsed = time.perf_counter() - start
        response.latency_ms = elapsed * 1000.0
        record_pipeline_outcome(outcome=outcome, latency=elapsed)
        self._telemetry.emit(
            PIPELINE_COMPLETED,
            outcome=outcome,
            intent=response.intent.intent.value if response.intent else None,
            confidence=response.confidence,
            fallback_used=response.fallback_used,
            latency_ms=response.latency_ms,
        )
        logger.info(
            "pipeline_completed",
            outcome=outcome,
            merchant_id=turn.merchant_id,
            confidence=round(response.confidence, 4),
            latency_ms=round(response.latency_ms, 2),
        )
        return response

    async def aclose(self) -> None:
        await self._telemetry.stop()
        if self._gateway is not None:
            await self._gateway.aclose()

    async def _run(self, query: str, context: PlanningContext) -> PipelineResponse:
        intent = await self._classifier.parse_intent(query, context)

        require_grounding = self._settings.require_grounding or context.constraints.require_grounding
        plan = self._planner.generate_execution_plan(intent, context, require_grounding=require_grounding)
        validation = self._validator.validate_plan(plan, self._constraints(context, require_grounding))

        active = plan
        if not validation.valid:
            logger.warning("plan_constraints_violated", plan_id=plan.plan_id, violations=validation.violations)
            if self._settings.abort_on_violation and plan.fallback_plan is not None:
                logger.info("fallback_plan_substituted", plan_id=plan.plan_id, fallback_id=plan.fallback_plan.plan_id)
                active = plan.fallback_plan

        execution = await self._coordinator.execute_coordinated_plan(active, context)
        # One retry through the fallback plan, never a chain
        if execution.status is PlanStatus.FAILED and active.fallback_plan is not None:
            logger.warning(
                "plan_failed_running_fallback",
                plan_id=active.plan_id,
                failed_steps=execution.failed_steps,
            )
            active = active.fallback_plan
            execution = await self._coordinator.execute_coordinated_plan(active, context)
        if execution.status is PlanStatus.FAILED:
            raise PipelineExhaustedError(f"plan {active.plan_id} failed: {', '.join(execution.failed_steps)}")

        documents = collect_evidence(execution, active, limit=self._settings.max_evidence_documents)
        base = {
            "intent": intent,
            "plan": active,
            "plan_validation": validation,
            "execution": execution,
        }

        try:
            draft = await self._composer.compose(query, intent, documents)
        except Exception as exc:
            logger.warning("answer_composition_failed", plan_id=active.plan_id, error=str(exc))
            reason = FallbackReason.NO_EVIDENCE if not documents else FallbackReason.LOW_QUALITY
            return self._fallback_response(self._fallback.create_fallback_response(query, documents, reason), base)

        assessment = self._grounding.validate_response_grounding(draft, documents, query)
        self._telemetry.emit(
            GROUNDING_VERDICT,
            plan_id=active.plan_id,
            grounded=assessment.grounding.is_grounded,
            grounding_score=assessment.grounding.grounding_score,
            hallucination=assessment.grounding.hallucination.detected,
            fallback_recommended=assessment.fallback_recommended,
        )

        if assessment.fallback_recommended:
            reason = self._fallback_reason(assessment, documents)
            fallback = self._fallback.create_fallback_response(query, documents, reason)
            return self._fallback_response(fallback, {**base, "assessment": assessment})

        return PipelineResponse(
            answer=draft,
            confidence=assessment.quality.overall,
            assessment=assessment,
            citations=assessment.citations,
            **base,
        )

    def _constraints(self, context: PlanningContext, require_grounding: bool) -> PlanConstraints:
        requested = context.constraints
        return PlanConstraints(
            max_latency_ms=requested.max_latency_ms or self._settings.max_latency_ms,
            max_cost=requested.max_cost if requested.max_cost is not None else self._settings.max_cost,
            require_grounding=require_grounding,
        )

    @staticmethod
    def _fallback_reason(
        assessment: ResponseQualityAssessment,
        documents: Sequence[EvidenceDocument],
    ) -> FallbackReason:
        if assessment.grounding.hallucination.detected:
            return FallbackReason.HALLUCINATION
        if not documents:
            return FallbackReason.NO_EVIDENCE
        if not assessment.grounding.is_grounded:
            return FallbackReason.LOW_GROUNDING
        return FallbackReason.LOW_QUALITY

    @staticmethod
    def _fallback_response(fallback: FallbackResponse, base: Mapping[str, Any]) -> PipelineResponse:
        return PipelineResponse(
            answer=fallback.answer,
            confidence=fallback.confidence,
            citations=fallback.citations,
            fallback_used=True,
            fallback_reason=fallback.reason,
            **base,
        )

    def _emergency(self, query: str) -> PipelineResponse:
        emergency = self._fallback.emergency_response(query)
        return PipelineResponse(
            answer=emergency.answer,
            confidence=emergency.confidence,
            fallback_used=True,
            fallback_reason=emergency.reason,
            emergency=True,
        )

    @staticmethod
    def _context_for(query: str, context: PlanningContext | Mapping[str, Any] | None) -> PlanningContext:
        if context is None:
            return PlanningContext(query=query)
        if isinstance(context, PlanningContext):
            if context.query == query:
                return context
            return context.model_copy(update={"query": query})
        return PlanningContext.model_validate({**dict(context), "query": query})
