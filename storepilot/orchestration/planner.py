from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence
from uuid import uuid4

from ..core.config import PlanningSettings
from ..core.logging import get_logger
from ..core.metrics import record_plan_generated
from ..schemas.intent import IntentType, ParsedIntent, PlanningContext
from ..schemas.plan import ExecutionPlan, ExecutionStep, RetryPolicy, StepType
from ..tools.grounding import GROUNDING_TOOL
from .plan_validator import can_parallelize

__all__ = [
    "ExecutionPlanner",
    "StepTemplate",
    "SEMANTIC_RETRIEVAL",
    "PRODUCT_PREDICTION",
    "CART_VALIDATION",
    "PROCESS_CHECKOUT",
    "KNOWLEDGE_CONTEXT",
    "GROUNDING_STEP_ID",
]

logger = get_logger(name=__name__)

SEMANTIC_RETRIEVAL = "semanticRetrieval"
PRODUCT_PREDICTION = "productPrediction"
CART_VALIDATION = "cartValidation"
PROCESS_CHECKOUT = "processCheckout"
KNOWLEDGE_CONTEXT = "knowledgeContext"

GROUNDING_STEP_ID = "grounding_validation"
_GROUNDING_PRIORITY = 99


@dataclass(slots=True)
class StepTemplate:
    step_id: str
    step_type: StepType
    tool: str
    timeout_seconds: float
    max_retries: int
    backoff_base_seconds: float
    parameters: dict[str, Any] = field(default_factory=dict)
    priority: int = 1
    dependencies: tuple[str, ...] = ()
    optional: bool = False
    nominal_latency_ms: float | None = None


class ExecutionPlanner:
    """Builds dependency-ordered execution plans from parsed intents."""

    def __init__(self, settings: PlanningSettings | None = None) -> None:
        self._settings = settings or PlanningSettings()
        self._templates: dict[IntentType, Callable[[ParsedIntent, PlanningContext], list[StepTemplate]]] = {
            IntentType.SEARCH: self._search_steps,
            IntentType.RECOMMEND: self._recommend_steps,
            IntentType.PURCHASE: self._purchase_steps,
            IntentType.QUESTION: self._question_steps,
            IntentType.COMPARE: self._compare_steps,
            IntentType.SUPPORT: self._support_steps,
        }

    def generate_execution_plan(
        self,
        intent: ParsedIntent,
        context: PlanningContext | None = None,
        *,
        require_grounding: bool | None = None,
    ) -> ExecutionPlan:
        context = context or PlanningContext()
        if require_grounding is None:
            require_grounding = context.constraints.require_grounding
        try:
            templates = self._templates[intent.intent](intent, context)
            if require_grounding:
                templates.append(self._grounding_step(templates))
            ordered = self._topological_sort(templates)
            fallback = None
            if intent.confidence < self._settings.low_confidence_threshold:
                fallback = self._build_plan(intent.intent, [self._fallback_step(context, "fallback_search")])
            plan = self._build_plan(intent.intent, ordered, fallback_plan=fallback)
        except Exception as exc:
            logger.exception("plan_generation_failed", intent=intent.intent.value, error=str(exc))
            plan = self._build_plan(intent.intent, [self._fallback_step(context, "minimal_search")])

        record_plan_generated(
            intent=intent.intent.value,
            steps=len(plan.steps),
            fallback_attached=plan.fallback_plan is not None,
        )
        logger.info(
            "plan_generated",
            plan_id=plan.plan_id,
            intent=intent.intent.value,
            steps=plan.step_ids,
            estimated_latency_ms=plan.estimated_latency_ms,
            fallback=plan.fallback_plan is not None,
        )
        return plan

    def _build_plan(
        self,
        intent: IntentType,
        templates: Sequence[StepTemplate],
        *,
        fallback_plan: ExecutionPlan | None = None,
    ) -> ExecutionPlan:
        steps = [self._materialize(template) for template in templates]
        plan = ExecutionPlan(
            plan_id=uuid4().hex,
            intent=intent,
            steps=steps,
            estimated_latency_ms=sum(step.estimated_latency_ms for step in steps),
            estimated_cost=round(sum(step.estimated_cost for step in steps), 6),
            fallback_plan=fallback_plan,
        )
        plan.parallelizable = can_parallelize(plan)
        return plan

    def _materialize(self, template: StepTemplate) -> ExecutionStep:
        step_type = template.step_type.value
        latency = template.nominal_latency_ms
        if latency is None:
            latency = self._settings.nominal_latency_ms.get(step_type, 0.0)
        return ExecutionStep(
            id=template.step_id,
            type=template.step_type,
            tool=template.tool,
            parameters=dict(template.parameters),
            priority=template.priority,
            dependencies=list(template.dependencies),
            timeout_seconds=template.timeout_seconds,
            retry_policy=RetryPolicy(
                max_retries=template.max_retries,
                backoff_base_seconds=template.backoff_base_seconds,
            ),
            optional=template.optional,
            estimated_latency_ms=latency,
            estimated_cost=self._settings.step_costs.get(step_type, 0.0),
        )

    def _topological_sort(self, templates: Sequence[StepTemplate]) -> list[StepTemplate]:
        by_id = {template.step_id: template for template in templates}
        indegree = {template.step_id: 0 for template in templates}
        adjacency: dict[str, list[str]] = {template.step_id: [] for template in templates}
        for template in templates:
            for dependency in template.dependencies:
                if dependency in by_id:
                    indegree[template.step_id] += 1
                    adjacency[dependency].append(template.step_id)

        ready = [step_id for step_id, degree in indegree.items() if degree == 0]
        ordered: list[str] = []
        while ready:
            ready.sort(key=lambda step_id: by_id[step_id].priority)
            current = ready.pop(0)
            ordered.append(current)
            for neighbor in adjacency[current]:
                indegree[neighbor] -= 1
                if indegree[neighbor] == 0:
                    ready.append(neighbor)

        if len(ordered) < len(templates):
            cyclic = sorted(set(by_id) - set(ordered))
            raise ValueError(f"step templates contain a dependency cycle: {cyclic}")
        return [by_id[step_id] for step_id in ordered]

    @staticmethod
    def _entity_filters(intent: ParsedIntent) -> dict[str, Any]:
        entities = intent.entities
        filters: dict[str, Any] = {}
        if entities.categories:
            filters["categories"] = list(entities.categories)
        if entities.brands:
            filters["brands"] = list(entities.brands)
        if entities.features:
            filters["features"] = list(entities.features)
        if entities.price_range is not None:
            filters["price_range"] = entities.price_range.model_dump(exclude_none=True)
        return filters

    def _retrieval_parameters(
        self,
        query: str,
        *,
        limit: int,
        threshold: float,
        filters: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        parameters: dict[str, Any] = {"query": query, "limit": limit, "threshold": threshold}
        if filters:
            parameters["filters"] = dict(filters)
        return parameters

    def _search_steps(self, intent: ParsedIntent, context: PlanningContext) -> list[StepTemplate]:
        return [
            StepTemplate(
                step_id="semantic_search",
                step_type=StepType.RETRIEVAL,
                tool=SEMANTIC_RETRIEVAL,
                parameters=self._retrieval_parameters(
                    context.query, limit=5, threshold=0.7, filters=self._entity_filters(intent)
                ),
                priority=1,
                timeout_seconds=3.0,
                max_retries=2,
                backoff_base_seconds=0.5,
            )
        ]

    def _recommend_steps(self, intent: ParsedIntent, context: PlanningContext) -> list[StepTemplate]:
        return [
            StepTemplate(
                step_id="semantic_search",
                step_type=StepType.RETRIEVAL,
                tool=SEMANTIC_RETRIEVAL,
                parameters=self._retrieval_parameters(
                    context.query, limit=3, threshold=0.6, filters=self._entity_filters(intent)
                ),
                priority=1,
                timeout_seconds=3.0,
                max_retries=2,
                backoff_base_seconds=0.5,
            ),
            StepTemplate(
                step_id="product_prediction",
                step_type=StepType.PREDICTION,
                tool=PRODUCT_PREDICTION,
                parameters={
                    "user_context": dict(context.user_context),
                    "products": list(intent.entities.products),
                },
                priority=2,
                dependencies=("semantic_search",),
                timeout_seconds=5.0,
                max_retries=3,
                backoff_base_seconds=1.0,
            ),
        ]

    def _purchase_steps(self, intent: ParsedIntent, context: PlanningContext) -> list[StepTemplate]:
        cart: dict[str, Any] = {"products": list(intent.entities.products)}
        if intent.entities.quantity is not None:
            cart["quantity"] = intent.entities.quantity
        return [
            StepTemplate(
                step_id="validate_cart",
                step_type=StepType.VALIDATION,
                tool=CART_VALIDATION,
                parameters={"cart": cart},
                priority=1,
                timeout_seconds=2.0,
                max_retries=2,
                backoff_base_seconds=0.5,
            ),
            StepTemplate(
                step_id="process_checkout",
                step_type=StepType.CHECKOUT,
                tool=PROCESS_CHECKOUT,
                parameters={"cart": cart},
                priority=2,
                dependencies=("validate_cart",),
                timeout_seconds=10.0,
                max_retries=1,
                backoff_base_seconds=2.0,
            ),
        ]

    def _question_steps(self, intent: ParsedIntent, context: PlanningContext) -> list[StepTemplate]:
        return [
            StepTemplate(
                step_id="knowledge_search",
                step_type=StepType.RETRIEVAL,
                tool=KNOWLEDGE_CONTEXT,
                parameters={"query": context.query, "context_type": "faq"},
                priority=1,
                timeout_seconds=4.0,
                max_retries=2,
                backoff_base_seconds=1.0,
            )
        ]

    def _compare_steps(self, intent: ParsedIntent, context: PlanningContext) -> list[StepTemplate]:
        products = [product for product in intent.entities.products if product.strip()]
        if not products:
            return [
                StepTemplate(
                    step_id="product_info_0",
                    step_type=StepType.RETRIEVAL,
                    tool=SEMANTIC_RETRIEVAL,
                    parameters=self._retrieval_parameters(context.query, limit=4, threshold=0.6),
                    priority=1,
                    timeout_seconds=3.0,
                    max_retries=2,
                    backoff_base_seconds=0.5,
                )
            ]
        return [
            StepTemplate(
                step_id=f"product_info_{index}",
                step_type=StepType.RETRIEVAL,
                tool=SEMANTIC_RETRIEVAL,
                parameters=self._retrieval_parameters(product, limit=2, threshold=0.6),
                priority=1,
                timeout_seconds=3.0,
                max_retries=2,
                backoff_base_seconds=0.5,
            )
            for index, product in enumerate(products)
        ]

    def _support_steps(self, intent: ParsedIntent, context: PlanningContext) -> list[StepTemplate]:
        return [
            StepTemplate(
                step_id="support_search",
                step_type=StepType.RETRIEVAL,
                tool=KNOWLEDGE_CONTEXT,
                parameters={"query": context.query, "context_type": "support"},
                priority=1,
                timeout_seconds=3.0,
                max_retries=2,
                backoff_base_seconds=0.5,
            )
        ]

    def _grounding_step(self, templates: Sequence[StepTemplate]) -> StepTemplate:
        upstream = tuple(template.step_id for template in templates)
        return StepTemplate(
            step_id=GROUNDING_STEP_ID,
            step_type=StepType.GROUNDING,
            tool=GROUNDING_TOOL,
            parameters={"steps": list(upstream)},
            priority=_GROUNDING_PRIORITY,
            dependencies=upstream,
            timeout_seconds=self._settings.grounding_timeout_seconds,
            max_retries=2,
            backoff_base_seconds=1.0,
        )

    def _fallback_step(self, context: PlanningContext, step_id: str) -> StepTemplate:
        return StepTemplate(
            step_id=step_id,
            step_type=StepType.RETRIEVAL,
            tool=SEMANTIC_RETRIEVAL,
            parameters=self._retrieval_parameters(
                context.query,
                limit=self._settings.fallback_limit,
                threshold=self._settings.fallback_threshold,
            ),
            priority=1,
            timeout_seconds=self._settings.fallback_timeout_seconds,
            max_retries=1,
            backoff_base_seconds=0.5,
            nominal_latency_ms=self._settings.fallback_latency_ms,
        )
