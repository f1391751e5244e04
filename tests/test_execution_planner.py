from __future__ import annotations

import pytest
from pydantic import ValidationError

from storepilot.orchestration.plan_validator import can_parallelize
from storepilot.orchestration.planner import (
    CART_VALIDATION,
    GROUNDING_STEP_ID,
    KNOWLEDGE_CONTEXT,
    PROCESS_CHECKOUT,
    PRODUCT_PREDICTION,
    SEMANTIC_RETRIEVAL,
    ExecutionPlanner,
    StepTemplate,
)
from storepilot.schemas.intent import (
    Complexity,
    IntentContext,
    IntentEntities,
    IntentType,
    ParsedIntent,
    PlanConstraints,
    PlanningContext,
    PriceRange,
    Urgency,
    UserType,
)
from storepilot.schemas.plan import ExecutionPlan, ExecutionStep, StepType


def _intent(kind: IntentType, confidence: float = 0.9, **entities) -> ParsedIntent:
    return ParsedIntent(intent=kind, confidence=confidence, entities=IntentEntities(**entities))


def _context(query: str = "wireless headphones") -> PlanningContext:
    return PlanningContext(query=query, merchant_id="shop-1")


def test_search_plan_uses_single_retrieval_with_entity_filters() -> None:
    planner = ExecutionPlanner()
    intent = _intent(IntentType.SEARCH, brands=["Acme"], price_range=PriceRange(max=200))

    plan = planner.generate_execution_plan(intent, _context())

    assert plan.step_ids == ["semantic_search"]
    step = plan.steps[0]
    assert step.tool == SEMANTIC_RETRIEVAL
    assert step.type is StepType.RETRIEVAL
    assert step.parameters["limit"] == 5
    assert step.parameters["threshold"] == pytest.approx(0.7)
    assert step.parameters["filters"] == {"brands": ["Acme"], "price_range": {"max": 200.0}}
    assert step.timeout_seconds == pytest.approx(3.0)
    assert step.retry_policy.max_retries == 2
    assert plan.fallback_plan is None


def test_recommend_plan_orders_prediction_after_retrieval() -> None:
    plan = ExecutionPlanner().generate_execution_plan(_intent(IntentType.RECOMMEND), _context())

    assert plan.step_ids == ["semantic_search", "product_prediction"]
    prediction = plan.get_step("product_prediction")
    assert prediction is not None
    assert prediction.tool == PRODUCT_PREDICTION
    assert prediction.priority == 2
    assert prediction.dependencies == ["semantic_search"]
    assert prediction.retry_policy.max_retries == 3
    assert plan.steps[0].parameters["limit"] == 3
    assert plan.parallelizable is True


def test_purchase_plan_validates_cart_before_checkout() -> None:
    intent = _intent(IntentType.PURCHASE, products=["sku-1"], quantity=2)

    plan = ExecutionPlanner().generate_execution_plan(intent, _context("buy it"))

    assert [step.tool for step in plan.steps] == [CART_VALIDATION, PROCESS_CHECKOUT]
    checkout = plan.steps[1]
    assert checkout.dependencies == ["validate_cart"]
    assert checkout.timeout_seconds == pytest.approx(10.0)
    assert checkout.retry_policy.max_retries == 1
    assert checkout.parameters["cart"] == {"products": ["sku-1"], "quantity": 2}


def test_question_and_support_plans_query_knowledge_context() -> None:
    planner = ExecutionPlanner()

    question = planner.generate_execution_plan(_intent(IntentType.QUESTION), _context("return policy"))
    support = planner.generate_execution_plan(_intent(IntentType.SUPPORT), _context("broken zipper"))

    assert question.steps[0].tool == KNOWLEDGE_CONTEXT
    assert question.steps[0].parameters["context_type"] == "faq"
    assert support.steps[0].tool == KNOWLEDGE_CONTEXT
    assert support.steps[0].parameters["context_type"] == "support"


def test_compare_plan_fans_out_one_lookup_per_product() -> None:
    intent = _intent(IntentType.COMPARE, products=["Acme X200", "Bolt Z9", "Cirrus 3"])

    plan = ExecutionPlanner().generate_execution_plan(intent, _context("compare laptops"))

    assert plan.step_ids == ["product_info_0", "product_info_1", "product_info_2"]
    assert [step.parameters["query"] for step in plan.steps] == ["Acme X200", "Bolt Z9", "Cirrus 3"]
    assert all(step.priority == 1 and not step.dependencies for step in plan.steps)


def test_compare_without_products_falls_back_to_query_lookup() -> None:
    plan = ExecutionPlanner().generate_execution_plan(_intent(IntentType.COMPARE), _context("which is better"))

    assert plan.step_ids == ["product_info_0"]
    assert plan.steps[0].parameters["query"] == "which is better"


def test_grounding_step_depends_on_every_other_step() -> None:
    intent = _intent(IntentType.COMPARE, products=["A", "B"])

    plan = ExecutionPlanner().generate_execution_plan(intent, _context(), require_grounding=True)

    grounding = plan.steps[-1]
    assert grounding.id == GROUNDING_STEP_ID
    assert grounding.type is StepType.GROUNDING
    assert grounding.dependencies == ["product_info_0", "product_info_1"]
    assert grounding.parameters == {"steps": ["product_info_0", "product_info_1"]}
    assert plan.parallelizable is True


def test_grounding_requirement_is_read_from_constraints() -> None:
    context = PlanningContext(query="socks", constraints=PlanConstraints(require_grounding=True))

    plan = ExecutionPlanner().generate_execution_plan(_intent(IntentType.SEARCH), context)

    assert plan.step_ids[-1] == GROUNDING_STEP_ID


def test_low_confidence_attaches_fallback_search_plan() -> None:
    plan = ExecutionPlanner().generate_execution_plan(_intent(IntentType.RECOMMEND, confidence=0.4), _context())

    assert plan.fallback_plan is not None
    fallback = plan.fallback_plan
    assert fallback.step_ids == ["fallback_search"]
    step = fallback.steps[0]
    assert step.parameters["limit"] == 3
    assert step.parameters["threshold"] == pytest.approx(0.5)
    assert step.timeout_seconds == pytest.approx(2.0)
    assert fallback.estimated_latency_ms == pytest.approx(100.0)


def test_plan_estimates_sum_step_values() -> None:
    plan = ExecutionPlanner().generate_execution_plan(_intent(IntentType.RECOMMEND), _context(), require_grounding=True)

    assert plan.estimated_latency_ms == pytest.approx(200.0 + 100.0 + 50.0)
    assert plan.estimated_cost == pytest.approx(0.001 + 0.005 + 0.002)


@pytest.mark.parametrize("kind", list(IntentType))
@pytest.mark.parametrize("grounding", [True, False])
def test_every_intent_yields_unique_acyclic_steps(kind: IntentType, grounding: bool) -> None:
    intent = _intent(kind, products=["p1", "p2"])

    plan = ExecutionPlanner().generate_execution_plan(intent, _context(), require_grounding=grounding)

    assert plan.steps
    assert len(set(plan.step_ids)) == len(plan.step_ids)
    seen: set[str] = set()
    for step in plan.steps:
        assert set(step.dependencies) <= seen
        seen.add(step.id)
    assert can_parallelize(plan)


def test_plan_survives_camel_case_json_round_trip() -> None:
    plan = ExecutionPlanner().generate_execution_plan(
        _intent(IntentType.RECOMMEND, confidence=0.3),
        _context(),
        require_grounding=True,
    )

    encoded = plan.model_dump_json(by_alias=True)
    restored = ExecutionPlan.model_validate_json(encoded)

    assert '"retryPolicy"' in encoded
    assert '"fallbackPlan"' in encoded
    assert restored.model_dump() == plan.model_dump()


def test_parsed_intent_survives_camel_case_json_round_trip() -> None:
    intent = ParsedIntent(
        intent=IntentType.PURCHASE,
        confidence=0.82,
        entities=IntentEntities(
            products=["Acme X200"],
            brands=["Acme"],
            price_range=PriceRange(min=300.0, max=600.0),
            quantity=2,
        ),
        context=IntentContext(urgency=Urgency.HIGH, complexity=Complexity.SIMPLE, user_type=UserType.VIP),
        reasoning="Explicit request to buy two units.",
    )

    encoded = intent.model_dump_json(by_alias=True)
    restored = ParsedIntent.model_validate_json(encoded)

    assert '"priceRange"' in encoded
    assert '"userType"' in encoded
    assert restored == intent


def test_plan_model_rejects_dependency_on_later_or_unknown_step() -> None:
    first = ExecutionStep(id="a", type=StepType.RETRIEVAL, tool="t", timeout_seconds=1.0, dependencies=["b"])
    second = ExecutionStep(id="b", type=StepType.RETRIEVAL, tool="t", timeout_seconds=1.0)

    with pytest.raises(ValidationError):
        ExecutionPlan(plan_id="p", intent=IntentType.SEARCH, steps=[first, second])


def test_plan_model_rejects_duplicate_ids() -> None:
    step = ExecutionStep(id="a", type=StepType.RETRIEVAL, tool="t", timeout_seconds=1.0)

    with pytest.raises(ValidationError):
        ExecutionPlan(plan_id="p", intent=IntentType.SEARCH, steps=[step, step])


def test_cyclic_templates_degrade_to_minimal_plan(monkeypatch: pytest.MonkeyPatch) -> None:
    planner = ExecutionPlanner()

    def _cyclic(intent, context):
        return [
            StepTemplate("a", StepType.RETRIEVAL, SEMANTIC_RETRIEVAL, 1.0, 0, 0.0, dependencies=("b",)),
            StepTemplate("b", StepType.RETRIEVAL, SEMANTIC_RETRIEVAL, 1.0, 0, 0.0, dependencies=("a",)),
        ]

    monkeypatch.setitem(planner._templates, IntentType.SEARCH, _cyclic)

    plan = planner.generate_execution_plan(_intent(IntentType.SEARCH), _context())

    assert plan.step_ids == ["minimal_search"]
    assert plan.steps[0].tool == SEMANTIC_RETRIEVAL
