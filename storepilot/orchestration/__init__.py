"""
Orchestration Package

Components that turn a shopper query into executed tool calls:
- LLM-backed intent classification with a strict JSON contract
- Intent-specific execution planning and plan validation
- Dependency-aware, deadline-bounded tool coordination
"""

from .coordinator import ToolCoordinator, backoff_delay
from .intent import KNOWLEDGE_TOOL, IntentClassifier, KnowledgeContext
from .intent_contract import IntentParseError, IntentPayload, extract_json_object, parse_intent_payload
from .plan_validator import PlanValidator, can_parallelize, critical_path_latency, estimate_cost, validate_plan
from .planner import ExecutionPlanner, StepTemplate

__all__ = [
    "ExecutionPlanner",
    "IntentClassifier",
    "IntentParseError",
    "IntentPayload",
    "KNOWLEDGE_TOOL",
    "KnowledgeContext",
    "PlanValidator",
    "StepTemplate",
    "ToolCoordinator",
    "backoff_delay",
    "can_parallelize",
    "critical_path_latency",
    "estimate_cost",
    "extract_json_object",
    "parse_intent_payload",
    "validate_plan",
]
