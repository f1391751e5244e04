from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping

from ..core.config import IntentSettings
from ..core.logging import get_logger
from ..core.metrics import record_intent_classification
from ..schemas.intent import IntentContext, IntentEntities, IntentType, ParsedIntent, PlanningContext
from ..services.llm import TextGenerator
from ..tools.base import ToolInvoker
from .intent_contract import IntentParseError, parse_intent_payload

__all__ = ["IntentClassifier", "KnowledgeContext", "KNOWLEDGE_TOOL"]

logger = get_logger(name=__name__)

KNOWLEDGE_TOOL = "knowledgeContext"

_INTENT_GUIDE = """Possible intents:
- search: looking for specific products
- recommend: wants product suggestions
- purchase: wants to buy or check out
- question: asking about policies, shipping or general information
- compare: comparing two or more products
- support: needs help with an order or the store

Respond with JSON only, in this format:
{
  "intent": "search|recommend|purchase|question|compare|support",
  "confidence": 0.0,
  "entities": {
    "products": [], "categories": [], "priceRange": {"min": null, "max": null},
    "brands": [], "features": [], "quantity": null
  },
  "context": {"urgency": "low|medium|high", "complexity": "simple|moderate|complex", "userType": "new|returning|vip"},
  "reasoning": "short explanation"
}"""


@dataclass(slots=True)
class KnowledgeContext:
    context: str
    relevance: float
    sources: list[str] = field(default_factory=list)

    @classmethod
    def from_result(cls, payload: Any) -> "KnowledgeContext | None":
        if not isinstance(payload, Mapping):
            return None
        text = payload.get("context") or payload.get("answer") or ""
        try:
            relevance = float(payload.get("relevance", payload.get("confidence", 0.0)) or 0.0)
        except (TypeError, ValueError):
            relevance = 0.0
        sources = payload.get("sources") or []
        return cls(
            context=str(text),
            relevance=max(0.0, min(1.0, relevance)),
            sources=[str(source) for source in sources] if isinstance(sources, list) else [],
        )


class IntentClassifier:
    """Turns a query into a confidence-scored ParsedIntent without ever raising."""

    def __init__(
        self,
        generator: TextGenerator,
        *,
        knowledge: ToolInvoker | None = None,
        settings: IntentSettings | None = None,
    ) -> None:
        self._generator = generator
        self._knowledge = knowledge
        self._settings = settings or IntentSettings()

    async def parse_intent(self, query: str, context: PlanningContext | None = None) -> ParsedIntent:
        context = context or PlanningContext(query=query)
        first = await self._classify(query, context)
        if isinstance(first, IntentParseError):
            logger.warning(
                "intent_parse_failed",
                reason=first.reason,
                detail=first.detail,
                merchant_id=context.merchant_id,
            )
            fallback = self._fallback_intent(first)
            record_intent_classification(intent=fallback.intent.value, source="fallback")
            return fallback

        if not self._needs_disambiguation(first):
            record_intent_classification(intent=first.intent.value, source="model")
            return first

        knowledge = await self._additional_context(query, context)
        if knowledge is None or not knowledge.context.strip() or knowledge.relevance <= self._settings.context_min_relevance:
            record_intent_classification(intent=first.intent.value, source="model")
            return first

        second = await self._classify(query, context, knowledge=knowledge)
        if isinstance(second, IntentParseError):
            logger.info("intent_reclassification_unusable", reason=second.reason)
            record_intent_classification(intent=first.intent.value, source="model")
            return first

        chosen = second if second.confidence > first.confidence else first
        source = "context" if chosen is second else "model"
        logger.info(
            "intent_reclassified",
            first_intent=first.intent.value,
            first_confidence=first.confidence,
            second_intent=second.intent.value,
            second_confidence=second.confidence,
            chosen=source,
        )
        record_intent_classification(intent=chosen.intent.value, source=source)
        return chosen

    def _needs_disambiguation(self, intent: ParsedIntent) -> bool:
        return intent.intent is IntentType.QUESTION or intent.confidence < self._settings.confidence_threshold

    async def _classify(
        self,
        query: str,
        context: PlanningContext,
        *,
        knowledge: KnowledgeContext | None = None,
    ) -> ParsedIntent | IntentParseError:
        prompt = self._build_prompt(query, context, knowledge=knowledge)
        try:
            raw = await self._generator.generate(prompt, system_prompt=self._settings.system_prompt, temperature=0.0)
        except Exception as exc:
            return IntentParseError(reason="collaborator_error", detail=type(exc).__name__)
        return parse_intent_payload(raw, default_confidence=self._settings.default_confidence)

    async def _additional_context(self, query: str, context: PlanningContext) -> KnowledgeContext | None:
        if self._knowledge is None:
            return None
        parameters = {"query": query, "merchant_id": context.merchant_id, "context_type": "general"}
        try:
            result = await self._knowledge.invoke(
                KNOWLEDGE_TOOL,
                parameters,
                timeout=self._settings.knowledge_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("intent_knowledge_lookup_failed", error=str(exc))
            return None
        if not result.success:
            logger.info("intent_knowledge_unavailable", error=result.error)
            return None
        return KnowledgeContext.from_result(result.result)

    def _build_prompt(
        self,
        query: str,
        context: PlanningContext,
        *,
        knowledge: KnowledgeContext | None = None,
    ) -> str:
        window = self._settings.session_history_window
        history = context.session_history[-window:] if window else []
        lines = [
            "Analyze this shopping query and classify the user's intent.",
            f"Query: {json.dumps(query)}",
            f"Merchant: {context.merchant_id}",
        ]
        if history:
            lines.append("Recent conversation:")
            lines.extend(f"- {turn.role}: {turn.content}" for turn in history)
        if knowledge is not None:
            lines.append(f"Additional context: {knowledge.context}")
            if knowledge.sources:
                lines.append(f"Context sources: {', '.join(knowledge.sources)}")
        lines.append("")
        lines.append(_INTENT_GUIDE)
        return "\n".join(lines)

    def _fallback_intent(self, error: IntentParseError) -> ParsedIntent:
        return ParsedIntent(
            intent=IntentType.QUESTION,
            confidence=self._settings.fallback_confidence,
            entities=IntentEntities(),
            context=IntentContext(),
            reasoning=f"Fallback intent due to parsing error ({error.reason})",
        )
