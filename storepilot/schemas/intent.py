from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class IntentType(str, Enum):
    SEARCH = "search"
    RECOMMEND = "recommend"
    PURCHASE = "purchase"
    QUESTION = "question"
    COMPARE = "compare"
    SUPPORT = "support"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class UserType(str, Enum):
    NEW = "new"
    RETURNING = "returning"
    VIP = "vip"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class PriceRange(_CamelModel):
    min: float | None = None
    max: float | None = None


class IntentEntities(_CamelModel):
    products: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    price_range: PriceRange | None = None
    brands: list[str] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)
    quantity: int | None = Field(default=None, ge=0)


class IntentContext(_CamelModel):
    urgency: Urgency = Urgency.MEDIUM
    complexity: Complexity = Complexity.MODERATE
    user_type: UserType = UserType.RETURNING


class ParsedIntent(_CamelModel):
    """Structured, confidence-scored reading of one user query."""

    intent: IntentType
    confidence: float = Field(..., ge=0.0, le=1.0)
    entities: IntentEntities = Field(default_factory=IntentEntities)
    context: IntentContext = Field(default_factory=IntentContext)
    reasoning: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return max(0.0, min(1.0, float(value)))
        return value


class SessionTurn(_CamelModel):
    role: str
    content: str


class PlanConstraints(_CamelModel):
    max_latency_ms: float | None = Field(default=None, gt=0.0)
    max_cost: float | None = Field(default=None, ge=0.0)
    require_grounding: bool = False


class PlanningContext(_CamelModel):
    """Per-turn caller context shared by the classifier, planner and coordinator."""

    query: str = ""
    merchant_id: str = "default"
    user_id: str | None = None
    session_id: str | None = None
    session_history: list[SessionTurn] = Field(default_factory=list)
    user_context: dict[str, Any] = Field(default_factory=dict)
    available_tools: list[str] = Field(default_factory=list)
    constraints: PlanConstraints = Field(default_factory=PlanConstraints)

    def caller_parameters(self) -> dict[str, Any]:
        params: dict[str, Any] = {"merchant_id": self.merchant_id, "query": self.query}
        if self.user_id is not None:
            params["user_id"] = self.user_id
        if self.session_id is not None:
            params["session_id"] = self.session_id
        return params
