from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _clamp_unit(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return max(0.0, min(1.0, float(value)))
    return value


Score = Annotated[float, BeforeValidator(_clamp_unit)]


class ClaimType(str, Enum):
    PRODUCT_FEATURE = "product_feature"
    PRICE = "price"
    AVAILABILITY = "availability"
    SPECIFICATION = "specification"
    GENERAL_FACT = "general_fact"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EvidenceDocument(_CamelModel):
    """A retrieved document snippet offered as evidence for a composed answer."""

    document_id: str
    snippet: str
    relevance_score: Score = Field(0.0, ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    source_uri: str | None = None


class Evidence(_CamelModel):
    document_id: str
    snippet: str
    relevance_score: Score = Field(0.0, ge=0.0, le=1.0)
    exact_match: bool = False
    semantic_match: bool = False


class FactualClaim(_CamelModel):
    text: str
    claim_type: ClaimType = ClaimType.GENERAL_FACT
    confidence: Score = Field(0.5, ge=0.0, le=1.0)
    supporting_evidence: list[Evidence] = Field(default_factory=list)
    validated: bool = False
    validation_score: Score = Field(0.0, ge=0.0, le=1.0)


class Citation(_CamelModel):
    document_id: str
    citation_text: str
    title: str
    source_uri: str | None = None
    relevance_score: Score = Field(0.0, ge=0.0, le=1.0)
    grounding_pass: bool = False


class HallucinationReport(_CamelModel):
    detected: bool = False
    confidence: Score = Field(0.0, ge=0.0, le=1.0)
    indicators: list[str] = Field(default_factory=list)


class ClaimValidationDetail(_CamelModel):
    claim: str
    status: str
    evidence_count: int = 0
    reasoning: str = ""


class GroundingValidationResult(_CamelModel):
    is_grounded: bool
    grounding_score: Score = Field(0.0, ge=0.0, le=1.0)
    claims: list[FactualClaim] = Field(default_factory=list)
    validated_claims: int = Field(0, ge=0)
    total_claims: int = Field(0, ge=0)
    citations: list[Citation] = Field(default_factory=list)
    hallucination: HallucinationReport = Field(default_factory=HallucinationReport)
    confidence: Score = Field(0.0, ge=0.0, le=1.0)
    validation_details: list[ClaimValidationDetail] = Field(default_factory=list)


class QualityScore(_CamelModel):
    overall: Score = Field(0.0, ge=0.0, le=1.0)
    factual_accuracy: Score = Field(0.0, ge=0.0, le=1.0)
    relevance: Score = Field(0.0, ge=0.0, le=1.0)
    completeness: Score = Field(0.0, ge=0.0, le=1.0)
    clarity: Score = Field(0.0, ge=0.0, le=1.0)
    groundedness: Score = Field(0.0, ge=0.0, le=1.0)
    hallucination_penalty_applied: bool = False
    recommendations: list[str] = Field(default_factory=list)


class ResponseQualityAssessment(_CamelModel):
    response: str
    grounding: GroundingValidationResult
    quality: QualityScore
    citations: list[Citation] = Field(default_factory=list)
    fallback_recommended: bool = False
    improvement_suggestions: list[str] = Field(default_factory=list)


class FallbackReason(str, Enum):
    LOW_GROUNDING = "low_grounding"
    LOW_QUALITY = "low_quality"
    HALLUCINATION = "hallucination"
    EXECUTION_FAILED = "execution_failed"
    NO_EVIDENCE = "no_evidence"
    EMERGENCY = "emergency"


class FallbackResponse(_CamelModel):
    answer: str
    reason: FallbackReason
    confidence: Score = Field(0.0, ge=0.0, le=1.0)
    citations: list[Citation] = Field(default_factory=list)
