from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from ..core.config import GroundingSettings
from ..core.logging import get_logger
from ..core.metrics import record_grounding_verdict
from ..schemas.grounding import (
    Citation,
    ClaimValidationDetail,
    EvidenceDocument,
    FactualClaim,
    GroundingValidationResult,
    HallucinationReport,
    QualityScore,
    ResponseQualityAssessment,
)
from .claims import ClaimExtractor, PatternClaimExtractor
from .matching import EvidenceMatcher, LexicalEvidenceMatcher
from .text import build_citation, has_specific_info, jaccard, referenced_documents, split_sentences, tokenize

__all__ = ["GroundingValidator", "HEDGING_PATTERNS"]

logger = get_logger(name=__name__)

HEDGING_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bI\s+think\b|\bI\s+believe\b|\bprobably\b|\bmight\s+be\b|\bcould\s+be\b", re.IGNORECASE),
    re.compile(r"\bbased\s+on\s+my\s+knowledge\b|\bfrom\s+what\s+I\s+know\b", re.IGNORECASE),
    re.compile(r"\btypically\b|\busually\b|\bgenerally\b|\boften\b", re.IGNORECASE),
    re.compile(r"\bit\s+seems\b|\bappears\s+to\s+be\b|\blooks\s+like\b", re.IGNORECASE),
)

_STRUCTURE_WORDS = re.compile(
    r"\b(?:first|second|third|also|additionally|furthermore|however|therefore)\b",
    re.IGNORECASE,
)

_WEIGHTS = {
    "factual_accuracy": 0.3,
    "relevance": 0.2,
    "completeness": 0.2,
    "clarity": 0.1,
    "groundedness": 0.2,
}
_HALLUCINATION_PENALTY = 0.7


@dataclass(slots=True)
class _ClaimScore:
    claim: FactualClaim
    exact: int
    semantic: int


class GroundingValidator:
    """Validates a composed answer against the evidence that was actually retrieved."""

    def __init__(
        self,
        settings: GroundingSettings | None = None,
        *,
        extractor: ClaimExtractor | None = None,
        matcher: EvidenceMatcher | None = None,
    ) -> None:
        self._settings = settings or GroundingSettings()
        self._extractor = extractor or PatternClaimExtractor(max_claims=self._settings.max_claims_per_response)
        self._matcher = matcher or LexicalEvidenceMatcher(
            semantic_threshold=self._settings.semantic_similarity_threshold,
            key_phrase_overlap=self._settings.key_phrase_overlap,
        )

    @property
    def settings(self) -> GroundingSettings:
        return self._settings

    def validate_response_grounding(
        self,
        response_text: str,
        evidence_documents: Sequence[EvidenceDocument],
        original_query: str,
    ) -> ResponseQualityAssessment:
        """Score grounding, hallucination risk and overall quality; always returns an assessment."""
        try:
            assessment = self._assess(response_text or "", list(evidence_documents), original_query or "")
        except Exception as exc:
            logger.exception("grounding_validation_crashed", error=str(exc))
            assessment = self._unverifiable(response_text or "")
        record_grounding_verdict(
            grounded=assessment.grounding.is_grounded,
            hallucination=assessment.grounding.hallucination.detected,
            score=assessment.grounding.grounding_score,
        )
        logger.info(
            "grounding_evaluated",
            grounded=assessment.grounding.is_grounded,
            grounding_score=round(assessment.grounding.grounding_score, 4),
            claims=assessment.grounding.total_claims,
            validated=assessment.grounding.validated_claims,
            hallucination=assessment.grounding.hallucination.detected,
            overall=round(assessment.quality.overall, 4),
            fallback=assessment.fallback_recommended,
        )
        return assessment

    def _assess(
        self,
        response: str,
        documents: list[EvidenceDocument],
        query: str,
    ) -> ResponseQualityAssessment:
        grounding = self._validate_grounding(response, documents)
        effective = self._effective_grounding(grounding)
        quality = self._score_quality(response, documents, query, grounding, effective)

        fallback = (
            effective < self._settings.fallback_threshold
            or quality.overall < self._settings.fallback_threshold
            or grounding.hallucination.detected
        )
        return ResponseQualityAssessment(
            response=response,
            grounding=grounding,
            quality=quality,
            citations=grounding.citations,
            fallback_recommended=fallback,
            improvement_suggestions=self._improvement_suggestions(grounding),
        )

    def _validate_grounding(self, response: str, documents: list[EvidenceDocument]) -> GroundingValidationResult:
        scored = [self._validate_claim(claim, documents) for claim in self._extractor.extract(response)]
        claims = [item.claim for item in scored]
        total = len(claims)
        validated = sum(1 for claim in claims if claim.validated)

        if total:
            score = validated / total
            is_grounded = score >= self._settings.min_grounding_score
            average = sum(claim.validation_score for claim in claims) / total
            confidence = average * 0.6 + score * 0.4
        else:
            score = 0.0
            is_grounded = self._settings.claimless_is_grounded
            confidence = 1.0 if is_grounded else 0.0

        citations = self._citations(claims, documents)
        hallucination = self._detect_hallucination(response, total, validated, citations)
        return GroundingValidationResult(
            is_grounded=is_grounded,
            grounding_score=score,
            claims=claims,
            validated_claims=validated,
            total_claims=total,
            citations=citations,
            hallucination=hallucination,
            confidence=confidence,
            validation_details=[self._detail(item) for item in scored],
        )

    def _validate_claim(self, claim: FactualClaim, documents: list[EvidenceDocument]) -> _ClaimScore:
        evidence = self._matcher.match(claim.text, documents)
        exact = [item for item in evidence if item.exact_match]
        semantic_only = [item for item in evidence if item.semantic_match and not item.exact_match]

        score = 0.0
        if exact:
            score += 0.8 + min(0.1 * len(exact), 0.2)
        if semantic_only:
            average = sum(item.relevance_score for item in semantic_only) / len(semantic_only)
            score += average * 0.6
        score = max(0.0, min(1.0, score))

        updated = claim.model_copy(
            update={
                "supporting_evidence": evidence,
                "validated": score >= self._settings.min_citation_relevance,
                "validation_score": score,
            }
        )
        return _ClaimScore(claim=updated, exact=len(exact), semantic=len(semantic_only))

    def _detail(self, item: _ClaimScore) -> ClaimValidationDetail:
        claim = item.claim
        if claim.validated:
            reasoning = f"Supported by {item.exact} exact and {item.semantic} semantic evidence matches"
        elif claim.supporting_evidence:
            reasoning = f"Evidence too weak to confirm the claim (score {claim.validation_score:.2f})"
        else:
            reasoning = "No supporting evidence found"
        return ClaimValidationDetail(
            claim=claim.text,
            status="validated" if claim.validated else "unvalidated",
            evidence_count=len(claim.supporting_evidence),
            reasoning=reasoning,
        )

    def _citations(self, claims: list[FactualClaim], documents: list[EvidenceDocument]) -> list[Citation]:
        by_id = {document.document_id: document for document in documents}
        citations: dict[str, Citation] = {}
        for claim in claims:
            if not claim.validated:
                continue
            for evidence in claim.supporting_evidence:
                document = by_id.get(evidence.document_id)
                if document is None or evidence.document_id in citations:
                    continue
                citations[evidence.document_id] = build_citation(
                    document,
                    relevance=evidence.relevance_score,
                    min_relevance=self._settings.min_citation_relevance,
                )
        return list(citations.values())

    def _detect_hallucination(
        self,
        response: str,
        total: int,
        validated: int,
        citations: list[Citation],
    ) -> HallucinationReport:
        if not self._settings.enable_hallucination_detection:
            return HallucinationReport()

        score = 0.0
        indicators: list[str] = []
        for pattern in HEDGING_PATTERNS:
            for match in pattern.finditer(response):
                score += 0.2
                indicators.append(f"Hedging language: '{match.group(0)}'")

        ungrounded = total - validated
        if total and ungrounded:
            score += ungrounded / total * 0.5
            indicators.append(f"{ungrounded} ungrounded claims detected")

        if has_specific_info(response) and not citations:
            score += 0.3
            indicators.append("Specific information provided without citations")

        # Strictly above the cutoff: two hedges alone (0.4) are not flagged
        return HallucinationReport(
            detected=score > self._settings.hallucination_cutoff,
            confidence=min(score, 1.0),
            indicators=indicators,
        )

    def _effective_grounding(self, grounding: GroundingValidationResult) -> float:
        if grounding.total_claims:
            return grounding.grounding_score
        return 1.0 if grounding.is_grounded else 0.0

    def _score_quality(
        self,
        response: str,
        documents: list[EvidenceDocument],
        query: str,
        grounding: GroundingValidationResult,
        effective: float,
    ) -> QualityScore:
        relevance = jaccard(tokenize(response), tokenize(query))
        completeness = (
            min(len(response) / 500.0, 1.0) * 0.4
            + min(referenced_documents(response, documents) / 3.0, 1.0) * 0.6
        )
        clarity = self._clarity(response)
        dimensions = {
            "factual_accuracy": effective,
            "relevance": relevance,
            "completeness": completeness,
            "clarity": clarity,
            "groundedness": effective,
        }
        overall = sum(dimensions[name] * weight for name, weight in _WEIGHTS.items())
        penalized = grounding.hallucination.detected
        if penalized:
            overall *= _HALLUCINATION_PENALTY

        recommendations: list[str] = []
        if effective < 0.8:
            recommendations.append("Improve factual grounding by citing the retrieved sources")
        if relevance < 0.7:
            recommendations.append("Address the user's query more directly")
        if completeness < 0.6:
            recommendations.append("Provide a more comprehensive answer that references the available sources")
        if clarity < 0.7:
            recommendations.append("Improve structure and sentence length for readability")
        if penalized:
            recommendations.append("Remove speculative language and unsupported claims")

        return QualityScore(
            overall=overall,
            factual_accuracy=effective,
            relevance=relevance,
            completeness=completeness,
            clarity=clarity,
            groundedness=effective,
            hallucination_penalty_applied=penalized,
            recommendations=recommendations,
        )

    @staticmethod
    def _clarity(response: str) -> float:
        sentences = split_sentences(response)
        if not sentences:
            return 0.0
        average_length = sum(len(sentence) for sentence in sentences) / len(sentences)
        length_score = 1.0 if 20 < average_length < 100 else 0.7
        structure_score = 1.0 if _STRUCTURE_WORDS.search(response) else 0.8
        return length_score * 0.6 + structure_score * 0.4

    def _improvement_suggestions(self, grounding: GroundingValidationResult) -> list[str]:
        suggestions: list[str] = []
        if not grounding.is_grounded:
            suggestions.append(
                f"Grounding score ({grounding.grounding_score:.0%}) is below target "
                f"({self._settings.min_grounding_score:.0%})"
            )
        if grounding.hallucination.detected:
            suggestions.append("Potential hallucination detected - review response for unsupported claims")
        if grounding.total_claims and not grounding.citations:
            suggestions.append("Add source citations to support factual claims")
        return suggestions

    def _unverifiable(self, response: str) -> ResponseQualityAssessment:
        grounding = GroundingValidationResult(is_grounded=False, grounding_score=0.0)
        return ResponseQualityAssessment(
            response=response,
            grounding=grounding,
            quality=QualityScore(recommendations=["Response could not be verified against evidence"]),
            fallback_recommended=True,
            improvement_suggestions=["Response could not be verified against evidence"],
        )
