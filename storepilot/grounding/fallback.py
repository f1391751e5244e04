from __future__ import annotations

from typing import Sequence

from ..core.config import GroundingSettings
from ..core.logging import get_logger
from ..core.metrics import increment_fallback_response
from ..schemas.grounding import EvidenceDocument, FallbackReason, FallbackResponse
from .text import build_citation

__all__ = ["FallbackResponder", "REASON_MESSAGES"]

logger = get_logger(name=__name__)

REASON_MESSAGES: dict[FallbackReason, str] = {
    FallbackReason.LOW_GROUNDING: "I could not fully verify the answer against the available sources.",
    FallbackReason.LOW_QUALITY: "I could not produce a complete answer with confidence.",
    FallbackReason.HALLUCINATION: "Parts of the answer could not be confirmed by the available sources.",
    FallbackReason.EXECUTION_FAILED: "Some of the information services did not respond in time.",
    FallbackReason.NO_EVIDENCE: "No supporting sources were found for this request.",
    FallbackReason.EMERGENCY: "The assistant is temporarily unable to complete this request.",
}


class FallbackResponder:
    """Builds safe, citation-only answers when a composed response cannot be trusted."""

    def __init__(self, settings: GroundingSettings | None = None) -> None:
        self._settings = settings or GroundingSettings()

    def create_fallback_response(
        self,
        query: str,
        evidence_documents: Sequence[EvidenceDocument],
        reason: FallbackReason | str,
    ) -> FallbackResponse:
        reason = self._coerce_reason(reason)
        message = REASON_MESSAGES[reason]
        increment_fallback_response(reason=reason.value)

        ranked = sorted(evidence_documents, key=lambda document: document.relevance_score, reverse=True)
        top = ranked[: self._settings.max_fallback_citations]
        if not top:
            logger.info("fallback_response_created", reason=reason.value, citations=0)
            return FallbackResponse(
                answer=(
                    "I apologize, but I don't have enough information to provide a reliable answer to your "
                    f'question about "{query}". Could you please provide more details or try rephrasing '
                    "your question?"
                ),
                reason=reason,
                confidence=self._settings.apology_confidence,
            )

        citations = [
            build_citation(
                document,
                relevance=document.relevance_score,
                min_relevance=self._settings.min_citation_relevance,
            )
            for document in top
        ]
        markers = " ".join(citation.citation_text for citation in citations)
        logger.info("fallback_response_created", reason=reason.value, citations=len(citations))
        return FallbackResponse(
            answer=(
                f'I found some relevant information about your query "{query}", but to ensure accuracy, '
                f"I recommend reviewing the source materials directly. {markers}. {message}"
            ),
            reason=reason,
            confidence=self._settings.fallback_confidence,
            citations=citations,
        )

    def emergency_response(self, query: str) -> FallbackResponse:
        increment_fallback_response(reason=FallbackReason.EMERGENCY.value)
        logger.warning("emergency_response_created")
        return FallbackResponse(
            answer=(
                f'I\'m sorry, I wasn\'t able to answer "{query}" right now. '
                f"{REASON_MESSAGES[FallbackReason.EMERGENCY]} Please try again in a moment."
            ),
            reason=FallbackReason.EMERGENCY,
            confidence=self._settings.emergency_confidence,
        )

    @staticmethod
    def _coerce_reason(reason: FallbackReason | str) -> FallbackReason:
        if isinstance(reason, FallbackReason):
            return reason
        try:
            return FallbackReason(str(reason).strip().lower())
        except ValueError:
            return FallbackReason.LOW_QUALITY
