from __future__ import annotations

import re
from typing import Protocol, runtime_checkable

from ..schemas.grounding import ClaimType, FactualClaim
from .text import MEASUREMENT_PATTERN, PRICE_PATTERN, has_specific_info, split_sentences

__all__ = ["ClaimExtractor", "PatternClaimExtractor", "SUBJECTIVE_PATTERN"]

SUBJECTIVE_PATTERN = re.compile(
    r"\b(?:I\s+think|I\s+believe|in\s+my\s+opinion|personally|I\s+feel|I\s+would\s+say)\b",
    re.IGNORECASE,
)

CLAIM_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(?:has|features?|includes?|contains?|offers?)\s+[^.!?]+", re.IGNORECASE),
    re.compile(r"\b(?:costs?|priced?\s+at|sells?\s+for)\b[^.!?]*|\$[\d,]+(?:\.\d{2})?", re.IGNORECASE),
    re.compile(r"\b(?:available|in\s+stock|out\s+of\s+stock|discontinued)\b", re.IGNORECASE),
    MEASUREMENT_PATTERN,
    re.compile(r"\b(?:rated|reviewed|scored)\s+[\d.]+(?:\s*(?:out\s+of|/)\s*[\d.]+)?", re.IGNORECASE),
)

_PRICE_WORDS = re.compile(r"\b(?:price[sd]?|costs?|expensive|cheap)\b", re.IGNORECASE)
_AVAILABILITY_WORDS = re.compile(r"\b(?:available|availability|stock|inventory|discontinued)\b", re.IGNORECASE)
_FEATURE_WORDS = re.compile(r"\b(?:features?|includes?|has|contains?|offers?)\b", re.IGNORECASE)
_TENTATIVE_WORDS = re.compile(r"\b(?:maybe|perhaps|possibly|might|could)\b", re.IGNORECASE)
_ASSERTIVE_WORDS = re.compile(r"\b(?:is|are|has|have|contains?|includes?)\b", re.IGNORECASE)
_EDGE_NOISE = re.compile(r"^[^\w$]+|[^\w]+$")

_MIN_CLAIM_LENGTH = 10
_MAX_CLAIM_LENGTH = 200


@runtime_checkable
class ClaimExtractor(Protocol):
    def extract(self, text: str) -> list[FactualClaim]:
        ...


class PatternClaimExtractor:
    """Extracts checkable statements with fixed regular expressions."""

    def __init__(self, *, max_claims: int = 10) -> None:
        self._max_claims = max(1, max_claims)

    def extract(self, text: str) -> list[FactualClaim]:
        candidates: list[str] = []
        for sentence in split_sentences(text):
            if SUBJECTIVE_PATTERN.search(sentence):
                continue
            for pattern in CLAIM_PATTERNS:
                for match in pattern.finditer(sentence):
                    cleaned = self._clean(match.group(0))
                    if _MIN_CLAIM_LENGTH < len(cleaned) < _MAX_CLAIM_LENGTH:
                        candidates.append(cleaned)
            if has_specific_info(sentence):
                cleaned = self._clean(sentence)
                if len(cleaned) > _MIN_CLAIM_LENGTH:
                    candidates.append(cleaned)

        claims: list[FactualClaim] = []
        seen: set[str] = set()
        for candidate in candidates:
            key = " ".join(candidate.lower().split())
            if key in seen:
                continue
            seen.add(key)
            claims.append(
                FactualClaim(
                    text=candidate,
                    claim_type=self.classify(candidate),
                    confidence=self.estimate_confidence(candidate),
                )
            )
            if len(claims) >= self._max_claims:
                break
        return claims

    @staticmethod
    def classify(claim: str) -> ClaimType:
        if PRICE_PATTERN.search(claim) or _PRICE_WORDS.search(claim):
            return ClaimType.PRICE
        if _AVAILABILITY_WORDS.search(claim):
            return ClaimType.AVAILABILITY
        if MEASUREMENT_PATTERN.search(claim):
            return ClaimType.SPECIFICATION
        if _FEATURE_WORDS.search(claim):
            return ClaimType.PRODUCT_FEATURE
        return ClaimType.GENERAL_FACT

    @staticmethod
    def estimate_confidence(claim: str) -> float:
        confidence = 0.5
        if has_specific_info(claim):
            confidence += 0.3
        if _TENTATIVE_WORDS.search(claim):
            confidence -= 0.2
        if _ASSERTIVE_WORDS.search(claim):
            confidence += 0.2
        return max(0.1, min(1.0, confidence))

    @staticmethod
    def _clean(text: str) -> str:
        return _EDGE_NOISE.sub("", text.strip())
