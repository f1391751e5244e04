from __future__ import annotations

import math
from typing import Protocol, Sequence, runtime_checkable

from ..schemas.grounding import Evidence, EvidenceDocument
from .text import jaccard, tokenize

__all__ = ["EvidenceMatcher", "LexicalEvidenceMatcher"]

_WORD_EDGES = ".,;:!?()[]\"'"


@runtime_checkable
class EvidenceMatcher(Protocol):
    def match(self, claim: str, documents: Sequence[EvidenceDocument]) -> list[Evidence]:
        ...


class LexicalEvidenceMatcher:
    """Substring / key-phrase containment for exact matches, token-set Jaccard for semantic ones."""

    def __init__(self, *, semantic_threshold: float = 0.6, key_phrase_overlap: float = 0.7) -> None:
        self._semantic_threshold = semantic_threshold
        self._key_phrase_overlap = key_phrase_overlap

    def match(self, claim: str, documents: Sequence[EvidenceDocument]) -> list[Evidence]:
        normalized = " ".join(claim.lower().split())
        claim_tokens = tokenize(claim)
        key_phrases = self._key_phrases(normalized)

        matches: list[Evidence] = []
        for document in documents:
            haystack = " ".join(document.snippet.lower().split())
            exact = bool(normalized) and (normalized in haystack or self._key_phrases_present(key_phrases, haystack))
            similarity = jaccard(claim_tokens, tokenize(document.snippet))
            semantic = similarity > self._semantic_threshold
            if not (exact or semantic):
                continue
            matches.append(
                Evidence(
                    document_id=document.document_id,
                    snippet=document.snippet,
                    relevance_score=1.0 if exact else similarity,
                    exact_match=exact,
                    semantic_match=semantic,
                )
            )
        matches.sort(key=lambda evidence: evidence.relevance_score, reverse=True)
        return matches

    @staticmethod
    def _key_phrases(normalized_claim: str) -> list[str]:
        words = (word.strip(_WORD_EDGES) for word in normalized_claim.split())
        return [word for word in words if len(word) > 3]

    def _key_phrases_present(self, key_phrases: list[str], haystack: str) -> bool:
        if not key_phrases:
            return False
        required = math.ceil(round(len(key_phrases) * self._key_phrase_overlap, 6))
        found = sum(1 for phrase in key_phrases if phrase in haystack)
        return found >= required
