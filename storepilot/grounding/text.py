from __future__ import annotations

import re
from typing import Iterable

from ..schemas.grounding import Citation, EvidenceDocument

_TOKEN_SPLIT = re.compile(r"\W+")
_SENTENCE_SPLIT = re.compile(r"[.!?]+(?=\s|$)")

PRICE_PATTERN = re.compile(r"\$[\d,]+(?:\.\d{2})?")
MEASUREMENT_PATTERN = re.compile(
    r"\b\d+(?:\.\d+)?\s*(?:inch(?:es)?|feet|foot|cm|mm|kg|lbs?|oz|gb|mb|tb)\b",
    re.IGNORECASE,
)
MODEL_PATTERN = re.compile(r"\bmodel\s+\w+", re.IGNORECASE)
VERSION_PATTERN = re.compile(r"\bversion\s+[\d.]+", re.IGNORECASE)

_SPECIFIC_INFO = (PRICE_PATTERN, MEASUREMENT_PATTERN, MODEL_PATTERN, VERSION_PATTERN)


def tokenize(text: str) -> set[str]:
    return {token for token in _TOKEN_SPLIT.split(text.lower()) if len(token) > 2}


def jaccard(left: set[str], right: set[str]) -> float:
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def split_sentences(text: str) -> list[str]:
    return [sentence.strip() for sentence in _SENTENCE_SPLIT.split(text) if sentence.strip()]


def has_specific_info(text: str) -> bool:
    return any(pattern.search(text) for pattern in _SPECIFIC_INFO)


def document_title(document: EvidenceDocument) -> str:
    metadata = document.metadata or {}
    for key in ("sku", "title", "name"):
        value = metadata.get(key)
        if value:
            return str(value)
    return f"Document {document.document_id}"


def build_citation(document: EvidenceDocument, *, relevance: float, min_relevance: float) -> Citation:
    return Citation(
        document_id=document.document_id,
        citation_text=f"[Source: {document.document_id}]",
        title=document_title(document),
        source_uri=document.source_uri,
        relevance_score=relevance,
        grounding_pass=relevance >= min_relevance,
    )


def referenced_documents(text: str, documents: Iterable[EvidenceDocument]) -> int:
    lowered = text.lower()
    count = 0
    for document in documents:
        markers = [document.document_id]
        sku = (document.metadata or {}).get("sku")
        if sku:
            markers.append(str(sku))
        if any(marker and marker.lower() in lowered for marker in markers):
            count += 1
    return count
