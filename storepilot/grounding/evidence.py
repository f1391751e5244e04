from __future__ import annotations

from typing import Any, Iterable, Mapping

from ..core.logging import get_logger
from ..schemas.grounding import EvidenceDocument
from ..schemas.plan import CoordinatedResult, ExecutionPlan, StepType

__all__ = ["collect_evidence"]

logger = get_logger(name=__name__)

_ID_KEYS = ("id", "document_id", "documentId", "sku")
_SNIPPET_KEYS = ("snippet", "content", "text", "description")
_SCORE_KEYS = ("score", "relevance", "relevance_score", "relevanceScore")
_URI_KEYS = ("source_uri", "sourceUri", "url")


def collect_evidence(result: CoordinatedResult, plan: ExecutionPlan, *, limit: int = 10) -> list[EvidenceDocument]:
    """Gather evidence documents from the outputs of successful retrieval steps.

    Documents seen more than once keep their highest relevance. The result is sorted by
    relevance and capped at ``limit``.
    """

    collected: dict[str, EvidenceDocument] = {}
    for outcome, output in result.successful_outputs():
        step = plan.get_step(outcome.step_id)
        if step is None or step.type is not StepType.RETRIEVAL:
            continue
        for document in _documents_from_output(outcome.step_id, output):
            current = collected.get(document.document_id)
            if current is None or document.relevance_score > current.relevance_score:
                collected[document.document_id] = document

    ranked = sorted(collected.values(), key=lambda document: document.relevance_score, reverse=True)
    logger.debug("evidence_collected", plan_id=plan.plan_id, documents=len(ranked), limit=limit)
    return ranked[: max(0, limit)]


def _documents_from_output(step_id: str, output: Any) -> Iterable[EvidenceDocument]:
    if isinstance(output, list):
        items: Iterable[Any] = output
    elif isinstance(output, Mapping):
        items = output.get("results") or output.get("documents") or []
        if not items and isinstance(output.get("context"), str):
            document = _knowledge_document(step_id, output)
            return [document] if document is not None else []
    else:
        return []

    documents: list[EvidenceDocument] = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            continue
        document = _document_from_item(step_id, index, item)
        if document is not None:
            documents.append(document)
    return documents


def _document_from_item(step_id: str, index: int, item: Mapping[str, Any]) -> EvidenceDocument | None:
    snippet = _first(item, _SNIPPET_KEYS)
    if not snippet:
        return None
    identifier = _first(item, _ID_KEYS) or f"{step_id}:{index}"
    raw_metadata = item.get("metadata")
    metadata = dict(raw_metadata) if isinstance(raw_metadata, Mapping) else {}
    if "sku" in item and "sku" not in metadata:
        metadata["sku"] = item["sku"]
    for key in ("title", "name"):
        if key in item and key not in metadata:
            metadata[key] = item[key]
    return EvidenceDocument(
        document_id=str(identifier),
        snippet=str(snippet),
        relevance_score=_score(item),
        metadata=metadata,
        source_uri=_first(item, _URI_KEYS),
    )


def _knowledge_document(step_id: str, output: Mapping[str, Any]) -> EvidenceDocument | None:
    context = str(output.get("context") or "").strip()
    if not context:
        return None
    sources = output.get("sources") or []
    if isinstance(sources, str):
        sources = [sources]
    elif not isinstance(sources, (list, tuple)):
        sources = []
    return EvidenceDocument(
        document_id=f"knowledge:{step_id}",
        snippet=context,
        relevance_score=_score(output),
        metadata={"sources": [str(source) for source in sources]} if sources else {},
    )


def _first(item: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _score(item: Mapping[str, Any]) -> float:
    for key in _SCORE_KEYS:
        value = item.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return min(1.0, max(0.0, float(value)))
    return 0.0
