from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.logging import get_logger
from ..schemas.intent import IntentContext, IntentEntities, IntentType, ParsedIntent

__all__ = [
    "IntentParseError",
    "IntentPayload",
    "extract_json_object",
    "parse_intent_payload",
]

logger = get_logger(name=__name__)


@dataclass(slots=True)
class IntentParseError:
    """Explicit failure variant of intent deserialization; returned, never raised."""

    reason: str
    raw_response: str = ""
    detail: str = ""


class _JSONNotFound(ValueError):
    pass


def _coerce_confidence(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("confidence must be numeric")
    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("confidence must be numeric") from exc
    if not math.isfinite(numeric):
        raise ValueError("confidence must be finite")
    return max(0.0, min(1.0, numeric))


class IntentPayload(BaseModel):
    """Shape a text-understanding collaborator must produce for an intent."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, populate_by_name=True)

    intent: IntentType
    confidence: float | None = Field(default=None)
    entities: IntentEntities | None = None
    context: IntentContext | None = None
    reasoning: str | None = None

    @field_validator("intent", mode="before")
    @classmethod
    def _normalize_intent(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _validate_confidence(cls, value: Any) -> float | None:
        return _coerce_confidence(value)

    @field_validator("entities", "context", mode="before")
    @classmethod
    def _require_object(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, Mapping):
            raise ValueError("must be an object")
        return value

    def to_intent(self, *, default_confidence: float) -> ParsedIntent:
        return ParsedIntent(
            intent=self.intent,
            confidence=self.confidence if self.confidence is not None else default_confidence,
            entities=self.entities or IntentEntities(),
            context=self.context or IntentContext(),
            reasoning=self.reasoning or "",
        )


def extract_json_object(text: str) -> Any:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        if stripped.lower().startswith("json"):
            stripped = stripped[4:]
        stripped = stripped.strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        start = stripped.find("{")
        end = stripped.rfind("}")
        if start == -1 or end <= start:
            raise _JSONNotFound("response did not contain a JSON object")
        return json.loads(stripped[start : end + 1])


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return "validation"
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid")
    return f"{location}: {message}" if location else message


def parse_intent_payload(text: str | None, *, default_confidence: float = 0.5) -> ParsedIntent | IntentParseError:
    """Deserialize collaborator output into a ParsedIntent or an IntentParseError."""
    if not text or not text.strip():
        return IntentParseError(reason="empty_response", raw_response=text or "")
    try:
        payload = extract_json_object(text)
    except (_JSONNotFound, json.JSONDecodeError) as exc:
        return IntentParseError(reason="invalid_json", raw_response=text, detail=str(exc))
    if not isinstance(payload, Mapping):
        return IntentParseError(reason="not_an_object", raw_response=text)
    try:
        validated = IntentPayload.model_validate(payload)
    except ValidationError as exc:
        detail = _first_error(exc)
        logger.warning("intent_contract_violation", detail=detail)
        return IntentParseError(reason="schema_violation", raw_response=text, detail=detail)
    return validated.to_intent(default_confidence=default_confidence)
