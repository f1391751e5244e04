from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseModel):
    host: str = Field("http://localhost:11434", description="Base URL of the chat model server.")
    model: str = Field("llama3.2:1b", description="Model used for intent classification and answer composition.")
    temperature: float = Field(0.0, ge=0.0, le=1.0)
    max_output_tokens: int = Field(1024, ge=64)
    max_attempts: int = Field(2, ge=1, description="Attempts per generation before the failure is surfaced.")
    retry_backoff_seconds: float = Field(0.5, ge=0.0)


class IntentSettings(BaseModel):
    confidence_threshold: float = Field(
        0.7,
        ge=0.0,
        le=1.0,
        description="Intents below this confidence (or any 'question' intent) are re-classified with knowledge context.",
    )
    context_min_relevance: float = Field(
        0.6,
        ge=0.0,
        le=1.0,
        description="Knowledge context must be at least this relevant before it is used for re-classification.",
    )
    fallback_confidence: float = Field(0.3, ge=0.0, le=1.0)
    default_confidence: float = Field(0.5, ge=0.0, le=1.0)
    session_history_window: int = Field(3, ge=0)
    knowledge_timeout_seconds: float = Field(4.0, gt=0.0)
    system_prompt: str = Field(
        "You classify shopping assistant queries. Respond with a single JSON object describing the intent.",
    )


class PlanningSettings(BaseModel):
    low_confidence_threshold: float = Field(
        0.6,
        ge=0.0,
        le=1.0,
        description="Intents below this confidence get a fallback plan attached.",
    )
    nominal_latency_ms: dict[str, float] = Field(
        default_factory=lambda: {
            "retrieval": 200.0,
            "prediction": 100.0,
            "validation": 100.0,
            "checkout": 400.0,
            "grounding": 50.0,
        }
    )
    step_costs: dict[str, float] = Field(
        default_factory=lambda: {
            "retrieval": 0.001,
            "prediction": 0.005,
            "grounding": 0.002,
            "checkout": 0.01,
            "validation": 0.0005,
        }
    )
    grounding_timeout_seconds: float = Field(5.0, gt=0.0)
    fallback_threshold: float = Field(0.5, ge=0.0, le=1.0)
    fallback_limit: int = Field(3, ge=1)
    fallback_timeout_seconds: float = Field(2.0, gt=0.0)
    fallback_latency_ms: float = Field(100.0, ge=0.0)


class SchedulingSettings(BaseModel):
    max_concurrency: int = Field(8, ge=1)
    deadline_enabled: bool = Field(True)
    deadline_multiplier: float = Field(
        20.0,
        ge=1.0,
        description="Overall plan deadline as a multiple of the plan's estimated latency.",
    )
    min_deadline_seconds: float = Field(5.0, gt=0.0)


class GroundingSettings(BaseModel):
    min_grounding_score: float = Field(0.85, ge=0.0, le=1.0)
    min_citation_relevance: float = Field(0.7, ge=0.0, le=1.0)
    max_claims_per_response: int = Field(10, ge=1)
    enable_hallucination_detection: bool = Field(True)
    fallback_threshold: float = Field(0.6, ge=0.0, le=1.0)
    semantic_similarity_threshold: float = Field(0.6, ge=0.0, le=1.0)
    key_phrase_overlap: float = Field(0.7, ge=0.0, le=1.0)
    hallucination_cutoff: float = Field(0.4, ge=0.0)
    claimless_is_grounded: bool = Field(
        True,
        description="Treat a response with no checkable claims as grounded.",
    )
    max_fallback_citations: int = Field(2, ge=0)
    fallback_confidence: float = Field(0.4, ge=0.0, le=1.0)
    apology_confidence: float = Field(0.2, ge=0.0, le=1.0)
    emergency_confidence: float = Field(0.1, ge=0.0, le=1.0)


class HttpToolSettings(BaseModel):
    enabled: bool = Field(False)
    base_url: str = Field("http://localhost:6111", description="Base URL of the remote tool gateway.")
    invoke_path_template: str = Field(
        "/tools/{tool}/invoke",
        description="Path template for invoking a tool; '{tool}' is replaced with the tool id.",
    )
    api_key: str | None = Field(default=None)
    api_key_header: str = Field("Authorization")
    auth_scheme: str = Field("Bearer")
    timeout_seconds: float = Field(15.0, ge=0.1)
    verify_ssl: bool = Field(True)
    extra_headers: dict[str, str] = Field(default_factory=dict)
    tools: list[str] = Field(
        default_factory=list,
        description="Tool ids served by the remote gateway.",
    )


class ToolSettings(BaseModel):
    circuit_breaker_threshold: int = Field(5, ge=1, description="Consecutive failures before a tool circuit opens.")
    circuit_breaker_reset_seconds: float = Field(30.0, ge=0.0)
    http: HttpToolSettings = Field(default_factory=HttpToolSettings)  # type: ignore[arg-type]


class PipelineSettings(BaseModel):
    abort_on_violation: bool = Field(
        False,
        description="Substitute the fallback plan when plan validation reports violations.",
    )
    require_grounding: bool = Field(True)
    max_latency_ms: float = Field(5000.0, gt=0.0)
    max_cost: float = Field(0.05, ge=0.0)
    max_evidence_documents: int = Field(10, ge=1)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    metrics_port: int | None = Field(default=None, ge=1, le=65535, description="Serve /metrics on this port when set.")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    telemetry_queue_size: int = Field(1000, ge=1)


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")

    llm: LLMSettings = Field(default_factory=LLMSettings)  # type: ignore[arg-type]
    intent: IntentSettings = Field(default_factory=IntentSettings)  # type: ignore[arg-type]
    planning: PlanningSettings = Field(default_factory=PlanningSettings)  # type: ignore[arg-type]
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)  # type: ignore[arg-type]
    grounding: GroundingSettings = Field(default_factory=GroundingSettings)  # type: ignore[arg-type]
    tools: ToolSettings = Field(default_factory=ToolSettings)  # type: ignore[arg-type]
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STOREPILOT_",
        env_nested_delimiter="__",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
