from __future__ import annotations

import pytest

from storepilot.core.config import Settings, get_settings


def test_defaults_match_documented_thresholds() -> None:
    settings = Settings()

    assert settings.intent.confidence_threshold == pytest.approx(0.7)
    assert settings.intent.fallback_confidence == pytest.approx(0.3)
    assert settings.planning.low_confidence_threshold == pytest.approx(0.6)
    assert settings.planning.nominal_latency_ms["retrieval"] == pytest.approx(200.0)
    assert settings.grounding.min_grounding_score == pytest.approx(0.85)
    assert settings.grounding.min_citation_relevance == pytest.approx(0.7)
    assert settings.grounding.max_fallback_citations == 2
    assert settings.scheduling.max_concurrency == 8
    assert settings.tools.http.enabled is False


def test_nested_values_can_be_overridden_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STOREPILOT_GROUNDING__MIN_GROUNDING_SCORE", "0.9")
    monkeypatch.setenv("STOREPILOT_SCHEDULING__MAX_CONCURRENCY", "3")
    monkeypatch.setenv("STOREPILOT_LLM__MODEL", "qwen2.5:3b")

    settings = Settings()

    assert settings.grounding.min_grounding_score == pytest.approx(0.9)
    assert settings.scheduling.max_concurrency == 3
    assert settings.llm.model == "qwen2.5:3b"


def test_get_settings_caches_defaults_and_builds_overrides() -> None:
    assert get_settings() is get_settings()

    custom = get_settings({"environment": "test", "pipeline": {"abort_on_violation": True}})

    assert custom.environment == "test"
    assert custom.pipeline.abort_on_violation is True
    assert custom is not get_settings()


def test_invalid_threshold_is_rejected() -> None:
    with pytest.raises(ValueError):
        Settings(grounding={"min_grounding_score": 1.5})
