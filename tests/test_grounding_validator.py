from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from storepilot.core.config import GroundingSettings
from storepilot.grounding.claims import PatternClaimExtractor
from storepilot.grounding.matching import LexicalEvidenceMatcher
from storepilot.grounding.validator import GroundingValidator
from storepilot.schemas.grounding import ClaimType, EvidenceDocument

GROUNDED_ANSWER = "The Acme X200 has 16GB RAM and costs $499."


def _documents() -> list[EvidenceDocument]:
    return [
        EvidenceDocument(
            document_id="doc-1",
            snippet="The Acme X200 has 16GB RAM and costs $499 at launch.",
            relevance_score=0.92,
            metadata={"sku": "X200", "title": "Acme X200 laptop"},
        ),
        EvidenceDocument(document_id="doc-2", snippet="Shipping is free on orders over $50.", relevance_score=0.4),
    ]


def test_extractor_skips_subjective_sentences_and_dedupes() -> None:
    extractor = PatternClaimExtractor()

    claims = extractor.extract("I think it is lovely. " + GROUNDED_ANSWER + " " + GROUNDED_ANSWER)

    assert [claim.text for claim in claims] == [
        "has 16GB RAM and costs $499",
        "The Acme X200 has 16GB RAM and costs $499",
    ]
    assert claims[0].claim_type is ClaimType.PRICE


def test_extractor_caps_claim_count() -> None:
    text = " ".join(f"Model {index} has a {index + 10} inch screen." for index in range(8))

    claims = PatternClaimExtractor(max_claims=3).extract(text)

    assert len(claims) == 3


@pytest.mark.parametrize(
    ("claim", "expected"),
    [
        ("it costs $20 today", ClaimType.PRICE),
        ("currently available in stock", ClaimType.AVAILABILITY),
        ("a 15 inch display panel", ClaimType.SPECIFICATION),
        ("includes a travel charger", ClaimType.PRODUCT_FEATURE),
        ("made by hand in Portugal", ClaimType.GENERAL_FACT),
    ],
)
def test_claim_classification(claim: str, expected: ClaimType) -> None:
    assert PatternClaimExtractor.classify(claim) is expected


def test_claim_confidence_rewards_specifics_and_penalizes_hedges() -> None:
    assert PatternClaimExtractor.estimate_confidence("costs $499") == pytest.approx(0.8)
    assert PatternClaimExtractor.estimate_confidence("maybe someday") == pytest.approx(0.3)
    assert PatternClaimExtractor.estimate_confidence("the case is aluminium") == pytest.approx(0.7)


def test_matcher_key_phrase_overlap_counts_as_exact() -> None:
    documents = [EvidenceDocument(document_id="d", snippet="Battery life: twenty hours of playback on a charge")]

    matches = LexicalEvidenceMatcher().match("twenty hours battery playback", documents)

    assert len(matches) == 1
    assert matches[0].exact_match is True
    assert matches[0].relevance_score == pytest.approx(1.0)


def test_matcher_semantic_only_match_uses_jaccard() -> None:
    documents = [EvidenceDocument(document_id="d", snippet="fan kit and the usb hub")]

    matches = LexicalEvidenceMatcher().match("the usb hub and fan kit", documents)

    assert len(matches) == 1
    assert matches[0].exact_match is False
    assert matches[0].semantic_match is True
    assert matches[0].relevance_score == pytest.approx(1.0)


def test_matcher_ignores_unrelated_documents() -> None:
    documents = [EvidenceDocument(document_id="d", snippet="Gift cards never expire.")]

    assert LexicalEvidenceMatcher().match("The blender has a 2 litre jug", documents) == []


def test_supported_answer_is_grounded_and_cited() -> None:
    labels = {"grounded": "true", "hallucination": "false"}
    before = REGISTRY.get_sample_value("storepilot_grounding_verdicts_total", labels) or 0.0

    assessment = GroundingValidator().validate_response_grounding(
        GROUNDED_ANSWER,
        _documents(),
        "How much does the Acme X200 cost?",
    )

    grounding = assessment.grounding
    assert grounding.total_claims == 2
    assert grounding.validated_claims == 2
    assert grounding.grounding_score == pytest.approx(1.0)
    assert grounding.is_grounded is True
    assert all(claim.validation_score == pytest.approx(0.9) for claim in grounding.claims)
    assert [citation.document_id for citation in assessment.citations] == ["doc-1"]
    assert assessment.citations[0].title == "X200"
    assert assessment.citations[0].grounding_pass is True
    assert grounding.hallucination.detected is False
    assert len(grounding.validation_details) == 2
    assert all(detail.status == "validated" for detail in grounding.validation_details)
    assert assessment.fallback_recommended is False
    assert assessment.improvement_suggestions == []
    after = REGISTRY.get_sample_value("storepilot_grounding_verdicts_total", labels)
    assert after == pytest.approx(before + 1.0)


def test_answer_without_evidence_recommends_fallback() -> None:
    assessment = GroundingValidator().validate_response_grounding(GROUNDED_ANSWER, [], "price of the X200")

    grounding = assessment.grounding
    assert grounding.grounding_score == pytest.approx(0.0)
    assert grounding.is_grounded is False
    assert grounding.citations == []
    assert grounding.hallucination.detected is True
    assert "2 ungrounded claims detected" in grounding.hallucination.indicators
    assert "Specific information provided without citations" in grounding.hallucination.indicators
    assert assessment.fallback_recommended is True
    assert assessment.improvement_suggestions == [
        "Grounding score (0%) is below target (85%)",
        "Potential hallucination detected - review response for unsupported claims",
        "Add source citations to support factual claims",
    ]
    assert all(detail.reasoning == "No supporting evidence found" for detail in grounding.validation_details)


def test_hedged_answer_is_flagged_as_hallucination() -> None:
    response = "I think this laptop is great. It probably has a 15 inch screen."

    assessment = GroundingValidator().validate_response_grounding(response, [], "laptop screen size")

    report = assessment.grounding.hallucination
    assert report.detected is True
    assert report.confidence == pytest.approx(1.0)
    assert sum(1 for indicator in report.indicators if indicator.startswith("Hedging language")) == 2
    assert assessment.quality.hallucination_penalty_applied is True


@pytest.mark.parametrize(
    ("response", "hedges", "detected"),
    [
        ("This lamp is usually a good choice. It seems popular with shoppers.", 2, False),
        ("This lamp is usually a good choice. It seems popular and often sold out quickly.", 3, True),
    ],
)
def test_hedging_alone_must_exceed_cutoff(response: str, hedges: int, detected: bool) -> None:
    assessment = GroundingValidator().validate_response_grounding(response, [], "desk lamp")

    report = assessment.grounding.hallucination
    assert assessment.grounding.total_claims == 0
    assert report.indicators == [indicator for indicator in report.indicators if indicator.startswith("Hedging")]
    assert len(report.indicators) == hedges
    assert report.confidence == pytest.approx(0.2 * hedges)
    assert report.detected is detected


def test_hallucination_detection_can_be_disabled() -> None:
    validator = GroundingValidator(GroundingSettings(enable_hallucination_detection=False))

    assessment = validator.validate_response_grounding("It probably has a 15 inch screen.", [], "screen")

    assert assessment.grounding.hallucination.detected is False
    assert assessment.grounding.hallucination.indicators == []


def test_claimless_answer_follows_configuration() -> None:
    response = "Thanks for shopping with us!"

    default = GroundingValidator().validate_response_grounding(response, [], "hello")
    strict = GroundingValidator(GroundingSettings(claimless_is_grounded=False)).validate_response_grounding(
        response, [], "hello"
    )

    assert default.grounding.total_claims == 0
    assert default.grounding.grounding_score == pytest.approx(0.0)
    assert default.grounding.is_grounded is True
    assert default.quality.groundedness == pytest.approx(1.0)
    assert strict.grounding.is_grounded is False
    assert strict.fallback_recommended is True


def test_quality_scores_stay_in_unit_interval() -> None:
    assessment = GroundingValidator().validate_response_grounding(
        GROUNDED_ANSWER + " Additionally, it ships with a charger.",
        _documents(),
        "Acme X200 price and accessories",
    )

    quality = assessment.quality
    for value in (
        quality.overall,
        quality.factual_accuracy,
        quality.relevance,
        quality.completeness,
        quality.clarity,
        quality.groundedness,
    ):
        assert 0.0 <= value <= 1.0


def test_validator_failure_returns_conservative_assessment() -> None:
    class ExplodingExtractor:
        def extract(self, text: str):
            raise RuntimeError("regex engine exploded")

    validator = GroundingValidator(extractor=ExplodingExtractor())

    assessment = validator.validate_response_grounding(GROUNDED_ANSWER, _documents(), "price")

    assert assessment.grounding.is_grounded is False
    assert assessment.fallback_recommended is True
    assert assessment.response == GROUNDED_ANSWER
