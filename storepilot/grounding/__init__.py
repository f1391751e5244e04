from .claims import ClaimExtractor, PatternClaimExtractor
from .evidence import collect_evidence
from .fallback import FallbackResponder
from .matching import EvidenceMatcher, LexicalEvidenceMatcher
from .validator import GroundingValidator

__all__ = [
    "ClaimExtractor",
    "EvidenceMatcher",
    "FallbackResponder",
    "GroundingValidator",
    "LexicalEvidenceMatcher",
    "PatternClaimExtractor",
    "collect_evidence",
]
