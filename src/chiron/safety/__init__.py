"""Safety systems: crisis detection, safety responses and output filters."""

from .crisis_detection import (
    CrisisClassifier,
    KeywordCrisisDetector,
    Verdict,
    VerdictKind,
    crisis_patterns_from_labels,
    crisis_signal_labels,
)
from .filters import SafetyFilters
from .response import SAFETY_BANNER, SAFETY_RESPONSE, is_compliant_safety_response

__all__ = [
    "CrisisClassifier",
    "KeywordCrisisDetector",
    "SAFETY_BANNER",
    "SAFETY_RESPONSE",
    "SafetyFilters",
    "Verdict",
    "VerdictKind",
    "crisis_patterns_from_labels",
    "crisis_signal_labels",
    "is_compliant_safety_response",
]
