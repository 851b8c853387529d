"""Pre-approved crisis response and compliance check."""

import re

CRISIS_RESOURCES = (
    "• National Suicide Prevention Lifeline: 988",
    "• Crisis Text Line: Text HOME to 741741",
    "• Emergency Services: 911",
)

SAFETY_BANNER = "\n".join(
    (
        "⚠️  IMPORTANT: I am an AI assistant, not a mental health professional.",
        "For immediate crisis support, contact:",
        *CRISIS_RESOURCES,
    )
)

SAFETY_RESPONSE = "\n".join(
    (
        "I'm concerned about what you've shared. Your safety is important.",
        "Please reach out for immediate help:",
        *CRISIS_RESOURCES,
        "• Or go to your nearest emergency room",
    )
)

_HOTLINE_RE = re.compile(r"\b988\b|\b741741\b|\bhotline\b|\blifeline\b", re.IGNORECASE)
_ACKNOWLEDGMENT_RE = re.compile(
    r"\b(?:i'?m|i am)\s+(?:really\s+|very\s+)?(?:concerned|worried)\b", re.IGNORECASE
)


def is_compliant_safety_response(text: str) -> bool:
    """Check that a safety response names a crisis line and acknowledges concern."""
    return bool(_HOTLINE_RE.search(text)) and bool(_ACKNOWLEDGMENT_RE.search(text))
