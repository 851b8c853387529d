"""Output safety filtering for generated responses."""

import logging
import re

logger = logging.getLogger(__name__)

MEDICAL_ADVICE_PATTERNS = [
    r"\bdiagnos(?:is|e|ed|es)\b",
    r"\bprescri(?:be|bed|ption)\b",
    r"\bmedications?\b",
    r"\bdisorders?\b",
    r"\bdosage\b",
]

MEDICAL_DISCLAIMER = (
    "⚠️  Reminder: I cannot provide medical advice or diagnoses. Please consult a "
    "qualified mental health professional for clinical guidance."
)


class SafetyFilters:
    """Post-processing applied to backend output before it is shown or stored."""

    def filter_output(self, output: str) -> str:
        """Append a medical-advice disclaimer when the output touches on clinical topics.

        Args:
            output: Generated assistant text

        Returns:
            The text, with the disclaimer appended at most once
        """
        if MEDICAL_DISCLAIMER in output:
            return output

        for pattern in MEDICAL_ADVICE_PATTERNS:
            if re.search(pattern, output, re.IGNORECASE):
                logger.debug(f"Medical advice pattern matched: {pattern}")
                return f"{output}\n\n{MEDICAL_DISCLAIMER}"

        return output
