"""Tests for output filters and the safety response."""

import pytest

from chiron.safety.filters import MEDICAL_DISCLAIMER, SafetyFilters
from chiron.safety.response import SAFETY_BANNER, SAFETY_RESPONSE, is_compliant_safety_response


class TestSafetyFilters:
    """Tests for SafetyFilters.filter_output."""

    def test_plain_output_unchanged(self):
        """Test that ordinary replies pass through untouched."""
        text = "That sounds hard. Would you like to try a breathing exercise?"

        assert SafetyFilters().filter_output(text) == text

    @pytest.mark.parametrize(
        "text",
        [
            "It could be a diagnosis of anxiety.",
            "A doctor might prescribe something.",
            "Some medication can help.",
            "That sounds like a mood disorder.",
        ],
    )
    def test_medical_topics_get_disclaimer(self, text):
        """Test that clinical language gets the medical disclaimer."""
        filtered = SafetyFilters().filter_output(text)

        assert filtered.startswith(text)
        assert filtered.endswith(MEDICAL_DISCLAIMER)

    def test_disclaimer_added_once(self):
        """Test that filtering twice does not duplicate the disclaimer."""
        filters = SafetyFilters()

        once = filters.filter_output("Ask about medication.")

        assert filters.filter_output(once) == once


class TestSafetyResponse:
    """Tests for the fixed safety response."""

    def test_response_is_compliant(self):
        """Test that the pre-approved response passes the compliance check."""
        assert is_compliant_safety_response(SAFETY_RESPONSE)

    def test_response_lists_resources(self):
        """Test that the response includes every crisis resource."""
        for resource in ("988", "741741", "911", "emergency room"):
            assert resource in SAFETY_RESPONSE

    def test_banner_lists_resources(self):
        """Test that the startup banner names the crisis lines."""
        assert "988" in SAFETY_BANNER
        assert "741741" in SAFETY_BANNER

    @pytest.mark.parametrize(
        "text",
        [
            "Please call 988.",
            "I'm concerned about you.",
            "",
        ],
    )
    def test_incomplete_responses_not_compliant(self, text):
        """Test that a response needs both a crisis line and an acknowledgment."""
        assert not is_compliant_safety_response(text)
