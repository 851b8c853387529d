"""Crisis detection for incoming user text.

The detector is tuned for recall: any phrasing that references suicide or
self-harm is flagged, including past, hypothetical and third-person frames.
Over-flagging is accepted; under-flagging is not.
"""

import enum
import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from chiron.models.labels import SIGNAL, labels_in_namespace, make_label

logger = logging.getLogger(__name__)


class VerdictKind(str, enum.Enum):
    CRISIS = "crisis"
    NO_CRISIS = "no_crisis"


@dataclass(frozen=True)
class Verdict:
    """Result of classifying one piece of user text."""

    kind: VerdictKind
    matched_patterns: tuple[str, ...] = ()

    @property
    def is_crisis(self) -> bool:
        return self.kind == VerdictKind.CRISIS

    @classmethod
    def crisis(cls, matched_patterns: Iterable[str] = ()) -> "Verdict":
        return cls(VerdictKind.CRISIS, tuple(matched_patterns))

    @classmethod
    def no_crisis(cls) -> "Verdict":
        return cls(VerdictKind.NO_CRISIS)


class CrisisClassifier(Protocol):
    """Protocol for crisis classifiers.

    Implementations must be pure functions of the text and their static
    configuration. Keyword rules and statistical models are interchangeable
    behind this interface.
    """

    def classify(self, text: str) -> Verdict:
        """Classify user text as crisis or no crisis."""
        ...


# Patterns run against normalized text: lowercase, apostrophes removed,
# punctuation collapsed to single spaces.
_REFLEXIVE = r"(?:my|him|her|them|your|our)\s?sel(?:f|ves)"

CRISIS_PATTERNS: dict[str, str] = {
    "suicide": r"\bsuicid\w*",
    "kill_self": rf"\bkill(?:ing|ed|s)?\s+{_REFLEXIVE}\b",
    "end_life": r"\bend(?:ing|ed|s)?\s+(?:my|his|her|their|your)\s+(?:own\s+)?li(?:fe|ves)\b",
    "take_life": r"\btak(?:e|ing|en|es)\s+(?:my|his|her|their|your)\s+(?:own\s+)?li(?:fe|ves)\b",
    "end_it_all": r"\bend(?:ing|ed|s)?\s+it\s+all\b",
    "end_self": rf"\bend(?:ing|ed|s)?\s+{_REFLEXIVE}\b",
    "want_to_die": r"\b(?:want|wanted|wanting|wants|wanna|going|gonna|ready|plan|planning)\s+(?:to\s+)?die\b",
    "want_dead": r"\b(?:want|wanted|wanting|wants|wanna|rather|wish|wishing)\s+(?:to\s+|i\s+(?:was|were)\s+)?(?:be\s+)?dead\b",
    "better_off_dead": r"\bbetter\s+off\s+dead\b",
    "wish_dead": r"\bwish\s+(?:i|he|she|they)\s+(?:was|were|had|could)\s+(?:be\s+)?(?:dead|died|die)\b",
    "self_harm": r"\bself\s?(?:harm|harming|injury|injure|mutilation)\b",
    "hurt_self": rf"\b(?:hurt|hurting|harm|harming|cut|cutting|burn|burning|injure|injuring|punish|punishing)\s+{_REFLEXIVE}\b",
    "method": r"\b(?:hang|hanging|hanged|drown|drowning|shoot|shooting|poison|poisoning)\s+{refl}\b".format(
        refl=_REFLEXIVE
    ),
    "slit_wrists": r"\bslit(?:ting)?\s+(?:my|his|her|their)\s+wrists?\b",
    "overdose": r"\b(?:overdos(?:e|ed|ing)|od\s+on)\b",
    "jump_off": r"\bjump(?:ing|ed)?\s+(?:off|from)\s+(?:a|the)\s+(?:bridge|building|roof|cliff|balcony|ledge)\b",
    "no_reason_to_live": r"\b(?:nothing(?:\s+left)?\s+to|no\s+point(?:\s+in)?|no\s+reason)\s+(?:to\s+)?(?:live|living)(?:\s+for)?\b",
    "not_want_to_live": r"\b(?:dont|do\s+not|didnt|did\s+not|doesnt|does\s+not)\s+want\s+to\s+(?:live|be\s+alive|exist|wake\s+up)\b",
    "not_be_here": r"\b(?:dont|do\s+not)\s+want\s+to\s+be\s+here\s+anymore\b",
    "unalive": r"\bunalive\b",
    "ending_things": r"\bend(?:ing|ed|s)?\s+(?:things|everything)\b",
    "never_wake_up": r"\b(?:never|not|dont)\s+wake\s+up\b",
    "pill_quantity": (
        r"\b(?:took|take|taking|takes|swallow(?:ed|ing|s)?)\s+"
        r"(?:(?:a|the|my)\s+)?(?:whole\s+|entire\s+)?(?:bottle|handful|box|pack|packet|bunch|lot|all)\s+"
        r"(?:of\s+)?(?:(?:my|the|those|these)\s+)?(?:sleeping\s+)?(?:pills|tablets|meds|medication|medicine)\b"
    ),
    "shorthand": r"\b(?:kms|kys)\b",
    "goodbye_note": r"\b(?:suicide|goodbye)\s+(?:note|letter)\b",
}

_COMPILED_PATTERNS = {name: re.compile(pattern) for name, pattern in CRISIS_PATTERNS.items()}


def normalize_text(text: str) -> str:
    """Normalize user text for matching.

    Case-folds, unifies apostrophes and drops them ("don't" -> "dont"),
    turns every other non-alphanumeric run into a single space.
    """
    text = unicodedata.normalize("NFKC", text).casefold()
    text = re.sub(r"['‘’ʼ`]", "", text)
    text = re.sub(r"[^0-9a-z]+", " ", text)
    return text.strip()


class KeywordCrisisDetector:
    """Crisis classifier that matches a static rule set of severity patterns.

    This classifier is fast, deterministic and has no per-session state.
    The count of positive verdicts is tracked by the metadata aggregator.
    """

    def __init__(self, extra_phrases: Optional[Iterable[str]] = None):
        """Initialize the detector.

        Args:
            extra_phrases: Additional severity keywords or phrases; matched
                case-insensitively on word boundaries after normalization
        """
        self.patterns = dict(_COMPILED_PATTERNS)
        for phrase in extra_phrases or ():
            normalized = normalize_text(phrase)
            if not normalized:
                continue
            words = r"\s+".join(re.escape(word) for word in normalized.split())
            self.patterns[f"keyword:{normalized}"] = re.compile(rf"\b{words}\b")

    def classify(self, text: str) -> Verdict:
        """Classify user text.

        Args:
            text: Raw user text

        Returns:
            Verdict.crisis with the names of matched patterns, or Verdict.no_crisis
        """
        if not text or not text.strip():
            return Verdict.no_crisis()

        normalized = normalize_text(text)
        # Also match with spaces removed between single letters ("k i l l")
        despaced = re.sub(r"\b(\w) (?=\w\b)", r"\1", normalized)

        matched = [
            name
            for name, pattern in self.patterns.items()
            if pattern.search(normalized) or pattern.search(despaced)
        ]

        if matched:
            logger.warning(f"Crisis indicators detected: {', '.join(matched)}")
            return Verdict.crisis(matched)
        return Verdict.no_crisis()


CRISIS_SIGNAL_PREFIX = "crisis_"


def crisis_signal_labels(verdict: Verdict) -> frozenset[str]:
    """Labels recording which patterns flagged a message ("signal:crisis_kill_self")."""
    labels = set()
    for name in verdict.matched_patterns:
        slug = re.sub(r"[^a-z0-9_\-]+", "_", name.lower()).strip("_")
        labels.add(make_label(SIGNAL, f"{CRISIS_SIGNAL_PREFIX}{slug}"))
    return frozenset(labels)


def crisis_patterns_from_labels(labels: Iterable[str]) -> tuple[str, ...]:
    """Recover the recorded pattern names from a message's crisis signal labels."""
    return tuple(
        sorted(
            name[len(CRISIS_SIGNAL_PREFIX):]
            for name in labels_in_namespace(labels, SIGNAL)
            if name.startswith(CRISIS_SIGNAL_PREFIX)
        )
    )
