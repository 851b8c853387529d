"""Rule-based therapeutic tagger for deterministic write-time message tags."""

import logging
import re

from chiron.models.labels import CONCERN, EMOTION, SIGNAL, TECHNIQUE, make_label

logger = logging.getLogger(__name__)


# Concerns raised by the user
CONCERN_PATTERNS = {
    "anxiety": r"\b(anxious|anxiety|panic|nervous|worried|worrying|on edge)\b",
    "depression": r"\b(depressed|depression|hopeless|empty inside|numb|no motivation)\b",
    "stress": r"\b(stress|stressed|overwhelmed|burn(?:ed|t)? out|pressure)\b",
    "sleep": r"\b(insomnia|can'?t sleep|cannot sleep|sleeping|nightmares?|tired all the time)\b",
    "grief": r"\b(grief|grieving|passed away|lost my|funeral|mourning)\b",
    "relationships": r"\b(partner|boyfriend|girlfriend|husband|wife|breakup|broke up|divorce|family)\b",
    "loneliness": r"\b(lonely|loneliness|isolated|no friends|alone)\b",
    "anger": r"\b(angry|anger|furious|rage|irritable)\b",
    "self_worth": r"\b(worthless|not good enough|hate myself|failure|ashamed)\b",
    "trauma": r"\b(trauma|traumatic|flashbacks?|abuse|abused|ptsd)\b",
    "work": r"\b(job|boss|work|career|deadline|fired|laid off)\b",
    "self_harm": r"\b(suicid\w*|self[- ]?harm|hurt myself|kill myself|end it all)\b",
}

# Techniques applied in assistant replies
TECHNIQUE_PATTERNS = {
    "cognitive_reframing": r"\b(reframe|reframing|another way to look|challenge (?:that|the) thought|evidence for)\b",
    "mindfulness": r"\b(mindful|mindfulness|present moment|notice without judg\w*)\b",
    "breathing": r"\b(deep breath\w*|breathing exercise|breathe in|box breathing|4-7-8)\b",
    "grounding": r"\b(grounding|5-4-3-2-1|name five things|feel your feet)\b",
    "journaling": r"\b(journal|journaling|write (?:it|them|things) down)\b",
    "behavioral_activation": r"\b(small step|schedule an activity|activity you enjoy|go for a walk)\b",
    "validation": r"\b(that sounds (?:really )?(?:hard|difficult|painful)|it makes sense|understandable|i hear you|valid)\b",
    "psychoeducation": r"\b(it'?s common|many people|is a normal response|research shows)\b",
    "problem_solving": r"\b(break (?:it|this) down|options|plan for|next step)\b",
    "safety_planning": r"\b(safety plan|crisis line|988|reach out to someone you trust)\b",
}

# Emotional states expressed by the user
EMOTION_PATTERNS = {
    "sad": r"\b(sad|down|crying|cried|miserable|heartbroken)\b",
    "afraid": r"\b(scared|afraid|terrified|fear)\b",
    "frustrated": r"\b(frustrated|annoyed|fed up)\b",
    "hopeful": r"\b(hopeful|hope|optimistic|looking forward)\b",
    "calm": r"\b(calm|calmer|relaxed|peaceful)\b",
}

# Conversation signals used by the aggregator
SIGNAL_PATTERNS = {
    "coping": r"\b(i tried|it helped|that helped|been practicing|i used the|did the exercise)\b",
    "gratitude": r"\b(thank you|thanks|grateful|appreciate)\b",
    "rupture": r"\b(you don'?t understand|not helping|useless|waste of time|stop telling me)\b",
    "closure": r"\b(goodbye|see you next|feel(?:ing)? (?:much )?better|that'?s all for today|i think i'?m ready)\b",
}

POSITIVE_WORDS = frozenset(
    "good better great happy calm hopeful relieved grateful proud okay fine glad "
    "peaceful relaxed excited confident improving helped".split()
)
NEGATIVE_WORDS = frozenset(
    "bad worse awful sad anxious depressed hopeless angry lonely scared afraid tired "
    "overwhelmed stressed worthless terrible miserable hurt crying panic empty".split()
)

STOPWORDS = frozenset(
    "that this have with been from they them their there what when where which "
    "would could should about just really very like feel feeling know think want "
    "into than then also some more much your yours mine i'm it's don't can't".split()
)


class TherapeuticTagger:
    """Tagger that extracts therapeutic labels using pattern matching.

    Labels are namespaced: user messages get concern:, emotion: and signal:
    labels, assistant messages get technique: labels.
    """

    def tag_user_message(self, text: str) -> set[str]:
        """Extract labels from user text.

        Args:
            text: The user's message

        Returns:
            Set of namespaced labels
        """
        lowered = text.lower()
        tags = set()
        tags |= self._match(lowered, CONCERN_PATTERNS, CONCERN)
        tags |= self._match(lowered, EMOTION_PATTERNS, EMOTION)
        tags |= self._match(lowered, SIGNAL_PATTERNS, SIGNAL)
        return tags

    def tag_assistant_message(self, text: str) -> set[str]:
        """Extract technique labels from an assistant reply."""
        return self._match(text.lower(), TECHNIQUE_PATTERNS, TECHNIQUE)

    def _match(self, lowered: str, patterns: dict[str, str], namespace: str) -> set[str]:
        found = set()
        for name, pattern in patterns.items():
            if re.search(pattern, lowered):
                found.add(make_label(namespace, name))
                logger.debug(f"Label matched: {namespace}:{name}")
        return found


def sentiment_score(text: str) -> float:
    """Lexicon sentiment in [-1.0, 1.0]; 0.0 when no sentiment words occur."""
    words = re.findall(r"[a-z']+", text.lower())
    positive = sum(1 for w in words if w in POSITIVE_WORDS)
    negative = sum(1 for w in words if w in NEGATIVE_WORDS)
    total = positive + negative
    if total == 0:
        return 0.0
    return (positive - negative) / total


def content_words(text: str) -> set[str]:
    """Lowercased words of four or more letters, used for topical overlap."""
    return {
        w for w in re.findall(r"[a-z']+", text.lower()) if len(w) >= 4 and w not in STOPWORDS
    }
