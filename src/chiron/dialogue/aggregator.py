"""Therapeutic metadata aggregation.

`MetadataAggregator.update` is a pure function of a session's prior
aggregates and one new message pair. Replaying a message sequence from the
empty aggregate with `replay` reproduces the aggregates built turn by turn,
which is what the training exporter relies on for per-turn snapshots.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

from chiron.dialogue.tagging import content_words, sentiment_score
from chiron.models.labels import CONCERN, SIGNAL, TECHNIQUE, labels_in_namespace
from chiron.models.session import (
    SCORE_MAX,
    SCORE_MIN,
    Message,
    Role,
    Session,
    SessionQuality,
    TherapeuticMetadata,
    TherapyPhase,
)
from chiron.safety.crisis_detection import Verdict, crisis_patterns_from_labels
from chiron.safety.response import is_compliant_safety_response

logger = logging.getLogger(__name__)

MOOD = "mood"
ENGAGEMENT = "engagement"
COPING = "coping"

_PRECISION = 6


@dataclass(frozen=True)
class AggregatorConfig:
    """Policy knobs for phase advancement and score smoothing."""

    smoothing_alpha: float = 0.3
    assessment_after_turns: int = 2
    intervention_after_turns: int = 4
    monitoring_after_turns: int = 8
    closure_after_turns: int = 14
    monitoring_min_techniques: int = 2
    engagement_word_target: int = 40

    @classmethod
    def from_settings(cls, settings) -> "AggregatorConfig":
        return cls(
            smoothing_alpha=settings.aggregator_smoothing_alpha,
            assessment_after_turns=settings.phase_assessment_after_turns,
            intervention_after_turns=settings.phase_intervention_after_turns,
            monitoring_after_turns=settings.phase_monitoring_after_turns,
            closure_after_turns=settings.phase_closure_after_turns,
            monitoring_min_techniques=settings.phase_monitoring_min_techniques,
            engagement_word_target=settings.engagement_word_target,
        )


@dataclass(frozen=True)
class TurnState:
    """Aggregates as of the end of one replayed turn."""

    index: int
    user_message: Message
    reply: Message
    verdict: Verdict
    metadata: TherapeuticMetadata
    quality: SessionQuality

    @property
    def is_crisis_turn(self) -> bool:
        return self.verdict.is_crisis or self.reply.role == Role.SYSTEM_SAFETY


class MetadataAggregator:
    """Derives therapeutic metadata and session quality from each message pair."""

    def __init__(self, config: Optional[AggregatorConfig] = None):
        self.config = config or AggregatorConfig()

    def update(
        self,
        session: Session,
        user_msg: Message,
        assistant_msg: Message,
        verdict: Verdict,
    ) -> tuple[TherapeuticMetadata, SessionQuality]:
        """Compute the session's aggregates after one more turn.

        `session` holds the messages and aggregates from before the turn; it is
        not modified.

        Args:
            session: Session as of the end of the previous turn
            user_msg: The new user message
            assistant_msg: The reply (assistant or system-safety)
            verdict: Crisis verdict for user_msg

        Returns:
            New (TherapeuticMetadata, SessionQuality) values
        """
        metadata = session.therapeutic_metadata.copy()
        quality = session.session_quality.copy()
        turn_number = session.user_turn_count + 1

        metadata.primary_concerns |= labels_in_namespace(user_msg.tags, CONCERN)
        metadata.intervention_techniques |= labels_in_namespace(assistant_msg.tags, TECHNIQUE)

        if verdict.is_crisis:
            metadata.crisis_indicator_count += 1
            if not self._crisis_handled(user_msg, assistant_msg):
                logger.warning(f"Session {session.id}: crisis turn was not handled by the safety protocol")
                quality.safety_compliance_flag = False

        self._update_progress(metadata, user_msg)

        quality.alliance_score = self._smooth(
            quality.alliance_score, self._turn_alliance(user_msg, assistant_msg)
        )
        previous = self._previous_user_message(session)
        if previous is not None:
            quality.coherence_score = self._smooth(
                quality.coherence_score, self._turn_coherence(previous, user_msg)
            )

        if not verdict.is_crisis:
            new_phase = self._next_phase(metadata, user_msg, turn_number)
            if new_phase != metadata.therapy_phase:
                logger.info(
                    f"Session {session.id}: phase {metadata.therapy_phase.value} -> {new_phase.value}"
                )
                metadata.therapy_phase = new_phase

        return metadata, quality

    def override_phase(self, metadata: TherapeuticMetadata, phase: TherapyPhase) -> TherapeuticMetadata:
        """Explicitly set the therapy phase, including backward transitions."""
        updated = metadata.copy()
        if phase.rank < metadata.therapy_phase.rank:
            logger.info(f"Phase explicitly reset {metadata.therapy_phase.value} -> {phase.value}")
        updated.therapy_phase = phase
        return updated

    def iter_turns(self, messages: Sequence[Message], session_id: str = "replay") -> Iterator[TurnState]:
        """Replay a message sequence from the empty aggregate, yielding each turn.

        Each user message is paired with the next reply (assistant or
        system-safety). A user message followed by another user message is
        kept in the history but produces no turn. The crisis verdict of a
        turn is the recorded system-safety tag on the user message, with the
        matched pattern names recovered from its crisis signal labels.
        """
        if not messages:
            return
        start = messages[0].timestamp
        scratch = Session(id=session_id, created_at=start, last_updated=start)
        pending: Optional[Message] = None
        turn_index = 0

        for message in messages:
            if message.role == Role.USER:
                if pending is not None:
                    scratch.messages.append(pending)
                pending = message
                continue

            if pending is None:
                scratch.messages.append(message)
                continue

            if pending.is_safety_flagged:
                verdict = Verdict.crisis(crisis_patterns_from_labels(pending.tags))
            else:
                verdict = Verdict.no_crisis()
            metadata, quality = self.update(scratch, pending, message, verdict)
            scratch.messages.extend((pending, message))
            scratch.therapeutic_metadata = metadata
            scratch.session_quality = quality

            yield TurnState(
                index=turn_index,
                user_message=pending,
                reply=message,
                verdict=verdict,
                metadata=metadata,
                quality=quality,
            )
            turn_index += 1
            pending = None

    def replay(self, messages: Sequence[Message]) -> tuple[TherapeuticMetadata, SessionQuality]:
        """Rebuild final aggregates for a message sequence."""
        metadata, quality = TherapeuticMetadata(), SessionQuality()
        for state in self.iter_turns(messages):
            metadata, quality = state.metadata, state.quality
        return metadata, quality

    def _crisis_handled(self, user_msg: Message, reply: Message) -> bool:
        return (
            user_msg.is_safety_flagged
            and reply.role == Role.SYSTEM_SAFETY
            and is_compliant_safety_response(reply.content)
        )

    def _update_progress(self, metadata: TherapeuticMetadata, user_msg: Message) -> None:
        signals = labels_in_namespace(user_msg.tags, SIGNAL)
        observations = {
            MOOD: sentiment_score(user_msg.content),
            ENGAGEMENT: self._engagement(user_msg),
            COPING: 1.0 if "coping" in signals else 0.0,
        }
        for name, value in observations.items():
            prior = metadata.progress_indicators.get(name)
            if prior is None:
                metadata.progress_indicators[name] = round(value, _PRECISION)
            else:
                alpha = self.config.smoothing_alpha
                metadata.progress_indicators[name] = round(prior + alpha * (value - prior), _PRECISION)

    def _engagement(self, user_msg: Message) -> float:
        words = len(user_msg.content.split())
        return min(1.0, words / max(1, self.config.engagement_word_target))

    def _turn_alliance(self, user_msg: Message, reply: Message) -> float:
        signals = labels_in_namespace(user_msg.tags, SIGNAL)
        techniques = labels_in_namespace(reply.tags, TECHNIQUE)

        score = 5.0 + 2.0 * self._engagement(user_msg)
        if "validation" in techniques:
            score += 1.0
        if techniques - {"validation"}:
            score += 0.5
        if "gratitude" in signals:
            score += 1.5
        if "rupture" in signals:
            score -= 3.0
        return score

    def _turn_coherence(self, previous: Message, current: Message) -> float:
        before = content_words(previous.content)
        after = content_words(current.content)
        if not before or not after:
            return SCORE_MAX / 2
        overlap = len(before & after) / len(before | after)
        # Shared concern labels count as topical continuity too
        shared_concerns = labels_in_namespace(previous.tags, CONCERN) & labels_in_namespace(
            current.tags, CONCERN
        )
        if shared_concerns:
            overlap = max(overlap, 0.5)
        return SCORE_MAX * overlap

    def _previous_user_message(self, session: Session) -> Optional[Message]:
        for message in reversed(session.messages):
            if message.role == Role.USER:
                return message
        return None

    def _smooth(self, prior: float, observation: float) -> float:
        observation = min(SCORE_MAX, max(SCORE_MIN, observation))
        value = prior + self.config.smoothing_alpha * (observation - prior)
        return round(min(SCORE_MAX, max(SCORE_MIN, value)), _PRECISION)

    def _next_phase(
        self, metadata: TherapeuticMetadata, user_msg: Message, turn_number: int
    ) -> TherapyPhase:
        """Advance at most one phase per turn when this phase's thresholds are met."""
        config = self.config
        phase = metadata.therapy_phase
        signals = labels_in_namespace(user_msg.tags, SIGNAL)

        if phase == TherapyPhase.INTAKE:
            ready = turn_number >= config.assessment_after_turns
        elif phase == TherapyPhase.ASSESSMENT:
            ready = (
                turn_number >= config.intervention_after_turns
                and bool(metadata.intervention_techniques)
            )
        elif phase == TherapyPhase.INTERVENTION:
            ready = (
                turn_number >= config.monitoring_after_turns
                and len(metadata.intervention_techniques) >= config.monitoring_min_techniques
            )
        elif phase == TherapyPhase.MONITORING:
            ready = turn_number >= config.closure_after_turns and "closure" in signals
        else:
            ready = False

        return phase.next() if ready else phase
