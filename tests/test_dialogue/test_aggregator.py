"""Tests for therapeutic metadata aggregation."""

import pytest

from chiron.dialogue.aggregator import AggregatorConfig, MetadataAggregator
from chiron.dialogue.tagging import TherapeuticTagger
from chiron.models.labels import SYSTEM_SAFETY_TAG
from chiron.models.session import Role, Session, SessionQuality, TherapeuticMetadata, TherapyPhase
from chiron.safety.crisis_detection import Verdict
from chiron.safety.response import SAFETY_RESPONSE
from conftest import BASE_TIME


@pytest.fixture
def aggregator() -> MetadataAggregator:
    return MetadataAggregator()


def _pair(session, user_text, reply_text, user_tags=(), reply_tags=(), reply_role=Role.ASSISTANT):
    user = session.build_message(Role.USER, user_text, tags=user_tags, timestamp=BASE_TIME)
    reply = session.build_message(reply_role, reply_text, tags=reply_tags, after=user, timestamp=BASE_TIME)
    return user, reply


def _commit(aggregator, session, user, reply, verdict=None):
    verdict = verdict or Verdict.no_crisis()
    metadata, quality = aggregator.update(session, user, reply, verdict)
    session.append(user)
    session.append(reply)
    session.therapeutic_metadata = metadata
    session.session_quality = quality


class TestUpdate:
    """Tests for MetadataAggregator.update."""

    def test_update_does_not_modify_session(self, aggregator):
        """Test that update computes new values without touching its input."""
        session = Session.new(now=BASE_TIME)
        user, reply = _pair(session, "I'm anxious", "I hear you", user_tags={"concern:anxiety"})

        metadata, quality = aggregator.update(session, user, reply, Verdict.no_crisis())

        assert metadata.primary_concerns == {"anxiety"}
        assert session.therapeutic_metadata == TherapeuticMetadata()
        assert session.session_quality == SessionQuality()
        assert session.messages == []

    def test_concerns_and_techniques_only_grow(self, aggregator):
        """Test that concern and technique sets are unions over turns."""
        session = Session.new(now=BASE_TIME)
        _commit(aggregator, session, *_pair(
            session, "work", "breathe", user_tags={"concern:work"}, reply_tags={"technique:breathing"}
        ))
        _commit(aggregator, session, *_pair(
            session, "sleep", "journal", user_tags={"concern:sleep"}, reply_tags={"technique:journaling"}
        ))

        metadata = session.therapeutic_metadata
        assert metadata.primary_concerns == {"work", "sleep"}
        assert metadata.intervention_techniques == {"breathing", "journaling"}

    def test_first_progress_values_taken_directly(self, aggregator):
        """Test that the first observation of an indicator is stored as-is."""
        session = Session.new(now=BASE_TIME)
        user, reply = _pair(session, "I feel good", "Glad to hear it")

        metadata, _ = aggregator.update(session, user, reply, Verdict.no_crisis())

        assert metadata.progress_indicators["mood"] == 1.0
        assert metadata.progress_indicators["coping"] == 0.0
        assert metadata.progress_indicators["engagement"] == pytest.approx(3 / 40)

    def test_alliance_smoothed_toward_turn_score(self, aggregator):
        """Test that alliance moves a fraction of the way toward the turn score."""
        session = Session.new(now=BASE_TIME)
        user, reply = _pair(session, "hello there", "hi")

        _, quality = aggregator.update(session, user, reply, Verdict.no_crisis())

        # turn score 5 + 2 * (2 / 40) = 5.1, smoothed with alpha 0.3
        assert quality.alliance_score == pytest.approx(5.03)

    def test_rupture_lowers_alliance(self, aggregator):
        """Test that a rupture signal pulls alliance down."""
        session = Session.new(now=BASE_TIME)
        user, reply = _pair(session, "you don't understand", "Sorry", user_tags={"signal:rupture"})

        _, quality = aggregator.update(session, user, reply, Verdict.no_crisis())

        assert quality.alliance_score < 5.0

    def test_scores_stay_in_range(self):
        """Test that repeated extreme turns keep scores within [0, 10]."""
        aggregator = MetadataAggregator(AggregatorConfig(smoothing_alpha=1.0))
        session = Session.new(now=BASE_TIME)
        for _ in range(5):
            _commit(aggregator, session, *_pair(
                session, "useless", "ok", user_tags={"signal:rupture"}
            ))

        quality = session.session_quality
        assert 0.0 <= quality.alliance_score <= 10.0
        assert 0.0 <= quality.coherence_score <= 10.0

    def test_coherence_unchanged_on_first_turn(self, aggregator):
        """Test that coherence needs a previous user message."""
        session = Session.new(now=BASE_TIME)
        user, reply = _pair(session, "completely unrelated words", "ok")

        _, quality = aggregator.update(session, user, reply, Verdict.no_crisis())

        assert quality.coherence_score == 5.0

    def test_topical_follow_up_raises_coherence(self, aggregator):
        """Test that a follow-up on the same topic raises coherence."""
        session = Session.new(now=BASE_TIME)
        _commit(aggregator, session, *_pair(session, "deadlines at work scare me", "ok"))
        user, reply = _pair(session, "deadlines at work scare me again", "ok")

        _, quality = aggregator.update(session, user, reply, Verdict.no_crisis())

        assert quality.coherence_score > 5.0


class TestCrisisTurns:
    """Tests for crisis handling in the aggregates."""

    def test_handled_crisis_counts_and_stays_compliant(self, aggregator):
        """Test that a protocol-compliant crisis turn increments the count only."""
        session = Session.new(now=BASE_TIME)
        user, reply = _pair(
            session,
            "I want to die",
            SAFETY_RESPONSE,
            user_tags={SYSTEM_SAFETY_TAG},
            reply_tags={SYSTEM_SAFETY_TAG},
            reply_role=Role.SYSTEM_SAFETY,
        )

        metadata, quality = aggregator.update(session, user, reply, Verdict.crisis(["want_to_die"]))

        assert metadata.crisis_indicator_count == 1
        assert quality.safety_compliance_flag is True

    def test_unhandled_crisis_clears_compliance(self, aggregator):
        """Test that a crisis answered by the model clears the compliance flag."""
        session = Session.new(now=BASE_TIME)
        user, reply = _pair(session, "I want to die", "Have you tried yoga?")

        metadata, quality = aggregator.update(session, user, reply, Verdict.crisis(["want_to_die"]))

        assert metadata.crisis_indicator_count == 1
        assert quality.safety_compliance_flag is False

    def test_compliance_never_restored(self, aggregator):
        """Test that later good turns do not restore a cleared flag."""
        session = Session.new(now=BASE_TIME)
        _commit(
            aggregator, session, *_pair(session, "I want to die", "ok"), verdict=Verdict.crisis()
        )
        _commit(aggregator, session, *_pair(session, "thanks", "I hear you"))

        assert session.session_quality.safety_compliance_flag is False

    def test_crisis_turn_does_not_advance_phase(self):
        """Test that the phase holds on a crisis turn."""
        aggregator = MetadataAggregator(AggregatorConfig(assessment_after_turns=1))
        session = Session.new(now=BASE_TIME)
        user, reply = _pair(
            session,
            "I want to die",
            SAFETY_RESPONSE,
            user_tags={SYSTEM_SAFETY_TAG},
            reply_role=Role.SYSTEM_SAFETY,
        )

        metadata, _ = aggregator.update(session, user, reply, Verdict.crisis())

        assert metadata.therapy_phase == TherapyPhase.INTAKE


class TestPhaseAdvancement:
    """Tests for therapy phase policy."""

    def test_assessment_after_two_turns(self, aggregator, make_session):
        """Test that intake moves to assessment on the second turn."""
        session = make_session([("hi", "hello"), ("still here", "good")])

        metadata, _ = aggregator.replay(session.messages)

        assert metadata.therapy_phase == TherapyPhase.ASSESSMENT

    def test_one_step_per_turn(self):
        """Test that a single turn never skips a phase."""
        aggregator = MetadataAggregator(
            AggregatorConfig(
                assessment_after_turns=1,
                intervention_after_turns=1,
                monitoring_after_turns=1,
                monitoring_min_techniques=0,
            )
        )
        session = Session.new(now=BASE_TIME)
        user, reply = _pair(session, "hi", "try box breathing", reply_tags={"technique:breathing"})

        metadata, _ = aggregator.update(session, user, reply, Verdict.no_crisis())

        assert metadata.therapy_phase == TherapyPhase.ASSESSMENT

    def test_intervention_needs_a_technique(self, aggregator, make_session):
        """Test that assessment holds until a technique has been applied."""
        session = make_session([("talking", "I see")] * 6)

        metadata, _ = aggregator.replay(session.messages)

        assert metadata.therapy_phase == TherapyPhase.ASSESSMENT

    def test_phase_monotone_over_replay(self, aggregator):
        """Test that phases never move backward over a conversation."""
        replies = [
            "That sounds really hard.",
            "Let's try box breathing.",
            "Could you journal about it?",
            "Notice the present moment.",
        ]
        tagger = TherapeuticTagger()
        session = Session.new(now=BASE_TIME)
        for i in range(16):
            reply_text = replies[i % 4]
            session.add_message(Role.USER, f"turn {i}", timestamp=BASE_TIME)
            session.add_message(
                Role.ASSISTANT,
                reply_text,
                tags=tagger.tag_assistant_message(reply_text),
                timestamp=BASE_TIME,
            )

        ranks = [state.metadata.therapy_phase.rank for state in aggregator.iter_turns(session.messages)]

        assert ranks == sorted(ranks)
        assert ranks[-1] >= TherapyPhase.INTERVENTION.rank

    def test_override_allows_backward(self, aggregator):
        """Test that an explicit override can move the phase back."""
        metadata = TherapeuticMetadata(therapy_phase=TherapyPhase.MONITORING)

        updated = aggregator.override_phase(metadata, TherapyPhase.ASSESSMENT)

        assert updated.therapy_phase == TherapyPhase.ASSESSMENT
        assert metadata.therapy_phase == TherapyPhase.MONITORING


class TestReplay:
    """Tests for iter_turns and replay."""

    def test_replay_is_deterministic(self, aggregator, make_session):
        """Test that replaying twice gives identical aggregates."""
        session = make_session(
            [("anxious about work", "That sounds really hard."), ("can't sleep", "Try journaling.")],
            crisis_at={1},
        )

        assert aggregator.replay(session.messages) == aggregator.replay(session.messages)

    def test_replay_marks_crisis_from_tags(self, aggregator, make_session):
        """Test that recorded safety tags replay as crisis turns."""
        session = make_session([("hi", "hello"), ("I want to die", ""), ("ok", "ok")], crisis_at={1})

        states = list(aggregator.iter_turns(session.messages))

        assert [s.is_crisis_turn for s in states] == [False, True, False]
        assert states[2].metadata.crisis_indicator_count == 1
        assert states[2].quality.safety_compliance_flag is True

    def test_replay_recovers_matched_patterns(self, aggregator):
        """Test that crisis signal labels replay as the verdict's matched patterns."""
        session = Session.new(now=BASE_TIME)
        session.add_message(
            Role.USER,
            "I want to kill myself",
            tags={SYSTEM_SAFETY_TAG, "signal:crisis_kill_self"},
            timestamp=BASE_TIME,
        )
        session.add_message(
            Role.SYSTEM_SAFETY, SAFETY_RESPONSE, tags={SYSTEM_SAFETY_TAG}, timestamp=BASE_TIME
        )

        (state,) = aggregator.iter_turns(session.messages)

        assert state.verdict.matched_patterns == ("kill_self",)

    def test_trailing_user_message_has_no_turn(self, aggregator, make_session):
        """Test that an unanswered final user message yields no turn."""
        session = make_session([("hi", "hello")])
        session.add_message(Role.USER, "are you there?")

        assert len(list(aggregator.iter_turns(session.messages))) == 1

    def test_consecutive_user_messages(self, aggregator, make_session):
        """Test that only the last of consecutive user messages pairs with the reply."""
        session = Session.new(now=BASE_TIME)
        session.add_message(Role.USER, "first", timestamp=BASE_TIME)
        session.add_message(Role.USER, "second", timestamp=BASE_TIME)
        session.add_message(Role.ASSISTANT, "reply", timestamp=BASE_TIME)

        states = list(aggregator.iter_turns(session.messages))

        assert len(states) == 1
        assert states[0].user_message.content == "second"

    def test_empty_messages(self, aggregator):
        """Test that replaying nothing gives the default aggregates."""
        assert aggregator.replay([]) == (TherapeuticMetadata(), SessionQuality())
