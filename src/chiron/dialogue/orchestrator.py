"""Conversation orchestrator.

Drives one session turn by turn: classify the user text, short-circuit to the
fixed safety response on a crisis verdict, otherwise ask the inference
backend for a reply, then update aggregates and persist on a cadence. When an
agent registry is configured, a non-crisis turn that an agent claims is
answered by that agent instead of the backend.

Each turn is staged and committed in one step. If anything fails before the
commit (backend unavailable, a broken stream, a tagging error) the session is
left exactly as it was before the turn.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional

from chiron.agents.protocol import Agent, AgentRegistry, AgentRequest
from chiron.dialogue.aggregator import MetadataAggregator
from chiron.dialogue.prompts import build_therapeutic_prompt
from chiron.dialogue.tagging import TherapeuticTagger
from chiron.inference.base import InferenceBackend
from chiron.models.labels import SIGNAL, SYSTEM_SAFETY_TAG, make_label
from chiron.models.session import Message, Role, Session
from chiron.safety.crisis_detection import (
    CrisisClassifier,
    KeywordCrisisDetector,
    Verdict,
    crisis_signal_labels,
)
from chiron.safety.filters import SafetyFilters
from chiron.safety.response import SAFETY_RESPONSE
from chiron.storage.session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_AUTOSAVE_EVERY = 4


@dataclass(frozen=True)
class TurnResult:
    """Outcome of one processed turn."""

    user_message: Message
    reply: Message
    verdict: Verdict
    saved: bool
    agent: Optional[str] = None

    @property
    def is_crisis(self) -> bool:
        return self.verdict.is_crisis

    @property
    def text(self) -> str:
        return self.reply.content


class ConversationOrchestrator:
    """Runs turns for a single session.

    Passing `store=None` is the no-persistence mode: the store is never
    touched and nothing is written.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        store: Optional[SessionStore] = None,
        detector: Optional[CrisisClassifier] = None,
        aggregator: Optional[MetadataAggregator] = None,
        tagger: Optional[TherapeuticTagger] = None,
        filters: Optional[SafetyFilters] = None,
        autosave_every: int = DEFAULT_AUTOSAVE_EVERY,
        context_window: int = 10,
        session: Optional[Session] = None,
        agents: Optional[AgentRegistry] = None,
    ):
        if autosave_every < 1:
            raise ValueError("autosave_every must be at least 1")
        self.backend = backend
        self.store = store
        self.detector = detector or KeywordCrisisDetector()
        self.aggregator = aggregator or MetadataAggregator()
        self.tagger = tagger or TherapeuticTagger()
        self.filters = filters or SafetyFilters()
        self.autosave_every = autosave_every
        self.context_window = context_window
        self.session = session or Session.new()
        self.agents = agents
        self._unsaved_messages = 0

    @property
    def persistence_enabled(self) -> bool:
        return self.store is not None

    def start_new(self) -> Session:
        """Replace the current session with a fresh one."""
        self.session = self.store.create() if self.store else Session.new()
        self._unsaved_messages = 0
        logger.info(f"Started session {self.session.id}")
        return self.session

    def resume(self, session_id: str) -> Session:
        """Load a persisted session and continue it.

        Raises:
            RuntimeError: In no-persistence mode
            SessionNotFoundError, CorruptSessionError, StorageIOError
        """
        if self.store is None:
            raise RuntimeError("Cannot resume a session without persistence")
        self.session = self.store.load(session_id)
        self._unsaved_messages = 0
        phase = self.session.therapeutic_metadata.therapy_phase.value
        logger.info(
            f"Resumed session {session_id} "
            f"({len(self.session.messages)} messages, phase {phase})"
        )
        return self.session

    def process_turn(
        self,
        text: str,
        on_fragment: Optional[Callable[[str], None]] = None,
    ) -> TurnResult:
        """Process one user message.

        Args:
            text: Raw user text, stored verbatim
            on_fragment: When given, the reply is streamed and each fragment
                is passed to this callback as it arrives

        Returns:
            TurnResult with the recorded messages and verdict

        Raises:
            BackendUnavailableError: If the backend fails on a non-crisis turn;
                the session is unchanged
            StorageIOError: If an autosave fails; the turn is kept in memory
        """
        verdict = self.detector.classify(text)
        if verdict.is_crisis:
            return self._handle_crisis(text, verdict)

        if self.agents is not None:
            request = AgentRequest(
                input=text,
                session_id=self.session.id,
                therapy_phase=self.session.therapeutic_metadata.therapy_phase.value,
                history=tuple(m.content for m in self.session.messages[-self.context_window :]),
            )
            agent = self.agents.find_best_agent(request)
            if agent is not None:
                return self._handle_agent(text, agent, request, verdict, on_fragment)

        user_msg = self.session.build_message(
            Role.USER, text, tags=self.tagger.tag_user_message(text)
        )
        staged = replace(self.session, messages=[*self.session.messages, user_msg])
        prompt = build_therapeutic_prompt(staged, self.context_window)

        if on_fragment is None:
            raw_reply = self.backend.generate(prompt)
        else:
            fragments = []
            for fragment in self.backend.stream(prompt):
                fragments.append(fragment)
                on_fragment(fragment)
            raw_reply = "".join(fragments)

        reply_text = self.filters.filter_output(raw_reply)
        reply = self.session.build_message(
            Role.ASSISTANT,
            reply_text,
            tags=self.tagger.tag_assistant_message(reply_text),
            after=user_msg,
        )

        self._commit(user_msg, reply, verdict)
        saved = self._autosave()
        return TurnResult(user_message=user_msg, reply=reply, verdict=verdict, saved=saved)

    def close(self) -> bool:
        """Save on graceful termination. Returns True if a save happened."""
        if self.store is None:
            logger.info(f"Session {self.session.id} ended without persistence")
            return False
        if not self.session.messages:
            logger.info(f"Session {self.session.id} has no messages; nothing to save")
            return False
        self.store.save(self.session)
        self._unsaved_messages = 0
        logger.info(f"Session {self.session.id} saved on exit")
        return True

    def _handle_agent(
        self,
        text: str,
        agent: Agent,
        request: AgentRequest,
        verdict: Verdict,
        on_fragment: Optional[Callable[[str], None]],
    ) -> TurnResult:
        """Record an agent's answer as the assistant reply."""
        user_msg = self.session.build_message(
            Role.USER, text, tags=self.tagger.tag_user_message(text)
        )
        response = agent.execute(request)
        if on_fragment is not None:
            on_fragment(response.content)

        reply_text = self.filters.filter_output(response.content)
        reply = self.session.build_message(
            Role.ASSISTANT,
            reply_text,
            tags=self.tagger.tag_assistant_message(reply_text) | {make_label(SIGNAL, agent.name)},
            after=user_msg,
        )

        self._commit(user_msg, reply, verdict)
        logger.info(f"Session {self.session.id}: turn answered by agent {agent.name}")
        saved = self._autosave()
        return TurnResult(
            user_message=user_msg, reply=reply, verdict=verdict, saved=saved, agent=agent.name
        )

    def _handle_crisis(self, text: str, verdict: Verdict) -> TurnResult:
        """Record the fixed safety response without calling the backend."""
        user_tags = (
            self.tagger.tag_user_message(text) | crisis_signal_labels(verdict) | {SYSTEM_SAFETY_TAG}
        )
        user_msg = self.session.build_message(Role.USER, text, tags=user_tags)
        reply = self.session.build_message(
            Role.SYSTEM_SAFETY,
            SAFETY_RESPONSE,
            tags={SYSTEM_SAFETY_TAG},
            after=user_msg,
        )

        self._commit(user_msg, reply, verdict)
        logger.warning(
            f"Session {self.session.id}: safety response delivered "
            f"(crisis count {self.session.therapeutic_metadata.crisis_indicator_count})"
        )

        saved = False
        if self.store is not None:
            self.store.save(self.session)
            self._unsaved_messages = 0
            saved = True
        return TurnResult(user_message=user_msg, reply=reply, verdict=verdict, saved=saved)

    def _commit(self, user_msg: Message, reply: Message, verdict: Verdict) -> None:
        metadata, quality = self.aggregator.update(self.session, user_msg, reply, verdict)
        self.session.append(user_msg)
        self.session.append(reply)
        self.session.therapeutic_metadata = metadata
        self.session.session_quality = quality
        self._unsaved_messages += 2

    def _autosave(self) -> bool:
        if self.store is None or self._unsaved_messages < self.autosave_every:
            return False
        self.store.save(self.session)
        self._unsaved_messages = 0
        logger.debug(f"Autosaved session {self.session.id}")
        return True
