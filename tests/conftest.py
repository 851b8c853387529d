"""
Pytest configuration and fixtures for Chiron tests.

Provides a store on a temporary directory, scripted inference backends and
helpers for building sessions with fixed timestamps.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

import pytest

from chiron.exceptions import BackendUnavailableError
from chiron.models.labels import SYSTEM_SAFETY_TAG
from chiron.models.session import Role, Session
from chiron.safety.response import SAFETY_RESPONSE
from chiron.storage.session_store import SessionStore

BASE_TIME = datetime(2025, 1, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeBackend:
    """Scripted inference backend that records every prompt it receives."""

    def __init__(self, replies: Optional[list[str]] = None, fail: bool = False):
        self.replies = list(replies or [])
        self.fail = fail
        self.prompts: list[str] = []

    def _next_reply(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise BackendUnavailableError("backend is down")
        if self.replies:
            return self.replies.pop(0)
        return "I hear you. That sounds really hard."

    def generate(self, prompt: str) -> str:
        return self._next_reply(prompt)

    def stream(self, prompt: str) -> Iterator[str]:
        reply = self._next_reply(prompt)
        midpoint = len(reply) // 2
        yield reply[:midpoint]
        yield reply[midpoint:]

    def check_connection(self) -> str:
        return self._next_reply("Hello")[:50]

    def close(self) -> None:
        pass


def build_session(
    exchanges: list[tuple[str, str]],
    session_id: str = "session-a",
    start: datetime = BASE_TIME,
    crisis_at: Optional[set[int]] = None,
) -> Session:
    """Build a session from (user, reply) pairs, one minute apart.

    Indices in `crisis_at` are recorded as crisis turns with the safety
    response. Aggregates are left at their defaults.
    """
    crisis_at = crisis_at or set()
    session = Session(id=session_id, created_at=start, last_updated=start)
    when = start
    for index, (user_text, reply_text) in enumerate(exchanges):
        if index in crisis_at:
            session.add_message(Role.USER, user_text, tags={SYSTEM_SAFETY_TAG}, timestamp=when)
            session.add_message(
                Role.SYSTEM_SAFETY, SAFETY_RESPONSE, tags={SYSTEM_SAFETY_TAG}, timestamp=when
            )
        else:
            session.add_message(Role.USER, user_text, timestamp=when)
            session.add_message(Role.ASSISTANT, reply_text, timestamp=when + timedelta(seconds=5))
        when += timedelta(minutes=1)
    return session


@pytest.fixture
def sessions_dir(tmp_path):
    """Directory for session records."""
    return tmp_path / "sessions"


@pytest.fixture
def store(sessions_dir) -> SessionStore:
    """Session store on a temporary directory."""
    return SessionStore(sessions_dir)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def sample_session() -> Session:
    """A short non-crisis session."""
    return build_session(
        [
            ("I've been feeling anxious about work lately.", "That sounds really hard."),
            ("My boss keeps adding deadlines.", "Let's break it down into a next step."),
        ]
    )


@pytest.fixture
def make_session():
    """Factory fixture for sessions built from (user, reply) pairs."""
    return build_session


@pytest.fixture
def make_backend():
    """Factory fixture for scripted backends."""
    return FakeBackend
