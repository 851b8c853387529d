"""
Session data models.

Python dataclasses for a therapeutic conversation session and its running
aggregates. These are the values the orchestrator passes between the crisis
detector, the metadata aggregator and the session store, and the shape that
is persisted as one JSON record per session.
"""

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from dateutil import parser as date_parser

from chiron.models.labels import SYSTEM_SAFETY_TAG, normalize_labels

SCORE_MIN = 0.0
SCORE_MAX = 10.0
NEUTRAL_SCORE = 5.0

PREVIEW_CHARS = 100


class Role(str, enum.Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM_SAFETY = "system-safety"


class TherapyPhase(str, enum.Enum):
    """Coarse stage of a session; ordered, advancing forward only."""

    INTAKE = "intake"
    ASSESSMENT = "assessment"
    INTERVENTION = "intervention"
    MONITORING = "monitoring"
    CLOSURE = "closure"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)

    def next(self) -> "TherapyPhase":
        """Return the following phase (closure is terminal)."""
        return _PHASE_ORDER[min(self.rank + 1, len(_PHASE_ORDER) - 1)]


_PHASE_ORDER = (
    TherapyPhase.INTAKE,
    TherapyPhase.ASSESSMENT,
    TherapyPhase.INTERVENTION,
    TherapyPhase.MONITORING,
    TherapyPhase.CLOSURE,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    if not isinstance(value, str):
        raise ValueError(f"Invalid timestamp: {value!r}")
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid timestamp format: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require(data: dict, key: str, kind: type | tuple[type, ...]) -> Any:
    if key not in data:
        raise ValueError(f"missing required field '{key}'")
    value = data[key]
    if not isinstance(value, kind):
        raise ValueError(f"field '{key}' has invalid type {type(value).__name__}")
    return value


def _string_set(data: dict, key: str) -> set[str]:
    values = data.get(key, [])
    if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
        raise ValueError(f"field '{key}' must be a list of strings")
    return set(values)


@dataclass(frozen=True)
class Message:
    """One utterance. Content is stored verbatim."""

    role: Role
    content: str
    timestamp: datetime
    tags: frozenset[str] = frozenset()

    @property
    def is_safety_flagged(self) -> bool:
        return SYSTEM_SAFETY_TAG in self.tags

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "tags": sorted(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        if not isinstance(data, dict):
            raise ValueError("message must be an object")
        role_value = _require(data, "role", str)
        try:
            role = Role(role_value)
        except ValueError as e:
            raise ValueError(f"unknown message role '{role_value}'") from e
        tags = data.get("tags", [])
        if not isinstance(tags, list):
            raise ValueError("message tags must be a list")
        return cls(
            role=role,
            content=_require(data, "content", str),
            timestamp=parse_timestamp(data.get("timestamp")),
            tags=normalize_labels(tags, strict=False),
        )


@dataclass
class TherapeuticMetadata:
    """Running aggregate of therapeutic content over a session."""

    primary_concerns: set[str] = field(default_factory=set)
    intervention_techniques: set[str] = field(default_factory=set)
    therapy_phase: TherapyPhase = TherapyPhase.INTAKE
    progress_indicators: dict[str, float] = field(default_factory=dict)
    crisis_indicator_count: int = 0

    def copy(self) -> "TherapeuticMetadata":
        return replace(
            self,
            primary_concerns=set(self.primary_concerns),
            intervention_techniques=set(self.intervention_techniques),
            progress_indicators=dict(self.progress_indicators),
        )

    def to_dict(self) -> dict:
        return {
            "primary_concerns": sorted(self.primary_concerns),
            "intervention_techniques": sorted(self.intervention_techniques),
            "therapy_phase": self.therapy_phase.value,
            "progress_indicators": {
                name: self.progress_indicators[name]
                for name in sorted(self.progress_indicators)
            },
            "crisis_indicator_count": self.crisis_indicator_count,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TherapeuticMetadata":
        if not isinstance(data, dict):
            raise ValueError("therapeutic_metadata must be an object")
        phase_value = _require(data, "therapy_phase", str)
        try:
            phase = TherapyPhase(phase_value)
        except ValueError as e:
            raise ValueError(f"unknown therapy phase '{phase_value}'") from e

        indicators = data.get("progress_indicators", {})
        if not isinstance(indicators, dict):
            raise ValueError("progress_indicators must be an object")
        progress: dict[str, float] = {}
        for name, value in indicators.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"progress indicator '{name}' must be numeric")
            progress[name] = float(value)

        count = data.get("crisis_indicator_count", 0)
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ValueError("crisis_indicator_count must be a non-negative integer")

        return cls(
            primary_concerns=_string_set(data, "primary_concerns"),
            intervention_techniques=_string_set(data, "intervention_techniques"),
            therapy_phase=phase,
            progress_indicators=progress,
            crisis_indicator_count=count,
        )


@dataclass
class SessionQuality:
    """Running quality aggregate, separate from therapeutic content."""

    alliance_score: float = NEUTRAL_SCORE
    coherence_score: float = NEUTRAL_SCORE
    safety_compliance_flag: bool = True

    def copy(self) -> "SessionQuality":
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "alliance_score": self.alliance_score,
            "coherence_score": self.coherence_score,
            "safety_compliance_flag": self.safety_compliance_flag,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SessionQuality":
        if not isinstance(data, dict):
            raise ValueError("session_quality must be an object")
        scores = {}
        for key in ("alliance_score", "coherence_score"):
            value = _require(data, key, (int, float))
            if isinstance(value, bool) or not SCORE_MIN <= value <= SCORE_MAX:
                raise ValueError(f"{key} out of range: {value!r}")
            scores[key] = float(value)
        return cls(
            safety_compliance_flag=_require(data, "safety_compliance_flag", bool),
            **scores,
        )


@dataclass
class Session:
    """One persisted therapeutic conversation and its aggregates."""

    id: str
    created_at: datetime
    last_updated: datetime
    messages: list[Message] = field(default_factory=list)
    therapeutic_metadata: TherapeuticMetadata = field(default_factory=TherapeuticMetadata)
    session_quality: SessionQuality = field(default_factory=SessionQuality)

    @classmethod
    def new(cls, now: Optional[datetime] = None) -> "Session":
        """Create an empty session with a fresh id and default aggregates."""
        now = now or utcnow()
        return cls(id=str(uuid.uuid4()), created_at=now, last_updated=now)

    def build_message(
        self,
        role: Role,
        content: str,
        tags: Iterable[str] = (),
        timestamp: Optional[datetime] = None,
        after: Optional[Message] = None,
    ) -> Message:
        """Create a message that may be appended without breaking timestamp order.

        The timestamp is clamped to be no earlier than the last message in
        the session (or `after`, for messages staged in the same turn).
        """
        timestamp = timestamp or utcnow()
        floor = after or (self.messages[-1] if self.messages else None)
        if floor is not None and timestamp < floor.timestamp:
            timestamp = floor.timestamp
        if timestamp < self.created_at:
            timestamp = self.created_at
        return Message(role=role, content=content, timestamp=timestamp, tags=normalize_labels(tags))

    def append(self, message: Message) -> None:
        """Append a message, keeping timestamps non-decreasing."""
        if self.messages and message.timestamp < self.messages[-1].timestamp:
            raise ValueError("message timestamps must be non-decreasing")
        self.messages.append(message)
        self.touch(message.timestamp)

    def add_message(
        self,
        role: Role,
        content: str,
        tags: Iterable[str] = (),
        timestamp: Optional[datetime] = None,
    ) -> Message:
        message = self.build_message(role, content, tags=tags, timestamp=timestamp)
        self.append(message)
        return message

    def touch(self, when: Optional[datetime] = None) -> None:
        """Advance last_updated (never moves backwards)."""
        when = when or utcnow()
        if when > self.last_updated:
            self.last_updated = when

    @property
    def user_turn_count(self) -> int:
        return sum(1 for m in self.messages if m.role == Role.USER)

    @property
    def preview(self) -> str:
        if not self.messages:
            return "Empty session"
        return self.messages[0].content[:PREVIEW_CHARS]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
            "therapeutic_metadata": self.therapeutic_metadata.to_dict(),
            "session_quality": self.session_quality.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Session":
        """Build a Session from a persisted record.

        Unknown fields are ignored. Raises ValueError on missing fields,
        wrong types or violated invariants.
        """
        if not isinstance(data, dict):
            raise ValueError("session record must be an object")

        raw_messages = _require(data, "messages", list)
        messages = [Message.from_dict(m) for m in raw_messages]
        if not messages:
            raise ValueError("persisted session has no messages")
        for earlier, later in zip(messages, messages[1:]):
            if later.timestamp < earlier.timestamp:
                raise ValueError("message timestamps are not in order")

        created_at = parse_timestamp(data.get("created_at"))
        last_updated = parse_timestamp(data.get("last_updated"))
        if last_updated < created_at:
            raise ValueError("last_updated precedes created_at")

        session_id = _require(data, "id", str)
        if not session_id:
            raise ValueError("empty session id")

        return cls(
            id=session_id,
            created_at=created_at,
            last_updated=last_updated,
            messages=messages,
            therapeutic_metadata=TherapeuticMetadata.from_dict(
                _require(data, "therapeutic_metadata", dict)
            ),
            session_quality=SessionQuality.from_dict(_require(data, "session_quality", dict)),
        )


@dataclass(frozen=True)
class SessionSummary:
    """Lightweight projection of a session for listing."""

    id: str
    created_at: datetime
    last_updated: datetime
    message_count: int
    therapy_phase: TherapyPhase
    primary_concerns: tuple[str, ...]
    preview: str

    @classmethod
    def from_record(cls, data: Any) -> "SessionSummary":
        """Project a raw persisted record without building Message objects."""
        if not isinstance(data, dict):
            raise ValueError("session record must be an object")
        messages = _require(data, "messages", list)
        metadata = _require(data, "therapeutic_metadata", dict)
        phase_value = _require(metadata, "therapy_phase", str)
        try:
            phase = TherapyPhase(phase_value)
        except ValueError as e:
            raise ValueError(f"unknown therapy phase '{phase_value}'") from e

        preview = "Empty session"
        if messages:
            first = messages[0]
            if not isinstance(first, dict) or not isinstance(first.get("content"), str):
                raise ValueError("first message has no content")
            preview = first["content"][:PREVIEW_CHARS]

        return cls(
            id=_require(data, "id", str),
            created_at=parse_timestamp(data.get("created_at")),
            last_updated=parse_timestamp(data.get("last_updated")),
            message_count=len(messages),
            therapy_phase=phase,
            primary_concerns=tuple(sorted(_string_set(metadata, "primary_concerns"))),
            preview=preview,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
            "message_count": self.message_count,
            "therapy_phase": self.therapy_phase.value,
            "primary_concerns": list(self.primary_concerns),
            "preview": self.preview,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SessionSummary":
        if not isinstance(data, dict):
            raise ValueError("session summary must be an object")
        message_count = _require(data, "message_count", int)
        if isinstance(message_count, bool) or message_count < 0:
            raise ValueError("invalid message_count")
        return cls(
            id=_require(data, "id", str),
            created_at=parse_timestamp(data.get("created_at")),
            last_updated=parse_timestamp(data.get("last_updated")),
            message_count=message_count,
            therapy_phase=TherapyPhase(_require(data, "therapy_phase", str)),
            primary_concerns=tuple(sorted(_string_set(data, "primary_concerns"))),
            preview=_require(data, "preview", str),
        )
