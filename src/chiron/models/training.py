"""Training example value objects produced by the exporter."""

from dataclasses import dataclass
from datetime import datetime

from chiron.models.session import TherapyPhase


@dataclass(frozen=True)
class TherapeuticContext:
    """Snapshot of a session's therapeutic metadata at one point in the conversation."""

    primary_concerns: tuple[str, ...]
    intervention_techniques: tuple[str, ...]
    therapy_phase: TherapyPhase
    crisis_indicator_count: int

    def to_dict(self) -> dict:
        return {
            "primary_concerns": list(self.primary_concerns),
            "intervention_techniques": list(self.intervention_techniques),
            "therapy_phase": self.therapy_phase.value,
            "crisis_indicator_count": self.crisis_indicator_count,
        }


@dataclass(frozen=True)
class TrainingExample:
    """One labeled user/assistant exchange."""

    id: str
    session_id: str
    user_input: str
    assistant_response: str
    therapeutic_context: TherapeuticContext
    quality_score: float
    therapeutic_tags: tuple[str, ...]
    timestamp: datetime

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dictionary (one JSONL line)."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "user_input": self.user_input,
            "assistant_response": self.assistant_response,
            "therapeutic_context": self.therapeutic_context.to_dict(),
            "quality_score": self.quality_score,
            "therapeutic_tags": list(self.therapeutic_tags),
            "timestamp": self.timestamp.isoformat(),
        }
