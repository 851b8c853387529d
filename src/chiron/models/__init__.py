"""Data models for sessions, messages and training examples."""

from .session import (
    Message,
    Role,
    Session,
    SessionQuality,
    SessionSummary,
    TherapeuticMetadata,
    TherapyPhase,
)
from .training import TherapeuticContext, TrainingExample

__all__ = [
    "Message",
    "Role",
    "Session",
    "SessionQuality",
    "SessionSummary",
    "TherapeuticContext",
    "TherapeuticMetadata",
    "TherapyPhase",
    "TrainingExample",
]
