"""Prompt construction for the inference backend."""

from chiron.models.session import Role, Session

SYSTEM_PERSONA = (
    "You are Chiron, a supportive AI companion focused on mental wellness.\n"
    "You provide empathetic listening and gentle guidance but never give medical "
    "advice or diagnoses.\n"
    "Always remind users you're not a replacement for professional mental health care."
)

ROLE_LABELS = {
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
    Role.SYSTEM_SAFETY: "Safety",
}


def conversation_context(session: Session, window: int = 10) -> str:
    """Render the last `window` messages as `Role: content` lines."""
    recent = session.messages[-window:] if window > 0 else []
    return "\n".join(f"{ROLE_LABELS[m.role]}: {m.content}" for m in recent)


def build_therapeutic_prompt(session: Session, window: int = 10) -> str:
    """Assemble the full prompt for the next assistant reply."""
    metadata = session.therapeutic_metadata
    return (
        f"{SYSTEM_PERSONA}\n\n"
        f"Current therapy phase: {metadata.therapy_phase.value}\n"
        f"Turn count: {session.user_turn_count}\n\n"
        f"Conversation context:\n"
        f"{conversation_context(session, window)}\n\n"
        "Respond empathetically to the most recent user message."
    )


def therapeutic_summary(session: Session) -> str:
    metadata = session.therapeutic_metadata
    return (
        f"Session {session.id} - Phase: {metadata.therapy_phase.value} | "
        f"Concerns: {', '.join(sorted(metadata.primary_concerns))} | "
        f"Techniques: {', '.join(sorted(metadata.intervention_techniques))}"
    )
