"""Optional agents the orchestrator can route turns to."""

from .protocol import Agent, AgentRegistry, AgentRequest, AgentResponse
from .research import (
    IntentDetector,
    IntentKind,
    ResearchAgent,
    ResearchIntent,
    UrlValidator,
    WikipediaClient,
)

__all__ = [
    "Agent",
    "AgentRegistry",
    "AgentRequest",
    "AgentResponse",
    "IntentDetector",
    "IntentKind",
    "ResearchAgent",
    "ResearchIntent",
    "UrlValidator",
    "WikipediaClient",
]
