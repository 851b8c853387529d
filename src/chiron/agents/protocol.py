"""
Agent protocol and registry.

Agents are optional helpers the orchestrator may route a non-crisis turn to
instead of the inference backend. Each agent scores how well it can handle
a request; the registry picks the highest score above a minimum confidence.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.5


@dataclass(frozen=True)
class AgentRequest:
    """A user message plus the session context an agent may use."""

    input: str
    session_id: str = ""
    therapy_phase: str = "intake"
    history: tuple[str, ...] = ()


@dataclass(frozen=True)
class AgentResponse:
    """Content produced by an agent."""

    content: str
    agent_name: str
    confidence: float
    sources: tuple[str, ...] = ()
    content_type: str = "text"


class Agent(Protocol):
    """Protocol for agents."""

    @property
    def name(self) -> str:
        ...

    def can_handle(self, request: AgentRequest) -> float:
        """Score from 0.0 (cannot handle) to 1.0 (perfect match)."""
        ...

    def execute(self, request: AgentRequest) -> AgentResponse:
        ...


@dataclass
class AgentRegistry:
    """Registered agents, keyed by name."""

    min_confidence: float = MIN_CONFIDENCE
    agents: dict[str, Agent] = field(default_factory=dict)

    def register(self, agent: Agent) -> None:
        self.agents[agent.name] = agent
        logger.debug(f"Registered agent {agent.name}")

    def get(self, name: str) -> Optional[Agent]:
        return self.agents.get(name)

    def find_best_agent(self, request: AgentRequest) -> Optional[Agent]:
        """Return the agent with the highest score above min_confidence.

        Ties go to the agent registered first.
        """
        best: Optional[Agent] = None
        best_score = 0.0
        for agent in self.agents.values():
            score = agent.can_handle(request)
            if score > best_score:
                best, best_score = agent, score

        if best is None or best_score <= self.min_confidence:
            return None
        logger.debug(f"Routing request to agent {best.name} (score {best_score:.2f})")
        return best
