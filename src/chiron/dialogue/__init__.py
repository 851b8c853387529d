"""Dialogue pipeline: tagging, aggregation, prompting and turn orchestration."""

from .tagging import TherapeuticTagger
from .aggregator import AggregatorConfig, MetadataAggregator, TurnState
from .prompts import build_therapeutic_prompt, therapeutic_summary
from .orchestrator import ConversationOrchestrator, TurnResult

__all__ = [
    "AggregatorConfig",
    "ConversationOrchestrator",
    "MetadataAggregator",
    "TherapeuticTagger",
    "TurnResult",
    "TurnState",
    "build_therapeutic_prompt",
    "therapeutic_summary",
]
