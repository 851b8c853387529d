"""Inference backend boundary."""

from .base import InferenceBackend
from .ollama import OllamaClient
from .retry import RetryConfig

__all__ = ["InferenceBackend", "OllamaClient", "RetryConfig"]
