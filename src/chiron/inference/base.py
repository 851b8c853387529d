"""Protocol for text-generation backends."""

from typing import Iterator, Protocol


class InferenceBackend(Protocol):
    """Request/response text generation.

    Implementations raise BackendUnavailableError on any failure. Retry
    policy, if any, lives inside the implementation.
    """

    def generate(self, prompt: str) -> str:
        """Return the complete generated text for a prompt."""
        ...

    def stream(self, prompt: str) -> Iterator[str]:
        """Yield generated text fragments as they arrive."""
        ...
