"""
Ollama inference client.

Talks to a local Ollama server over its `/api/generate` endpoint, either
returning the full response or streaming newline-delimited JSON fragments.
"""

import json
import logging
from typing import Any, Iterator, Optional

import httpx

from chiron.exceptions import BackendUnavailableError
from chiron.inference.retry import RetryConfig, check_response, with_retry

logger = logging.getLogger(__name__)

GENERATE_PATH = "/api/generate"


class OllamaClient:
    """
    HTTP client for an Ollama server.

    Usage:
        with OllamaClient("http://localhost:11434", model="gemma3n:e4b") as client:
            client.check_connection()
            text = client.generate("Hello")
            for fragment in client.stream("Hello"):
                print(fragment, end="")
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 120.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Ollama server URL
            model: Model name to generate with
            timeout: Request timeout in seconds
            retry_config: Retry behavior for non-streaming requests
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.retry_config = retry_config or RetryConfig()
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)
        self._generate_with_retry = with_retry(self.retry_config)(self._generate_once)

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "OllamaClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def generate(self, prompt: str) -> str:
        """Generate a complete response.

        Raises:
            BackendUnavailableError: If the server cannot be reached or answers with an error
        """
        return self._generate_with_retry(prompt)

    def stream(self, prompt: str) -> Iterator[str]:
        """Stream response fragments. Streams are not retried.

        Raises:
            BackendUnavailableError: If the stream cannot be opened or breaks off
        """
        payload = {"model": self.model, "prompt": prompt, "stream": True}
        try:
            with self._client.stream("POST", GENERATE_PATH, json=payload) as response:
                if not response.is_success:
                    response.read()
                    check_response(response, self.retry_config)

                for line in response.iter_lines():
                    if not line.strip():
                        continue
                    chunk = self._decode(line)
                    fragment = chunk.get("response", "")
                    if fragment:
                        yield fragment
                    if chunk.get("done"):
                        return
        except httpx.HTTPError as e:
            raise BackendUnavailableError(f"Stream from {self.base_url} failed: {e}") from e

        raise BackendUnavailableError("Stream ended before the response was complete")

    def check_connection(self) -> str:
        """Send a short test prompt and return the start of the reply."""
        response = self.generate("Hello")
        logger.info(f"Ollama test response: {response[:50]}")
        return response[:50]

    def _generate_once(self, prompt: str) -> str:
        payload = {"model": self.model, "prompt": prompt, "stream": False}
        response = self._client.post(GENERATE_PATH, json=payload)
        check_response(response, self.retry_config)
        data = self._decode(response.text)
        text = data.get("response")
        if not isinstance(text, str):
            raise BackendUnavailableError("Ollama response has no 'response' text")
        return text

    @staticmethod
    def _decode(raw: str) -> dict[str, Any]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise BackendUnavailableError(f"Undecodable response from Ollama: {e}") from e
        if not isinstance(data, dict):
            raise BackendUnavailableError("Unexpected response shape from Ollama")
        if "error" in data:
            raise BackendUnavailableError(f"Ollama error: {data['error']}")
        return data
