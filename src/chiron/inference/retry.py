"""
Retry logic with exponential backoff for backend requests.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import httpx

from chiron.exceptions import BackendUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 2
    initial_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_status_codes: set[int] = field(
        default_factory=lambda: {408, 429, 500, 502, 503, 504}
    )


class RetryableError(BackendUnavailableError):
    """Backend failure that should trigger a retry."""


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay before next retry using exponential backoff.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.initial_delay * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Up to 25% jitter
        delay += delay * 0.25 * random.random()

    return delay


def with_retry(
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for retrying backend calls on RetryableError or network errors.

    Non-retryable BackendUnavailableError propagates immediately. After the
    last attempt the final error is raised as BackendUnavailableError.
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[BackendUnavailableError] = None

            for attempt in range(config.max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except RetryableError as e:
                    last_error = e
                except httpx.RequestError as e:
                    last_error = BackendUnavailableError(f"Network error: {e}")

                if attempt < config.max_retries:
                    delay = calculate_delay(attempt, config)
                    logger.warning(
                        f"Retry {attempt + 1}/{config.max_retries} for {func.__name__}: "
                        f"{last_error}, waiting {delay:.2f}s"
                    )
                    sleep(delay)
                else:
                    logger.error(
                        f"Max retries ({config.max_retries}) exceeded for {func.__name__}: {last_error}"
                    )

            raise BackendUnavailableError(
                str(last_error) if last_error else "Backend unavailable",
                status_code=getattr(last_error, "status_code", None),
            )

        return wrapper

    return decorator


def check_response(response: httpx.Response, config: RetryConfig) -> None:
    """
    Check HTTP response and raise the matching backend error.

    Raises:
        RetryableError: If the status should be retried
        BackendUnavailableError: For other error statuses
    """
    if response.is_success:
        return

    status_code = response.status_code
    message = f"HTTP {status_code}: {response.text[:200]}"
    if status_code in config.retryable_status_codes:
        raise RetryableError(message, status_code=status_code)
    raise BackendUnavailableError(message, status_code=status_code)
