"""Retry policy for registry operations.

Key Components:
    RetryPolicy: Exponential backoff with jitter for transient failures

Retry Timeline (default config):
    - Attempt 1: Immediate
    - Attempt 2: ~0.5s delay (with jitter)
    - Attempt 3: ~1s delay (with jitter)

Example:
    >>> from keel.registry.resilience import RetryPolicy
    >>> from keel.schemas.pipeline import RetryConfig
    >>> policy = RetryPolicy(RetryConfig(max_attempts=3))
    >>> @policy.wrap
    ... def fetch_manifest():
    ...     return client.get_manifest(reference)
"""

from __future__ import annotations

import functools
import random
import time
from collections.abc import Callable
from typing import ParamSpec, TypeVar

import httpx
import structlog

from keel.errors import RegistryUnavailableError
from keel.schemas.pipeline import RetryConfig

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class RetryPolicy:
    """Retry policy with exponential backoff and jitter.

    Attributes:
        config: RetryConfig with max_attempts, delays, and jitter settings.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retryable_exceptions: tuple[type[Exception], ...] | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            retryable_exceptions: Exception types to retry on. Defaults to
                (RegistryUnavailableError, httpx.TransportError).
            sleep: Sleep function (injected by tests).
        """
        self._config = config or RetryConfig()
        self._retryable_exceptions = retryable_exceptions or (
            RegistryUnavailableError,
            httpx.TransportError,
        )
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        """Return the retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Uses exponential backoff: delay = initial * (multiplier ^ attempt),
        capped at max_delay_ms, with optional ±25% jitter.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds.
        """
        base_delay_ms = min(
            self._config.initial_delay_ms * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_ms,
        )

        if self._config.jitter:
            jitter_range = base_delay_ms * 0.25
            base_delay_ms += random.uniform(-jitter_range, jitter_range)

        return base_delay_ms / 1000.0

    def should_retry(self, exception: Exception) -> bool:
        """Check if an exception is retryable."""
        return isinstance(exception, self._retryable_exceptions)

    def wrap(self, func: Callable[P, T]) -> Callable[P, T]:
        """Decorator wrapping a function with retry logic.

        Non-retryable exceptions propagate immediately; the last retryable
        exception propagates once attempts are exhausted.
        """

        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return self.call(func, *args, **kwargs)

        return wrapper

    def call(self, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """Invoke ``func`` under this policy."""
        last_exception: Exception | None = None

        for attempt in range(self._config.max_attempts):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e):
                    raise

                last_exception = e
                remaining = self._config.max_attempts - attempt - 1

                if remaining > 0:
                    delay = self.calculate_delay(attempt)
                    logger.debug(
                        "retry_attempt",
                        attempt=attempt + 1,
                        max_attempts=self._config.max_attempts,
                        delay_seconds=delay,
                        error=str(e),
                    )
                    self._sleep(delay)
                else:
                    logger.warning(
                        "retry_exhausted",
                        attempts=self._config.max_attempts,
                        error=str(e),
                    )

        if last_exception:
            raise last_exception
        raise RuntimeError("Retry exhausted without exception")


__all__ = ["RetryPolicy"]
