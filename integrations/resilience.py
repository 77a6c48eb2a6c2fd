"""
Resilience helpers shared by the provider strategies.

Implements:
- Circuit breaker pattern
- Bounded per-attempt timeout
- Exponential backoff for transient errors
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.errors import ProviderError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Provider name, used in logs
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``func()`` with circuit breaker protection.

        Raises:
            ProviderError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open", provider=self.name)
            else:
                raise ProviderError(
                    f"{self.name} circuit breaker is open",
                    transient=True,
                )

        try:
            result = await func()
        except ProviderError as e:
            # Declines and bad requests say nothing about provider health
            if e.transient:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed", provider=self.name)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning(
                "circuit_breaker_opened",
                provider=self.name,
                failure_count=self.failure_count,
            )


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.transient


async def call_provider(
    operation: str,
    func: Callable[[], Awaitable[T]],
    breaker: CircuitBreaker,
    timeout_seconds: float,
    max_attempts: int,
    wait_multiplier: float = 0.5,
) -> T:
    """
    Run one provider operation with timeout, retries and circuit breaker.

    ``func`` must translate provider failures into ``ProviderError``;
    only transient ones are retried.

    Args:
        operation: Operation name for logs (e.g. 'create_intent')
        func: Zero-argument coroutine function performing the call
        breaker: Provider circuit breaker
        timeout_seconds: Upper bound for a single attempt
        max_attempts: Total attempts for transient failures
        wait_multiplier: Backoff multiplier (seconds)

    Raises:
        ProviderError: Last error once attempts are exhausted
    """

    async def _attempt() -> T:
        try:
            return await asyncio.wait_for(func(), timeout=timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"{breaker.name} {operation} timed out after {timeout_seconds}s",
                transient=True,
            ) from e

    retrying = AsyncRetrying(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=wait_multiplier, max=8),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.warning(
                    "provider_call_retry",
                    provider=breaker.name,
                    operation=operation,
                    attempt=attempt.retry_state.attempt_number,
                )
            return await breaker.call(_attempt)

    raise AssertionError("unreachable")  # pragma: no cover
