"""
Bounded retry with exponential backoff and jitter.

Delay before retry n (0-indexed):
    base  = min(initial_delay_ms * backoff_factor ** n, max_delay_ms)
    delay = base * uniform(0.5, 1.5)

The sleep is a cooperative suspension; cancelling the calling task aborts
the remaining attempts immediately.
"""

from __future__ import annotations
import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from matchrelay.errors import RetryExhausted, default_is_retryable, error_kind_of
from matchrelay.infrastructure.config import RetryConfig
from matchrelay.infrastructure.logging import get_logger
from matchrelay.infrastructure.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")

JITTER_MIN = 0.5
JITTER_MAX = 1.5


@dataclass(frozen=True)
class RetryPolicy:
    """How hard to try one dependency before giving up."""
    max_attempts: int = 3
    initial_delay_ms: float = 500.0
    backoff_factor: float = 2.0
    max_delay_ms: float = 5000.0
    is_retryable: Callable[[BaseException], bool] = default_is_retryable

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_config(
        cls,
        config: RetryConfig,
        is_retryable: Callable[[BaseException], bool] = default_is_retryable,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            initial_delay_ms=config.initial_delay_ms,
            backoff_factor=config.backoff_factor,
            max_delay_ms=config.max_delay_ms,
            is_retryable=is_retryable,
        )

    def base_delay_ms(self, attempt: int) -> float:
        """Un-jittered delay after a failed attempt (0-indexed), capped."""
        return min(self.initial_delay_ms * self.backoff_factor ** attempt, self.max_delay_ms)


@dataclass
class RetryAttempt:
    """Bookkeeping for the attempt in progress; lives for one retry() call."""
    attempt_number: int = 0
    delay_ms: float = 0.0
    last_error: Optional[BaseException] = None


class BackoffRetrier:
    """
    Runs an async operation until it succeeds, fails permanently, or the
    policy runs out of attempts.

    Usage:
        retrier = BackoffRetrier()
        accepted_id = await retrier.retry(
            lambda: transport.send(envelope),
            policy,
            dependency="primary-transport",
        )
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self._sleep = sleep
        self._rng = rng or random.Random()

    def jittered_delay_ms(self, policy: RetryPolicy, attempt: int) -> float:
        return policy.base_delay_ms(attempt) * self._rng.uniform(JITTER_MIN, JITTER_MAX)

    async def retry(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        dependency: str = "operation",
    ) -> T:
        """
        Execute operation under policy.

        Raises:
            RetryExhausted: wrapping the last error, when the error is not
                retryable or the final attempt failed
        """
        state = RetryAttempt()

        while True:
            try:
                result = await operation()
            except Exception as e:
                state.last_error = e
                metrics.record_attempt(dependency, "failure")
                retryable = policy.is_retryable(e)
                final = state.attempt_number >= policy.max_attempts - 1

                if not retryable or final:
                    logger.error(
                        "Retry exhausted",
                        dependency=dependency,
                        attempts=state.attempt_number + 1,
                        retryable=retryable,
                        error_kind=error_kind_of(e).value,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    raise RetryExhausted(state.attempt_number + 1, e, dependency) from e

                state.delay_ms = self.jittered_delay_ms(policy, state.attempt_number)
                logger.warning(
                    "Retrying after failure",
                    dependency=dependency,
                    attempt=state.attempt_number + 1,
                    max_attempts=policy.max_attempts,
                    delay_ms=round(state.delay_ms, 1),
                    error_kind=error_kind_of(e).value,
                    error_type=type(e).__name__,
                )
                metrics.record_retry_delay(dependency, state.delay_ms / 1000)

                await self._sleep(state.delay_ms / 1000)
                state.attempt_number += 1
                continue

            metrics.record_attempt(dependency, "success")
            if state.attempt_number > 0:
                logger.info(
                    "Operation succeeded after retries",
                    dependency=dependency,
                    attempts=state.attempt_number + 1,
                )
            return result
