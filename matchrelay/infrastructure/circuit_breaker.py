"""
Circuit Breaker for downstream dependencies.

Implements the circuit breaker pattern with:
- CLOSED: Normal operation
- OPEN: Failing, reject all requests
- HALF_OPEN: One trial request decides between CLOSED and OPEN

Usage:
    breaker = CircuitBreaker("primary-transport")
    result = await breaker.execute(lambda: transport.send(envelope))
"""

from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
from enum import Enum

from matchrelay.errors import CircuitOpenError
from matchrelay.infrastructure.logging import get_logger
from matchrelay.infrastructure.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Single trial in flight


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    max_failures: int = 3             # Failures before opening
    reset_timeout_ms: float = 30000.0  # Time in OPEN before a trial is allowed


@dataclass
class CircuitStats:
    """Statistics for a circuit breaker."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    cancelled_calls: int = 0
    state_changes: int = 0

    @property
    def failure_rate(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.failed_calls / self.total_calls


class CircuitBreaker:
    """
    Circuit breaker guarding one named dependency.

    State changes happen only in the synchronous sections between awaits,
    so concurrent callers on one event loop never lose an update.

    A cancelled call counts as neither success nor failure. If it was the
    HALF_OPEN trial, the breaker goes back to OPEN with last_failure_at
    untouched, so the next caller gets a fresh trial.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.on_state_change = on_state_change
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: Optional[float] = None
        self._trial_in_flight = False

        self.stats = CircuitStats()

        metrics.update_breaker_state(name, self._state.value)
        logger.info("Circuit breaker initialized", breaker=name, state=self._state.value)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_at(self) -> Optional[float]:
        return self._last_failure_at

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    def _transition_to(self, new_state: CircuitState):
        """Transition to a new state."""
        if self._state == new_state:
            return

        old_state = self._state
        self._state = new_state
        self.stats.state_changes += 1

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0

        logger.warning(
            "Circuit breaker state change",
            breaker=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=self._failure_count,
        )
        metrics.update_breaker_state(self.name, new_state.value)

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error("Circuit breaker callback error", breaker=self.name, error=str(e))

    def _reset_timeout_elapsed(self) -> bool:
        if self._last_failure_at is None:
            return True
        elapsed_ms = (self._clock() - self._last_failure_at) * 1000
        return elapsed_ms > self.config.reset_timeout_ms

    def _admit(self) -> bool:
        """
        Decide whether a call may proceed.

        Returns True when the admitted call is the HALF_OPEN trial.
        """
        if self._state == CircuitState.OPEN:
            if not self._reset_timeout_elapsed():
                self.stats.rejected_calls += 1
                raise CircuitOpenError(self.name)
            self._transition_to(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                self.stats.rejected_calls += 1
                raise CircuitOpenError(
                    self.name, f"Circuit {self.name} is HALF_OPEN, trial already in flight"
                )
            self._trial_in_flight = True
            return True

        return False

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run an operation through the circuit breaker.

        Raises:
            CircuitOpenError: If the circuit is rejecting calls
        """
        is_trial = self._admit()
        self.stats.total_calls += 1

        try:
            result = await operation()
        except asyncio.CancelledError:
            self._record_cancelled(is_trial)
            raise
        except Exception as e:
            self._record_failure(e, is_trial)
            raise

        self._record_success(is_trial)
        return result

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Call a coroutine function with arguments through the breaker."""
        return await self.execute(lambda: func(*args, **kwargs))

    def _record_success(self, is_trial: bool):
        self.stats.successful_calls += 1
        if is_trial:
            self._trial_in_flight = False
            logger.info("Circuit breaker trial succeeded", breaker=self.name)
            self._transition_to(CircuitState.CLOSED)

    def _record_failure(self, error: Exception, is_trial: bool):
        self.stats.failed_calls += 1
        self._failure_count += 1
        self._last_failure_at = self._clock()

        logger.warning(
            "Circuit breaker recorded failure",
            breaker=self.name,
            failure_count=self._failure_count,
            error_type=type(error).__name__,
            error=str(error),
        )

        if is_trial:
            self._trial_in_flight = False
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.max_failures:
            self._transition_to(CircuitState.OPEN)

    def _record_cancelled(self, is_trial: bool):
        self.stats.cancelled_calls += 1
        if is_trial:
            self._trial_in_flight = False
            self._transition_to(CircuitState.OPEN)
        logger.info("Circuit breaker call cancelled", breaker=self.name, trial=is_trial)

    def force_open(self):
        """Force the circuit to open (emergency stop)."""
        self._last_failure_at = self._clock()
        self._transition_to(CircuitState.OPEN)

    def reset(self):
        """Reset the circuit breaker to initial state."""
        self._transition_to(CircuitState.CLOSED)
        self._failure_count = 0
        self._last_failure_at = None
        self._trial_in_flight = False
        self.stats = CircuitStats()

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "stats": {
                "total_calls": self.stats.total_calls,
                "successful_calls": self.stats.successful_calls,
                "failed_calls": self.stats.failed_calls,
                "rejected_calls": self.stats.rejected_calls,
                "cancelled_calls": self.stats.cancelled_calls,
                "failure_rate": round(self.stats.failure_rate, 3),
                "state_changes": self.stats.state_changes,
            },
        }


class CircuitBreakerRegistry:
    """
    Registry for the breakers of one publisher.

    Breakers never share counters; each name gets its own instance.

    Usage:
        registry = CircuitBreakerRegistry()
        transport_breaker = registry.get("primary-transport")
        queue_breaker = registry.get("secondary-queue")
    """

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker by name."""
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(
                name,
                config or self.default_config,
                clock=self._clock,
            )
        return self._breakers[name]

    def __getitem__(self, name: str) -> CircuitBreaker:
        return self._breakers[name]

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def names(self) -> list[str]:
        return list(self._breakers)

    def get_all_stats(self) -> Dict[str, Any]:
        """Get stats for all circuit breakers."""
        return {
            name: breaker.get_stats()
            for name, breaker in self._breakers.items()
        }

    def any_open(self) -> bool:
        """Check if any circuit is not fully closed."""
        return any(not b.is_closed for b in self._breakers.values())
