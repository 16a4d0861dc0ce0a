"""Tests for circuit breaker state transitions."""

import asyncio

import pytest

from matchrelay.errors import CircuitOpenError, TransientError
from matchrelay.infrastructure.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)


class Operation:
    """Counts invocations; fails while `failing` is set."""

    def __init__(self, failing: bool = True):
        self.failing = failing
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failing:
            raise TransientError("dependency down")
        return "ok"


def make_breaker(clock, max_failures=3, reset_timeout_ms=1000):
    return CircuitBreaker(
        "test-dependency",
        CircuitBreakerConfig(max_failures=max_failures, reset_timeout_ms=reset_timeout_ms),
        clock=clock,
    )


async def trip(breaker, op, times):
    for _ in range(times):
        with pytest.raises(TransientError):
            await breaker.execute(op)


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_starts_closed_and_passes_through(self, clock):
        breaker = make_breaker(clock)
        op = Operation(failing=False)

        assert await breaker.execute(op) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_opens_after_max_failures(self, clock):
        breaker = make_breaker(clock, max_failures=3)
        op = Operation()

        await trip(breaker, op, 2)
        assert breaker.state == CircuitState.CLOSED

        await trip(breaker, op, 1)
        assert breaker.state == CircuitState.OPEN
        assert breaker.last_failure_at == clock.now

    @pytest.mark.asyncio
    async def test_open_rejects_without_invoking_operation(self, clock):
        breaker = make_breaker(clock, max_failures=2, reset_timeout_ms=1000)
        op = Operation()
        await trip(breaker, op, 2)

        for _ in range(5):
            with pytest.raises(CircuitOpenError):
                await breaker.execute(op)

        assert op.calls == 2
        assert breaker.stats.rejected_calls == 5

    @pytest.mark.asyncio
    async def test_still_open_at_exactly_reset_timeout(self, clock):
        breaker = make_breaker(clock, max_failures=1, reset_timeout_ms=1000)
        op = Operation()
        await trip(breaker, op, 1)

        clock.advance(1.0)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(op)
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_trial_after_timeout_success_closes(self, clock):
        breaker = make_breaker(clock, max_failures=1, reset_timeout_ms=1000)
        op = Operation()
        await trip(breaker, op, 1)

        clock.advance(1.5)
        op.failing = False
        assert await breaker.execute(op) == "ok"

        assert op.calls == 2
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_trial_failure_reopens_and_updates_last_failure(self, clock):
        breaker = make_breaker(clock, max_failures=1, reset_timeout_ms=1000)
        op = Operation()
        await trip(breaker, op, 1)
        first_failure = breaker.last_failure_at

        clock.advance(2.0)
        await trip(breaker, op, 1)

        assert breaker.state == CircuitState.OPEN
        assert breaker.last_failure_at > first_failure
        with pytest.raises(CircuitOpenError):
            await breaker.execute(op)

    @pytest.mark.asyncio
    async def test_half_open_admits_exactly_one_trial(self, clock):
        breaker = make_breaker(clock, max_failures=1, reset_timeout_ms=1000)
        await trip(breaker, Operation(), 1)
        clock.advance(2.0)

        release = asyncio.Event()
        trial_calls = 0

        async def slow_trial():
            nonlocal trial_calls
            trial_calls += 1
            await release.wait()
            return "recovered"

        trial = asyncio.create_task(breaker.execute(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        burst = [breaker.execute(slow_trial) for _ in range(5)]
        results = await asyncio.gather(*burst, return_exceptions=True)
        assert all(isinstance(r, CircuitOpenError) for r in results)

        release.set()
        assert await trial == "recovered"
        assert trial_calls == 1
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_in_closed_does_not_reset_failure_count(self, clock):
        breaker = make_breaker(clock, max_failures=3)
        op = Operation()
        await trip(breaker, op, 2)

        op.failing = False
        await breaker.execute(op)
        assert breaker.failure_count == 2

        op.failing = True
        await trip(breaker, op, 1)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_cancelled_call_is_neutral(self, clock):
        breaker = make_breaker(clock, max_failures=1)

        async def hang():
            await asyncio.sleep(3600)

        task = asyncio.create_task(breaker.execute(hang))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.stats.cancelled_calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_trial_reverts_to_open_and_allows_new_trial(self, clock):
        breaker = make_breaker(clock, max_failures=1, reset_timeout_ms=1000)
        await trip(breaker, Operation(), 1)
        failure_at = breaker.last_failure_at
        clock.advance(2.0)

        async def hang():
            await asyncio.sleep(3600)

        task = asyncio.create_task(breaker.execute(hang))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert breaker.state == CircuitState.OPEN
        assert breaker.last_failure_at == failure_at
        assert breaker.failure_count == 1

        op = Operation(failing=False)
        assert await breaker.execute(op) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_state_change_callback(self, clock):
        changes = []
        breaker = CircuitBreaker(
            "cb",
            CircuitBreakerConfig(max_failures=1),
            clock=clock,
            on_state_change=lambda old, new: changes.append((old, new)),
        )
        await trip(breaker, Operation(), 1)
        assert changes == [(CircuitState.CLOSED, CircuitState.OPEN)]

    @pytest.mark.asyncio
    async def test_reset_and_force_open(self, clock):
        breaker = make_breaker(clock)
        breaker.force_open()
        assert breaker.is_open
        assert breaker.last_failure_at is not None

        breaker.reset()
        assert breaker.is_closed
        assert breaker.get_stats()["stats"]["total_calls"] == 0


class TestCircuitBreakerRegistry:

    @pytest.mark.asyncio
    async def test_breakers_do_not_share_counters(self, clock):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(max_failures=1), clock=clock)
        transport = registry.get("primary-transport")
        queue = registry.get("secondary-queue")

        await trip(transport, Operation(), 1)

        assert transport.is_open
        assert queue.is_closed
        assert queue.failure_count == 0
        assert registry.any_open()

    def test_get_returns_same_instance(self, clock):
        registry = CircuitBreakerRegistry(clock=clock)
        assert registry.get("a") is registry.get("a")
        assert "a" in registry
        assert registry.names() == ["a"]
        assert set(registry.get_all_stats()) == {"a"}
