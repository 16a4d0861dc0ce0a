"""
Chaos and fault injection tests for the publish path.

Checks the delivery guarantees under failure:
- Flaky transport with random failures
- Cancellation in the middle of a publish
- Real file sinks standing in for the fallback tiers
"""

import asyncio
import json
import random

import pytest

from matchrelay.adapters.file_sinks import FileObjectSink, JsonLinesQueue
from matchrelay.core.publisher import (
    DURABLE_STORE,
    PRIMARY_SINK,
    PRIMARY_TRANSPORT,
    SECONDARY_QUEUE,
    PublishStatus,
    build_publisher,
)
from matchrelay.errors import ErrorKind, TransientError
from matchrelay.infrastructure.circuit_breaker import CircuitState
from matchrelay.infrastructure.config import build_config
from matchrelay.main import replay_events

from tests.fakes import ScriptedQueue, build_test_publisher, make_event


class ChaosTransport:
    """Transport that fails at random and may stall."""

    def __init__(self, failure_rate: float = 0.4, seed: int = 11):
        self.failure_rate = failure_rate
        self.rng = random.Random(seed)
        self.delivered: list[str] = []
        self.failures_injected = 0

    async def send(self, envelope):
        await asyncio.sleep(self.rng.uniform(0, 0.002))
        if self.rng.random() < self.failure_rate:
            self.failures_injected += 1
            raise TransientError(f"Chaos injection #{self.failures_injected}", ErrorKind.TIMEOUT)
        self.delivered.append(envelope.idempotency_key)
        return f"bus-{len(self.delivered)}"


class HangingTransport:
    def __init__(self):
        self.started = asyncio.Event()
        self.calls = 0

    async def send(self, envelope):
        self.calls += 1
        self.started.set()
        await asyncio.sleep(3600)


def fast_config(**delivery):
    return build_config({
        "delivery": {
            "transport_retry": {"max_attempts": 3, "initial_delay_ms": 1, "max_delay_ms": 2},
            "fallback_retry": {"max_attempts": 2, "initial_delay_ms": 1, "max_delay_ms": 2},
            **delivery,
        },
    })


class TestFlakyTransport:

    @pytest.mark.asyncio
    async def test_no_event_is_lost(self, clock):
        transport = ChaosTransport(failure_rate=0.5)
        queue = ScriptedQueue()
        publisher, _ = build_test_publisher(
            transport=transport, queue=queue, clock=clock, max_failures=1000
        )
        events = [make_event(idempotency_key=f"k{n}") for n in range(50)]

        results = await asyncio.gather(*[publisher.publish(e) for e in events])

        primary = {r.idempotency_key for r in results if r.sink_id == PRIMARY_SINK}
        fallback = {r.idempotency_key for r in results if r.via_fallback}
        queued = {m["idempotency_key"] for m in queue.messages}

        assert all(r.status == PublishStatus.DELIVERED for r in results)
        assert primary | fallback == {f"k{n}" for n in range(50)}
        assert not primary & fallback
        assert fallback == queued
        assert set(transport.delivered) == primary
        assert transport.failures_injected > 0

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_deliver_once(self, clock):
        transport = ChaosTransport(failure_rate=0.3, seed=5)
        publisher, _ = build_test_publisher(transport=transport, clock=clock, max_attempts=10, max_failures=1000)
        event = make_event()

        results = await asyncio.gather(*[
            publisher.publish(event, idempotency_key="k1") for _ in range(20)
        ])

        delivered = [r for r in results if r.status == PublishStatus.DELIVERED]
        assert len(delivered) == 1
        assert delivered[0].sink_id == PRIMARY_SINK
        assert transport.delivered == ["k1"]


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_publish_leaves_no_trace(self, clock):
        transport = HangingTransport()
        publisher, _ = build_test_publisher(transport=transport, clock=clock)

        task = asyncio.create_task(publisher.publish(make_event(), idempotency_key="k1"))
        await transport.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert publisher.cache.get("k1") is None
        assert publisher.cache.stats()["active_guards"] == 0
        assert publisher.breaker.failure_count == 0
        assert publisher.get_breaker_state(PRIMARY_TRANSPORT) == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_publish_releases_waiting_duplicate(self, clock):
        transport = HangingTransport()
        publisher, _ = build_test_publisher(transport=transport, clock=clock)

        first = asyncio.create_task(publisher.publish(make_event(), idempotency_key="k1"))
        await transport.started.wait()
        second = asyncio.create_task(publisher.publish(make_event(), idempotency_key="k1"))
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        # the waiter now owns the key and reaches the transport itself
        for _ in range(100):
            if transport.calls == 2:
                break
            await asyncio.sleep(0.01)
        assert transport.calls == 2
        second.cancel()
        with pytest.raises(asyncio.CancelledError):
            await second


class TestFileBackedFallback:

    @pytest.mark.asyncio
    async def test_outage_spills_to_queue_then_store(self, tmp_path):
        config = fast_config(breaker={"max_failures": 2, "reset_timeout_ms": 60000})
        queue_path = tmp_path / "dlq" / "events.jsonl"
        blocked = tmp_path / "blocked"
        blocked.write_text("")

        class DownTransport:
            async def send(self, envelope):
                raise TransientError("bus down", ErrorKind.CONNECTION)

        publisher = build_publisher(
            config,
            transport=DownTransport(),
            queue=JsonLinesQueue(queue_path),
            object_sink=FileObjectSink(tmp_path / "errors"),
        )
        first = await publisher.publish(make_event(idempotency_key="k1"))
        assert first.sink_id == SECONDARY_QUEUE

        # queue spool becomes unwritable
        publisher.fallback.tiers[0].queue = JsonLinesQueue(blocked / "events.jsonl")
        second = await publisher.publish(make_event(idempotency_key="k2"))

        assert second.sink_id == DURABLE_STORE
        stored = json.loads((tmp_path / "errors" / "failed-events" / "k2.json").read_text())
        assert stored["escalation_tier"] == DURABLE_STORE
        assert stored["retry_count"] == 1
        assert [m["body"]["idempotency_key"] for m in JsonLinesQueue(queue_path).drain()] == ["k1"]

    @pytest.mark.asyncio
    async def test_replay_counts_outcomes(self, tmp_path, clock):
        events_path = tmp_path / "events.jsonl"
        goal = {
            "match_id": "m1",
            "event_type": "goal",
            "timestamp": "2024-05-01T19:45:00Z",
            "player_id": "p9",
            "team_id": "home",
        }
        events_path.write_text("\n".join([
            json.dumps(goal),
            json.dumps(goal),
            json.dumps({**goal, "event_type": "nutmeg"}),
            "{broken",
            json.dumps({**goal, "event_type": "red_card", "retry_count": "abc"}),
            json.dumps({**goal, "event_type": "yellow_card"}),
        ]) + "\n")

        publisher, _ = build_test_publisher(clock=clock)
        summary = await replay_events(publisher, events_path)

        assert summary.delivered == 2
        assert summary.duplicate == 1
        assert summary.rejected == 3
        assert summary.exhausted == 0
        assert summary.ok
