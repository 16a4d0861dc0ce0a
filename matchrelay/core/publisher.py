"""
Event publisher: the one entry point other subsystems call.

publish(event):
1. Resolve the idempotency key (caller-supplied, else derived from the event)
2. Duplicate within TTL -> return "duplicate" without any I/O
3. Primary breaker -> retrier -> transport.send
4. Success -> record key, return "delivered" via "primary"
5. Breaker open / retries exhausted -> fallback chain; the event is still
   "delivered" (durably stored) but the key is NOT recorded, so a later
   primary delivery of the same key may still go through
6. Fallback exhausted -> EscalationExhausted propagates to the caller

Steps 2-5 run under a per-key guard so concurrent publishes of one key
yield exactly one "delivered".
"""

from __future__ import annotations
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from matchrelay.errors import CircuitOpenError, RetryExhausted, error_kind_of
from matchrelay.core.events import Event, EventEnvelope
from matchrelay.core.fallback import (
    FallbackChain,
    ObjectSink,
    ObjectStoreTier,
    QueueTier,
    SecondaryQueue,
    Transport,
)
from matchrelay.core.idempotency import IdempotencyCache
from matchrelay.core.retry import BackoffRetrier, RetryPolicy
from matchrelay.infrastructure.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from matchrelay.infrastructure.config import AppConfig
from matchrelay.infrastructure.logging import LogContext, get_logger
from matchrelay.infrastructure.metrics import metrics

logger = get_logger(__name__)

PRIMARY_TRANSPORT = "primary-transport"
PRIMARY_SINK = "primary"
SECONDARY_QUEUE = "secondary-queue"
DURABLE_STORE = "durable-store"


class PublishStatus(str, Enum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class PublishResult:
    """Outcome of a publish call."""
    status: PublishStatus
    idempotency_key: str
    sink_id: Optional[str] = None
    accepted_id: Optional[str] = None

    @property
    def via_fallback(self) -> bool:
        return self.status == PublishStatus.DELIVERED and self.sink_id != PRIMARY_SINK


class EventPublisher:
    """
    Composes cache, breaker, retrier and fallback chain around a transport.

    All collaborators are injected; nothing here creates hidden globals.

    Usage:
        async with EventPublisher(transport, cache, breaker, chain) as publisher:
            result = await publisher.publish(event)
    """

    def __init__(
        self,
        transport: Transport,
        cache: IdempotencyCache,
        breaker: CircuitBreaker,
        fallback: FallbackChain,
        transport_policy: Optional[RetryPolicy] = None,
        retrier: Optional[BackoffRetrier] = None,
        registry: Optional[CircuitBreakerRegistry] = None,
    ):
        self.transport = transport
        self.cache = cache
        self.breaker = breaker
        self.fallback = fallback
        self.transport_policy = transport_policy or RetryPolicy()
        self.retrier = retrier or BackoffRetrier()

        self._breakers: Dict[str, CircuitBreaker] = {breaker.name: breaker}
        for tier_breaker in fallback.breakers:
            self._breakers.setdefault(tier_breaker.name, tier_breaker)
        if registry is not None:
            for name in registry.names():
                self._breakers.setdefault(name, registry[name])

    async def start(self):
        await self.cache.start()

    async def stop(self):
        await self.cache.stop()

    async def __aenter__(self) -> "EventPublisher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
        return False

    async def publish(
        self,
        event: Event,
        idempotency_key: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
        trace_id: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> PublishResult:
        """
        Deliver an event at least once, or store it durably.

        Raises:
            EscalationExhausted: neither the transport nor any fallback tier
                accepted the event
        """
        started = time.monotonic()
        key = idempotency_key or event.idempotency_key
        if key != event.idempotency_key:
            event = replace(event, idempotency_key=key)
        envelope = EventEnvelope.wrap(event, trace_id=trace_id, parent_id=parent_id)

        with LogContext(event_id=event.id, idempotency_key=key, trace_id=envelope.trace_id):
            async with self.cache.guard(key):
                if self.cache.check_and_reserve(key, ttl_seconds).is_duplicate:
                    metrics.record_publish(PublishStatus.DUPLICATE.value, "none", time.monotonic() - started)
                    return PublishResult(status=PublishStatus.DUPLICATE, idempotency_key=key)

                logger.info(
                    "Publishing event",
                    match_id=event.match_id,
                    event_type=event.type.value,
                )

                try:
                    accepted_id = await self.breaker.execute(
                        lambda: self.retrier.retry(
                            lambda: self.transport.send(envelope),
                            self.transport_policy,
                            dependency=self.breaker.name,
                        )
                    )
                except (CircuitOpenError, RetryExhausted) as e:
                    logger.error(
                        "Primary transport failed, escalating",
                        error_type=type(e).__name__,
                        error_kind=error_kind_of(e).value,
                        error=str(e),
                    )
                    escalation = await self.fallback.escalate(envelope, e)
                    metrics.record_publish(PublishStatus.DELIVERED.value, escalation.tier, time.monotonic() - started)
                    return PublishResult(
                        status=PublishStatus.DELIVERED,
                        idempotency_key=key,
                        sink_id=escalation.tier,
                        accepted_id=escalation.sink_id,
                    )

                self.cache.record(key, ttl_seconds)

            logger.info("Successfully published event", accepted_id=accepted_id)
            metrics.record_publish(PublishStatus.DELIVERED.value, PRIMARY_SINK, time.monotonic() - started)
            return PublishResult(
                status=PublishStatus.DELIVERED,
                idempotency_key=key,
                sink_id=PRIMARY_SINK,
                accepted_id=accepted_id,
            )

    def get_breaker_state(self, name: str) -> CircuitState:
        """Health probe: state of a named dependency breaker."""
        return self._breakers[name].state

    def health(self) -> Dict[str, Any]:
        return {
            "breakers": {name: b.get_stats() for name, b in self._breakers.items()},
            "cache": self.cache.stats(),
        }


def build_publisher(
    config: AppConfig,
    transport: Transport,
    queue: SecondaryQueue,
    object_sink: ObjectSink,
    retrier: Optional[BackoffRetrier] = None,
) -> EventPublisher:
    """Wire a publisher from configuration and concrete collaborators."""
    delivery = config.delivery
    registry = CircuitBreakerRegistry(
        CircuitBreakerConfig(
            max_failures=delivery.breaker.max_failures,
            reset_timeout_ms=delivery.breaker.reset_timeout_ms,
        )
    )
    retrier = retrier or BackoffRetrier()
    fallback_policy = RetryPolicy.from_config(delivery.fallback_retry)

    chain = FallbackChain(
        [
            QueueTier(
                name=SECONDARY_QUEUE,
                breaker=registry.get(SECONDARY_QUEUE),
                policy=fallback_policy,
                queue=queue,
            ),
            ObjectStoreTier(
                name=DURABLE_STORE,
                breaker=registry.get(DURABLE_STORE),
                policy=fallback_policy,
                sink=object_sink,
                key_prefix=config.fallback.object_key_prefix,
            ),
        ],
        retrier,
    )
    cache = IdempotencyCache(
        default_ttl_seconds=delivery.cache.default_ttl_seconds,
        sweep_interval_seconds=delivery.cache.sweep_interval_ms / 1000,
    )
    return EventPublisher(
        transport=transport,
        cache=cache,
        breaker=registry.get(PRIMARY_TRANSPORT),
        fallback=chain,
        transport_policy=RetryPolicy.from_config(delivery.transport_retry),
        retrier=retrier,
        registry=registry,
    )
