"""
Fallback chain for events the primary transport could not take.

Tiers are tried in order (secondary queue, then durable object store); the
first one that accepts the FallbackRecord wins. Every tier runs behind its
own circuit breaker and retrier because a fallback sink can be degraded too.

If every tier fails the chain raises EscalationExhausted. That is the only
unrecoverable condition in the delivery layer and must page someone.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from matchrelay.errors import DeliveryError, EscalationExhausted, error_kind_of
from matchrelay.core.events import EventEnvelope
from matchrelay.core.retry import BackoffRetrier, RetryPolicy
from matchrelay.infrastructure.circuit_breaker import CircuitBreaker
from matchrelay.infrastructure.logging import get_logger
from matchrelay.infrastructure.metrics import metrics

logger = get_logger(__name__)


# =============================================================================
# Collaborator contracts
# =============================================================================

class Transport(Protocol):
    """Primary event bus."""

    async def send(self, envelope: EventEnvelope) -> str:
        """Deliver the envelope and return the id the bus assigned."""
        ...


class SecondaryQueue(Protocol):
    async def enqueue(self, message: Mapping[str, Any]) -> str:
        ...


class ObjectSink(Protocol):
    async def put(self, key: str, data: bytes, metadata: Mapping[str, str]) -> None:
        ...


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class FallbackRecord:
    """What a fallback sink persists for an event that missed the primary path."""
    envelope: EventEnvelope
    failed_at: datetime
    escalation_tier: str
    cause: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        event = self.envelope.event
        return {
            "event": self.envelope.to_dict(),
            "event_id": event.id,
            "match_id": event.match_id,
            "event_type": event.type.value,
            "idempotency_key": event.idempotency_key,
            "retry_count": event.retry_count,
            "failed_at": self.failed_at.isoformat(),
            "escalation_tier": self.escalation_tier,
            "error_kind": error_kind_of(self.cause).value if self.cause else None,
            "error_message": str(self.cause) if self.cause else None,
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), default=str).encode("utf-8")


@dataclass(frozen=True)
class EscalationResult:
    """Which tier accepted the event."""
    tier: str
    sink_id: str


# =============================================================================
# Tiers
# =============================================================================

@dataclass
class FallbackTier:
    """
    One durable sink in the chain.

    Subclasses implement write(); the chain supplies breaker and retry.
    """
    name: str
    breaker: CircuitBreaker
    policy: RetryPolicy = field(default_factory=RetryPolicy)

    async def write(self, record: FallbackRecord) -> str:
        raise NotImplementedError


@dataclass
class QueueTier(FallbackTier):
    """Secondary queue, e.g. a dead-letter queue."""
    queue: Optional[SecondaryQueue] = None

    def __post_init__(self):
        if self.queue is None:
            raise ValueError(f"Fallback tier {self.name!r} needs a queue")

    async def write(self, record: FallbackRecord) -> str:
        return await self.queue.enqueue(record.to_dict())


@dataclass
class ObjectStoreTier(FallbackTier):
    """Durable object store keyed by idempotency key."""
    sink: Optional[ObjectSink] = None
    key_prefix: str = "failed-events"

    def __post_init__(self):
        if self.sink is None:
            raise ValueError(f"Fallback tier {self.name!r} needs an object sink")

    def object_key(self, record: FallbackRecord) -> str:
        return f"{self.key_prefix}/{record.envelope.idempotency_key}.json"

    async def write(self, record: FallbackRecord) -> str:
        event = record.envelope.event
        key = self.object_key(record)
        await self.sink.put(
            key,
            record.to_json(),
            {
                "match_id": event.match_id,
                "event_type": event.type.value,
                "idempotency_key": event.idempotency_key,
                "content_type": "application/json",
            },
        )
        return key


# =============================================================================
# Chain
# =============================================================================

class FallbackChain:
    """
    Ordered escalation over durable sinks.

    Usage:
        chain = FallbackChain([queue_tier, store_tier], retrier)
        result = await chain.escalate(envelope, cause)
    """

    def __init__(self, tiers: Sequence[FallbackTier], retrier: Optional[BackoffRetrier] = None):
        self.tiers = list(tiers)
        self.retrier = retrier or BackoffRetrier()

    @property
    def breakers(self) -> List[CircuitBreaker]:
        return [tier.breaker for tier in self.tiers]

    async def escalate(self, envelope: EventEnvelope, cause: BaseException) -> EscalationResult:
        """
        Persist the event in the first tier that accepts it.

        Raises:
            EscalationExhausted: every tier failed
        """
        event = replace(envelope.event, retry_count=envelope.event.retry_count + 1)
        escalated = replace(envelope, event=event)
        failed_at = datetime.now(timezone.utc)
        failures: List[Tuple[str, BaseException]] = []

        logger.warning(
            "Escalating event to fallback chain",
            event_id=event.id,
            idempotency_key=event.idempotency_key,
            cause_kind=error_kind_of(cause).value,
            cause=str(cause),
            tiers=[t.name for t in self.tiers],
        )

        for tier in self.tiers:
            record = FallbackRecord(
                envelope=escalated,
                failed_at=failed_at,
                escalation_tier=tier.name,
                cause=cause,
            )
            try:
                sink_id = await tier.breaker.execute(
                    lambda: self.retrier.retry(
                        lambda: tier.write(record),
                        tier.policy,
                        dependency=tier.name,
                    )
                )
            except DeliveryError as e:
                failures.append((tier.name, e))
                metrics.record_escalation(tier.name, "failure")
                logger.error(
                    "Fallback tier failed",
                    tier=tier.name,
                    event_id=event.id,
                    idempotency_key=event.idempotency_key,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue

            metrics.record_escalation(tier.name, "success")
            logger.warning(
                "Event stored by fallback tier",
                tier=tier.name,
                sink_id=sink_id,
                event_id=event.id,
                idempotency_key=event.idempotency_key,
            )
            return EscalationResult(tier=tier.name, sink_id=sink_id)

        logger.critical(
            "All fallback tiers failed, event not stored",
            event_id=event.id,
            idempotency_key=event.idempotency_key,
            failed_tiers=[name for name, _ in failures],
        )
        raise EscalationExhausted(event.id, event.idempotency_key, failures)
