"""
Core delivery modules for matchrelay.

Contains:
- events: Event model, envelope and idempotency key derivation
- retry: Exponential backoff with jitter
- idempotency: TTL-bounded duplicate suppression
- fallback: Ordered escalation over durable sinks
- publisher: The publish operation composing all of the above
"""

from matchrelay.errors import (
    CircuitOpenError,
    DeliveryError,
    ErrorKind,
    EscalationExhausted,
    PermanentError,
    RetryExhausted,
    TransientError,
)

from matchrelay.core.events import (
    Event,
    EventEnvelope,
    MatchEventType,
    derive_idempotency_key,
)

from matchrelay.core.idempotency import (
    IdempotencyCache,
    IdempotencyRecord,
)

from matchrelay.core.retry import (
    BackoffRetrier,
    RetryPolicy,
)

from matchrelay.core.fallback import (
    EscalationResult,
    FallbackChain,
    FallbackRecord,
    ObjectStoreTier,
    QueueTier,
)

from matchrelay.core.publisher import (
    EventPublisher,
    PublishResult,
    PublishStatus,
    build_publisher,
)

__all__ = [
    # Errors
    "CircuitOpenError",
    "DeliveryError",
    "ErrorKind",
    "EscalationExhausted",
    "PermanentError",
    "RetryExhausted",
    "TransientError",
    # Events
    "Event",
    "EventEnvelope",
    "MatchEventType",
    "derive_idempotency_key",
    # Idempotency
    "IdempotencyCache",
    "IdempotencyRecord",
    # Retry
    "BackoffRetrier",
    "RetryPolicy",
    # Fallback
    "EscalationResult",
    "FallbackChain",
    "FallbackRecord",
    "ObjectStoreTier",
    "QueueTier",
    # Publisher
    "EventPublisher",
    "PublishResult",
    "PublishStatus",
    "build_publisher",
]
