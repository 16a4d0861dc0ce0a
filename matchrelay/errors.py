"""
Error taxonomy for event delivery.

Adapters translate whatever their client library raises into one of two
tagged errors at the boundary:
- TransientError: worth retrying (timeouts, throttling, 5xx)
- PermanentError: never retried (validation, malformed payload)

The resilience layer then only has to match on ErrorKind:
- CircuitOpenError: dependency deliberately bypassed
- RetryExhausted: all attempts against one dependency failed
- EscalationExhausted: every fallback tier failed (fatal)
"""

from __future__ import annotations
import asyncio
from enum import Enum
from typing import List, Optional, Tuple


class ErrorKind(Enum):
    """Closed set of failure classifications produced by adapters."""
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    THROTTLED = "throttled"
    SERVER_ERROR = "server_error"
    VALIDATION = "validation"
    CLIENT_ERROR = "client_error"
    UNKNOWN = "unknown"

    @property
    def is_transient(self) -> bool:
        return self in _TRANSIENT_KINDS


_TRANSIENT_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.CONNECTION,
    ErrorKind.THROTTLED,
    ErrorKind.SERVER_ERROR,
})


class DeliveryError(Exception):
    """Base class for every error raised by the delivery layer."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        dependency: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.dependency = dependency


class TransientError(DeliveryError):
    """A failure expected to succeed on retry."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.SERVER_ERROR,
        dependency: Optional[str] = None,
    ):
        if not kind.is_transient:
            raise ValueError(f"{kind.value} is not a transient error kind")
        super().__init__(message, kind, dependency)


class PermanentError(DeliveryError):
    """A failure that will never succeed unmodified."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.VALIDATION,
        dependency: Optional[str] = None,
    ):
        if kind.is_transient:
            raise ValueError(f"{kind.value} is not a permanent error kind")
        super().__init__(message, kind, dependency)


class CircuitOpenError(DeliveryError):
    """Raised when a circuit is open and rejecting calls."""

    def __init__(self, name: str, message: Optional[str] = None):
        super().__init__(
            message or f"Circuit {name} is OPEN, rejecting call",
            ErrorKind.UNKNOWN,
            name,
        )
        self.name = name


class RetryExhausted(DeliveryError):
    """All attempts against one dependency failed."""

    def __init__(self, attempts: int, cause: BaseException, dependency: Optional[str] = None):
        super().__init__(
            f"Gave up after {attempts} attempt(s): {cause!r}",
            error_kind_of(cause),
            dependency,
        )
        self.attempts = attempts
        self.cause = cause


class EscalationExhausted(DeliveryError):
    """Every fallback tier refused the event. Nothing durable holds it."""

    def __init__(
        self,
        event_id: str,
        idempotency_key: str,
        failures: List[Tuple[str, BaseException]],
    ):
        tiers = ", ".join(f"{tier}: {err!r}" for tier, err in failures) or "no tiers configured"
        super().__init__(
            f"Event {event_id} could not be stored by any fallback tier ({tiers})",
            ErrorKind.UNKNOWN,
        )
        self.event_id = event_id
        self.idempotency_key = idempotency_key
        self.failures = failures


def error_kind_of(error: BaseException) -> ErrorKind:
    """Best classification available for an arbitrary exception."""
    if isinstance(error, DeliveryError):
        return error.kind
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorKind.CONNECTION
    return ErrorKind.UNKNOWN


def default_is_retryable(error: BaseException) -> bool:
    """Retry transient kinds and raw network errors; never anything else."""
    if isinstance(error, CircuitOpenError):
        return False
    return error_kind_of(error).is_transient


def classify_http_status(status: int) -> ErrorKind:
    """Map an HTTP status from a downstream service to an ErrorKind."""
    if status == 408:
        return ErrorKind.TIMEOUT
    if status == 429:
        return ErrorKind.THROTTLED
    if status >= 500:
        return ErrorKind.SERVER_ERROR
    if status in (400, 422):
        return ErrorKind.VALIDATION
    return ErrorKind.CLIENT_ERROR


def error_for_status(status: int, message: str, dependency: Optional[str] = None) -> DeliveryError:
    """Build the tagged error matching an HTTP status."""
    kind = classify_http_status(status)
    if kind.is_transient:
        return TransientError(message, kind, dependency)
    return PermanentError(message, kind, dependency)
