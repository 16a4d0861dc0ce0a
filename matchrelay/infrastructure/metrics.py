"""
Prometheus metrics for observability.

Exposes metrics on /metrics endpoint for Prometheus scraping.

Metrics Categories:
- Publish: outcomes per sink, end-to-end latency
- Delivery: attempts and backoff delays per dependency
- Resilience: circuit breaker state, fallback escalations
- Cache: idempotency entries held
"""

import time
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from matchrelay.infrastructure.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Publish Metrics
# =============================================================================

PUBLISH_TOTAL = Counter(
    "matchrelay_publish_total",
    "Publish calls by outcome",
    ["status", "sink"],
)

PUBLISH_LATENCY = Histogram(
    "matchrelay_publish_latency_seconds",
    "End-to-end publish latency including retries and fallback",
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

# =============================================================================
# Delivery Metrics
# =============================================================================

DELIVERY_ATTEMPTS = Counter(
    "matchrelay_delivery_attempts_total",
    "Individual send attempts against a dependency",
    ["dependency", "outcome"],
)

RETRY_DELAY = Histogram(
    "matchrelay_retry_delay_seconds",
    "Backoff delay slept before a retry",
    ["dependency"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)

# =============================================================================
# Resilience Metrics
# =============================================================================

CIRCUIT_BREAKER_STATE = Gauge(
    "matchrelay_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["name"],
)

ESCALATIONS_TOTAL = Counter(
    "matchrelay_escalations_total",
    "Fallback tier attempts by outcome",
    ["tier", "outcome"],
)

# =============================================================================
# Cache Metrics
# =============================================================================

IDEMPOTENCY_CACHE_ENTRIES = Gauge(
    "matchrelay_idempotency_cache_entries",
    "Idempotency records currently held in memory",
)

# =============================================================================
# Process Metrics
# =============================================================================

UPTIME_SECONDS = Gauge(
    "matchrelay_uptime_seconds",
    "Publisher process uptime in seconds",
)

_BREAKER_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsCollector:
    """
    Collects and exposes Prometheus metrics.

    Usage:
        collector = MetricsCollector()
        collector.start_server(port=9090)

        collector.record_attempt("primary-transport", "failure")
        collector.record_publish("delivered", "primary", latency_seconds=0.02)
    """

    def __init__(self):
        self._start_time = time.time()

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def start_server(self, port: int = 9090) -> None:
        """Start the Prometheus metrics HTTP server."""
        try:
            start_http_server(port)
            logger.info("Metrics server started", port=port)
        except OSError as e:
            logger.error("Failed to start metrics server", port=port, error=str(e))

    def record_publish(self, status: str, sink: str, latency_seconds: float) -> None:
        PUBLISH_TOTAL.labels(status=status, sink=sink).inc()
        PUBLISH_LATENCY.observe(latency_seconds)
        UPTIME_SECONDS.set(self.uptime_seconds)

    def record_attempt(self, dependency: str, outcome: str) -> None:
        DELIVERY_ATTEMPTS.labels(dependency=dependency, outcome=outcome).inc()

    def record_retry_delay(self, dependency: str, delay_seconds: float) -> None:
        RETRY_DELAY.labels(dependency=dependency).observe(delay_seconds)

    def update_breaker_state(self, name: str, state: str) -> None:
        CIRCUIT_BREAKER_STATE.labels(name=name).set(_BREAKER_STATE_VALUES.get(state, 0))

    def record_escalation(self, tier: str, outcome: str) -> None:
        ESCALATIONS_TOTAL.labels(tier=tier, outcome=outcome).inc()

    def update_cache_size(self, size: int) -> None:
        IDEMPOTENCY_CACHE_ENTRIES.set(size)


# Pre-instantiated collector
metrics = MetricsCollector()
