"""
Structured logging configuration.

Provides:
- JSON logging for deployed services (one object per line)
- Text logging for development
- Compact one-line delivery log for watching a replay in a terminal
- Context binding so every line of one publish carries its event id
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

import structlog
from structlog import DropEvent
from structlog.types import EventDict, Processor


LOG_FORMATS = ("json", "text", "compact")

REDACTED_KEYS = frozenset({"api_key", "authorization", "password", "secret", "token"})

# Chatter that only matters when debugging a single dependency
COMPACT_SUPPRESSED = (
    "Circuit breaker initialized",
    "Message enqueued",
    "Registered cleanup",
    "Retrying after failure",
)


def add_timestamp(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """ISO-8601 UTC timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def censor_secrets(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Replace the value of any key that looks like a credential."""

    def _censor(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {
                k: "[REDACTED]" if any(s in str(k).lower() for s in REDACTED_KEYS) else _censor(v)
                for k, v in obj.items()
            }
        if isinstance(obj, (list, tuple)):
            return [_censor(item) for item in obj]
        return obj

    return _censor(event_dict)


def drop_compact_noise(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    if method_name == "debug":
        raise DropEvent
    event = event_dict.get("event", "")
    if any(event.startswith(prefix) for prefix in COMPACT_SUPPRESSED):
        raise DropEvent
    return event_dict


class DeliveryConsoleRenderer:
    """
    One line per delivery outcome.

        [19:45:02] OK     m1-goal-1 -> primary (bus-17)
        [19:45:03] FALLBK m1-goal-2 -> secondary-queue (msg-...)
        [19:45:03] DUP    k=3f9a1c04b2e1...
    """

    LABELS = {
        "Successfully published event": "OK",
        "Event stored by fallback tier": "FALLBK",
        "Duplicate event detected within TTL window": "DUP",
        "Circuit breaker state change": "BREAKER",
        "All fallback tiers failed, event not stored": "LOST",
    }

    def __call__(self, logger: logging.Logger, method_name: str, event_dict: EventDict) -> str:
        event = event_dict.pop("event", "")
        label = self.LABELS.get(event)
        time_str = datetime.now().strftime("%H:%M:%S")

        if label == "OK":
            detail = f"{event_dict.get('event_id', '?')} -> primary ({event_dict.get('accepted_id', '')})"
        elif label == "FALLBK":
            detail = f"{event_dict.get('event_id', '?')} -> {event_dict.get('tier')} ({event_dict.get('sink_id')})"
        elif label == "DUP":
            detail = f"k={str(event_dict.get('idempotency_key', ''))[:12]}..."
        elif label == "BREAKER":
            detail = (
                f"{event_dict.get('breaker')} {event_dict.get('from_state')} -> {event_dict.get('to_state')}"
            )
        elif label == "LOST":
            detail = f"{event_dict.get('event_id', '?')} tiers={event_dict.get('failed_tiers')}"
        else:
            label = method_name.upper()[:6]
            error = event_dict.get("error")
            detail = f"{event}: {error}" if error else event

        return f"[{time_str}] {label:<7}{detail}"


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Configure structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json", "text" or "compact")
    """
    if log_format not in LOG_FORMATS:
        raise ValueError(f"log_format must be one of {LOG_FORMATS}, got {log_format!r}")

    level = logging.getLevelName(log_level.upper())

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        add_timestamp,
        censor_secrets,
    ]

    if log_format == "json":
        processors = shared_processors + [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    elif log_format == "compact":
        processors = shared_processors + [drop_compact_noise, DeliveryConsoleRenderer()]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # uvicorn and aiohttp log through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for noisy_logger in ["aiohttp.access", "aiohttp.client", "uvicorn.access"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.BoundLogger:
    """Logger bound to a module name (pass __name__)."""
    return structlog.get_logger(name)


class LogContext:
    """
    Bind delivery context for the duration of a block.

    Restores whatever was bound before on exit, so nested publishes (a
    replay inside a traced request, say) do not clobber the outer ids.
    """

    def __init__(self, **context: Any):
        self.context = context
        self._tokens = None

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._tokens:
            structlog.contextvars.reset_contextvars(**self._tokens)


def clear_context() -> None:
    """Drop all bound context (start of a fresh replay run)."""
    structlog.contextvars.clear_contextvars()
