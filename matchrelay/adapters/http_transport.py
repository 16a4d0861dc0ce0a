"""
HTTP event bus transport.

Posts envelopes to an event bus ingestion endpoint and translates every
failure into a tagged TransientError / PermanentError so the retrier and
breakers never look at aiohttp types or message strings.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

import aiohttp

from matchrelay.errors import (
    ErrorKind,
    PermanentError,
    TransientError,
    error_for_status,
)
from matchrelay.core.events import EventEnvelope
from matchrelay.infrastructure.config import SecretsConfig, TransportConfig
from matchrelay.infrastructure.logging import get_logger

logger = get_logger(__name__)

DEPENDENCY = "event-bus"

# Entry-level error codes the bus reports inside a 200 response
RETRYABLE_ENTRY_CODES = {
    "ThrottlingException": ErrorKind.THROTTLED,
    "TooManyRequestsException": ErrorKind.THROTTLED,
    "RequestLimitExceeded": ErrorKind.THROTTLED,
    "ServiceUnavailable": ErrorKind.SERVER_ERROR,
    "InternalFailure": ErrorKind.SERVER_ERROR,
    "InternalException": ErrorKind.SERVER_ERROR,
}


class HttpEventBusTransport:
    """
    aiohttp-backed Transport.

    Usage:
        transport = HttpEventBusTransport(config.transport)
        event_id = await transport.send(envelope)
        await transport.close()
    """

    def __init__(
        self,
        config: TransportConfig,
        secrets: SecretsConfig | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self.config = config
        self.url = config.event_bus_url
        self.timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)
        self._api_key = secrets.event_bus_api_key if secrets else ""
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
            self._owns_session = True
        return self._session

    async def close(self):
        """Close HTTP session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def build_entry(self, envelope: EventEnvelope) -> dict[str, Any]:
        return {
            "event_bus": self.config.event_bus_name,
            "source": self.config.event_source,
            "detail_type": envelope.event.type.value,
            "detail": envelope.to_dict(),
            "time": datetime.now(timezone.utc).isoformat(),
        }

    async def send(self, envelope: EventEnvelope) -> str:
        """
        Deliver one envelope.

        Returns:
            The event id assigned by the bus (falls back to the event id)

        Raises:
            TransientError: timeouts, connection failures, 408/429/5xx
            PermanentError: other 4xx, rejected entries
        """
        session = await self._get_session()
        entry = self.build_entry(envelope)

        try:
            async with session.post(self.url, json=entry) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise error_for_status(
                        resp.status,
                        f"Event bus returned {resp.status}: {text[:200]}",
                        DEPENDENCY,
                    )
                body = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise TransientError(
                f"Event bus request timed out after {self.config.timeout_seconds}s",
                ErrorKind.TIMEOUT,
                DEPENDENCY,
            ) from e
        except aiohttp.ClientConnectionError as e:
            raise TransientError(str(e) or "connection failed", ErrorKind.CONNECTION, DEPENDENCY) from e
        except ValueError as e:
            # body was not JSON
            raise PermanentError(f"Unreadable event bus response: {e}", ErrorKind.CLIENT_ERROR, DEPENDENCY) from e

        return self._accepted_id(body, envelope)

    def _accepted_id(self, body: Any, envelope: EventEnvelope) -> str:
        if not isinstance(body, dict):
            return envelope.event_id

        failed = int(body.get("failed_entry_count") or body.get("FailedEntryCount") or 0)
        entries = body.get("entries") or body.get("Entries") or []

        if failed > 0:
            failed_entry = next(
                (e for e in entries if isinstance(e, dict) and (e.get("error_code") or e.get("ErrorCode"))),
                {},
            )
            code = failed_entry.get("error_code") or failed_entry.get("ErrorCode") or "Unknown"
            message = failed_entry.get("error_message") or failed_entry.get("ErrorMessage") or ""
            text = f"Failed to publish event: {code} - {message}"
            if code in RETRYABLE_ENTRY_CODES:
                raise TransientError(text, RETRYABLE_ENTRY_CODES[code], DEPENDENCY)
            raise PermanentError(text, ErrorKind.CLIENT_ERROR, DEPENDENCY)

        for key in ("event_id", "EventId"):
            if body.get(key):
                return str(body[key])
        if entries and isinstance(entries[0], dict):
            entry_id = entries[0].get("event_id") or entries[0].get("EventId")
            if entry_id:
                return str(entry_id)

        logger.debug("Event bus response carried no event id", body_keys=sorted(body))
        return envelope.event_id
