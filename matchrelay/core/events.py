"""
Match events and the envelope they travel in.

An Event is owned by the caller until it is handed to the publisher. The
publisher never touches the payload; it wraps the event in an EventEnvelope
carrying tracing metadata and hands that to the transport or a fallback sink.
"""

from __future__ import annotations
import hashlib
import json
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from matchrelay.errors import ErrorKind, PermanentError


class MatchEventType(str, Enum):
    """Kinds of match occurrences the service delivers."""
    GOAL = "goal"
    YELLOW_CARD = "yellow_card"
    RED_CARD = "red_card"
    SUBSTITUTION = "substitution"
    PASS = "pass"
    KICKOFF = "kickoff"
    HALFTIME = "halftime"
    FULLTIME = "fulltime"


# Fields that decide whether two events are the same occurrence
IDEMPOTENCY_FIELDS = ("match_id", "event_type", "timestamp", "player_id", "team_id")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_event_type(value: Any) -> MatchEventType:
    try:
        return MatchEventType(value)
    except ValueError:
        valid = ", ".join(t.value for t in MatchEventType)
        raise PermanentError(
            f"event_type must be one of: {valid} (got {value!r})",
            ErrorKind.VALIDATION,
        ) from None


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise PermanentError(
                f"timestamp is not a valid ISO-8601 date: {value!r}",
                ErrorKind.VALIDATION,
            ) from None
    else:
        raise PermanentError("timestamp is required", ErrorKind.VALIDATION)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def derive_idempotency_key(fields: Mapping[str, Any]) -> str:
    """
    Deterministic key for a match occurrence.

    SHA-256 over the canonical JSON of whichever IDEMPOTENCY_FIELDS are
    present, so the same occurrence always hashes to the same key.
    """
    stable = {name: fields[name] for name in IDEMPOTENCY_FIELDS if fields.get(name) is not None}
    canonical = json.dumps(stable, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def generate_event_id(event_type: MatchEventType) -> str:
    return f"{int(time.time() * 1000)}-{event_type.value}-{uuid.uuid4()}"


@dataclass(frozen=True)
class Event:
    """
    A single match occurrence.

    Immutable: the fallback path records a copy with retry_count bumped
    instead of changing the original.
    """
    id: str
    type: MatchEventType
    match_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    idempotency_key: str = ""
    retry_count: int = 0

    def __post_init__(self):
        if not self.match_id:
            raise PermanentError("match_id is required", ErrorKind.VALIDATION)
        object.__setattr__(self, "type", parse_event_type(self.type))
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))
        if not self.idempotency_key:
            object.__setattr__(self, "idempotency_key", derive_idempotency_key(self.key_fields()))

    @classmethod
    def create(
        cls,
        event_type: MatchEventType | str,
        match_id: str | int,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        event_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        idempotency_key: str = "",
    ) -> "Event":
        """Build an event, deriving the id and idempotency key when absent."""
        etype = parse_event_type(event_type)
        return cls(
            id=event_id or generate_event_id(etype),
            type=etype,
            match_id=str(match_id),
            payload=payload or {},
            created_at=created_at or _utcnow(),
            idempotency_key=idempotency_key,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Event":
        """
        Build an event from the raw match-event shape.

        Only structural checks happen here: a non-empty match_id, a known
        event_type and a parseable timestamp.
        """
        if not isinstance(data, Mapping):
            raise PermanentError("Event data is required and must be an object", ErrorKind.VALIDATION)

        match_id = data.get("match_id")
        if match_id is None or (isinstance(match_id, str) and not match_id.strip()):
            raise PermanentError(
                "match_id is required and must be a non-empty string or number",
                ErrorKind.VALIDATION,
            )

        reserved = {"event_id", "event_type", "match_id", "timestamp", "idempotency_key", "retry_count"}
        payload = {k: v for k, v in data.items() if k not in reserved}
        event = cls.create(
            data.get("event_type"),
            match_id,
            payload,
            event_id=data.get("event_id"),
            created_at=parse_timestamp(data.get("timestamp")),
            idempotency_key=data.get("idempotency_key") or "",
        )
        try:
            retry_count = int(data.get("retry_count") or 0)
        except (TypeError, ValueError) as e:
            raise PermanentError(
                f"retry_count must be a non-negative integer: {data.get('retry_count')!r}",
                ErrorKind.VALIDATION,
            ) from e
        if retry_count < 0:
            raise PermanentError(f"retry_count must be a non-negative integer: {retry_count}", ErrorKind.VALIDATION)
        if retry_count:
            event = replace(event, retry_count=retry_count)
        return event

    def key_fields(self) -> dict[str, Any]:
        return {
            "match_id": self.match_id,
            "event_type": self.type.value,
            "timestamp": self.created_at.isoformat(),
            "player_id": self.payload.get("player_id"),
            "team_id": self.payload.get("team_id"),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.payload,
            "event_id": self.id,
            "event_type": self.type.value,
            "match_id": self.match_id,
            "timestamp": self.created_at.isoformat(),
            "idempotency_key": self.idempotency_key,
            "retry_count": self.retry_count,
        }


@dataclass(frozen=True)
class EventEnvelope:
    """An event plus the tracing metadata added before transport."""
    event: Event
    trace_id: str
    parent_id: Optional[str] = None
    processed_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def wrap(
        cls,
        event: Event,
        trace_id: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> "EventEnvelope":
        return cls(
            event=event,
            trace_id=trace_id or str(uuid.uuid4()),
            parent_id=parent_id,
        )

    @property
    def event_id(self) -> str:
        return self.event.id

    @property
    def idempotency_key(self) -> str:
        return self.event.idempotency_key

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.event.to_dict(),
            "trace_id": self.trace_id,
            "parent_id": self.parent_id,
            "processed_timestamp": self.processed_at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)
