"""Tests for match events and envelopes."""

import json
from datetime import datetime, timezone

import pytest

from matchrelay.core.events import (
    Event,
    EventEnvelope,
    MatchEventType,
    derive_idempotency_key,
)
from matchrelay.errors import ErrorKind, PermanentError

from tests.fakes import make_event

KICK = datetime(2024, 5, 1, 19, 45, tzinfo=timezone.utc)


class TestIdempotencyKey:

    def test_same_occurrence_same_key(self):
        a = make_event(created_at=KICK, event_id="a")
        b = make_event(created_at=KICK, event_id="b")

        assert a.idempotency_key == b.idempotency_key
        assert len(a.idempotency_key) == 64

    def test_key_ignores_non_identity_payload(self):
        a = make_event(created_at=KICK, payload={"player_id": "p9", "team_id": "home", "minute": 12})
        b = make_event(created_at=KICK, payload={"player_id": "p9", "team_id": "home", "minute": 13})
        assert a.idempotency_key == b.idempotency_key

    def test_different_player_different_key(self):
        a = make_event(created_at=KICK, payload={"player_id": "p9"})
        b = make_event(created_at=KICK, payload={"player_id": "p10"})
        assert a.idempotency_key != b.idempotency_key

    def test_field_order_does_not_matter(self):
        fields = {"match_id": "m1", "event_type": "goal", "player_id": "p9"}
        reordered = {"player_id": "p9", "event_type": "goal", "match_id": "m1"}
        assert derive_idempotency_key(fields) == derive_idempotency_key(reordered)

    def test_explicit_key_is_kept(self):
        event = make_event(idempotency_key="k1")
        assert event.idempotency_key == "k1"


class TestEvent:

    def test_create_converts_string_type(self):
        event = Event.create("yellow_card", 42, {"player_id": "p4"})

        assert event.type is MatchEventType.YELLOW_CARD
        assert event.match_id == "42"
        assert "-yellow_card-" in event.id

    def test_unknown_type_is_permanent_validation_error(self):
        with pytest.raises(PermanentError) as exc_info:
            Event.create("offside_trap", "m1")
        assert exc_info.value.kind == ErrorKind.VALIDATION

    def test_empty_match_id_rejected(self):
        with pytest.raises(PermanentError):
            Event.create(MatchEventType.GOAL, "")

    def test_payload_is_read_only(self):
        event = make_event()
        with pytest.raises(TypeError):
            event.payload["player_id"] = "p1"

    def test_payload_is_copied(self):
        payload = {"player_id": "p9"}
        event = make_event(payload=payload)
        payload["player_id"] = "changed"
        assert event.payload["player_id"] == "p9"


class TestFromDict:

    def test_parses_raw_match_event(self):
        event = Event.from_dict({
            "match_id": "m7",
            "event_type": "goal",
            "timestamp": "2024-05-01T19:45:00Z",
            "player_id": "p9",
            "team_id": "home",
            "minute": 23,
        })

        assert event.match_id == "m7"
        assert event.created_at == KICK
        assert event.payload == {"player_id": "p9", "team_id": "home", "minute": 23}
        assert event.retry_count == 0

    def test_naive_timestamp_is_utc(self):
        event = Event.from_dict({"match_id": "m1", "event_type": "pass", "timestamp": "2024-05-01T19:45:00"})
        assert event.created_at == KICK

    def test_keeps_retry_count(self):
        event = Event.from_dict({
            "match_id": "m1",
            "event_type": "goal",
            "timestamp": "2024-05-01T19:45:00Z",
            "retry_count": 2,
        })
        assert event.retry_count == 2

    @pytest.mark.parametrize("data", [
        None,
        {"event_type": "goal", "timestamp": "2024-05-01T19:45:00Z"},
        {"match_id": "  ", "event_type": "goal", "timestamp": "2024-05-01T19:45:00Z"},
        {"match_id": "m1", "event_type": "corner_kick", "timestamp": "2024-05-01T19:45:00Z"},
        {"match_id": "m1", "event_type": "goal"},
        {"match_id": "m1", "event_type": "goal", "timestamp": "yesterday"},
        {"match_id": "m1", "event_type": "goal", "timestamp": "2024-05-01T19:45:00Z", "retry_count": "abc"},
        {"match_id": "m1", "event_type": "goal", "timestamp": "2024-05-01T19:45:00Z", "retry_count": [1]},
        {"match_id": "m1", "event_type": "goal", "timestamp": "2024-05-01T19:45:00Z", "retry_count": -1},
    ])
    def test_structural_errors_are_permanent(self, data):
        with pytest.raises(PermanentError):
            Event.from_dict(data)

    def test_to_dict_matches_from_dict(self):
        event = make_event(created_at=KICK)
        again = Event.from_dict(event.to_dict())

        assert again.id == event.id
        assert again.idempotency_key == event.idempotency_key
        assert dict(again.payload) == dict(event.payload)


class TestEventEnvelope:

    def test_wrap_generates_trace_id(self):
        envelope = EventEnvelope.wrap(make_event())
        assert envelope.trace_id
        assert envelope.parent_id is None

    def test_wrap_keeps_given_trace(self):
        envelope = EventEnvelope.wrap(make_event(), trace_id="t-1", parent_id="p-1")

        assert envelope.trace_id == "t-1"
        assert envelope.event_id == "m1-goal-1"

    def test_to_json_carries_tracing_fields(self):
        event = make_event()
        envelope = EventEnvelope.wrap(event, trace_id="t-1", parent_id="p-1")
        body = json.loads(envelope.to_json())

        assert body["trace_id"] == "t-1"
        assert body["parent_id"] == "p-1"
        assert body["idempotency_key"] == event.idempotency_key
        assert body["event_type"] == "goal"
        assert body["player_id"] == "p9"
        assert "processed_timestamp" in body
