"""Tests for the event catalog and EventEnvelope."""

import json
import re
from datetime import UTC, datetime

from hypothesis import given, settings
from hypothesis import strategies as st

from splitledger.webhooks.events import (
    WEBHOOK_EVENT_CATEGORIES,
    WEBHOOK_EVENTS,
    EventEnvelope,
    get_event_category,
    get_events_by_category,
    is_known_event,
)

EVENT_ID_PATTERN = re.compile(r"^evt_[0-9a-f]{32}$")

event_data = st.dictionaries(
    keys=st.text(alphabet="abcdefghijklmnopqrstuvwxyz_", min_size=1, max_size=20),
    values=st.one_of(st.integers(), st.text(max_size=50), st.booleans(), st.none()),
    max_size=10,
)


class TestEventCatalog:
    def test_catalog_size(self):
        assert len(WEBHOOK_EVENTS) == 27
        assert len(set(WEBHOOK_EVENTS)) == 27

    def test_categories_cover_catalog_exactly(self):
        categorized = [e for events in WEBHOOK_EVENT_CATEGORIES.values() for e in events]
        assert sorted(categorized) == sorted(WEBHOOK_EVENTS)

    def test_lookup_helpers(self):
        assert is_known_event("invoice.paid")
        assert not is_known_event("invoice.refunded")
        assert get_event_category("invoice.paid") == "billing"
        assert get_event_category("unknown.event") is None
        assert get_events_by_category("usage") == [
            "usage_record.created",
            "usage_threshold.reached",
        ]
        assert get_events_by_category("nope") == []


class TestEventEnvelope:
    """Tests for the transmitted envelope."""

    @settings(max_examples=50)
    @given(data=event_data)
    def test_envelope_shape(self, data: dict):
        envelope = EventEnvelope(type="invoice.paid", data=data)
        payload = json.loads(envelope.serialize())

        assert set(payload) == {"id", "type", "created_at", "data"}
        assert EVENT_ID_PATTERN.match(payload["id"])
        assert payload["type"] == "invoice.paid"
        assert payload["data"] == data

    def test_ids_are_unique(self):
        ids = {EventEnvelope(type="user.created", data={}).id for _ in range(100)}
        assert len(ids) == 100

    def test_created_at_is_utc_with_milliseconds(self):
        envelope = EventEnvelope(
            type="user.created",
            data={},
            created_at=datetime(2026, 1, 15, 10, 30, 0, 123456, tzinfo=UTC),
        )
        assert envelope.to_payload()["created_at"] == "2026-01-15T10:30:00.123Z"

    def test_test_envelope_id_prefix(self):
        envelope = EventEnvelope.for_test("webhook.updated", {"test": True})
        assert envelope.id.startswith("evt_test_")

    def test_serialize_is_compact_and_deserializable(self):
        envelope = EventEnvelope(type="invoice.paid", data={"amount": 1200, "memo": "café"})
        body = envelope.serialize()

        assert " " not in body.replace("café", "")
        assert "café" in body

        restored = EventEnvelope.deserialize(body)
        assert restored.id == envelope.id
        assert restored.type == envelope.type
        assert restored.data == envelope.data
        assert restored.serialize() == body
