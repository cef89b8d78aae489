"""Webhook event catalog and the signed event envelope."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Event types that can trigger webhooks
WEBHOOK_EVENTS: tuple[str, ...] = (
    "account.created",
    "account.updated",
    "account.deleted",
    "user.created",
    "user.updated",
    "user.deleted",
    "api_key.created",
    "api_key.updated",
    "api_key.deleted",
    "api_key.revoked",
    "api_key.rate_limited",
    "subscription.created",
    "subscription.updated",
    "subscription.cancelled",
    "subscription.renewed",
    "invoice.created",
    "invoice.paid",
    "invoice.payment_failed",
    "invoice.overdue",
    "usage_record.created",
    "usage_threshold.reached",
    "webhook.created",
    "webhook.updated",
    "webhook.deleted",
    "webhook.delivery.success",
    "webhook.delivery.failed",
    "webhook.delivery.dead",
)

# Grouping used by the dashboard's event picker
WEBHOOK_EVENT_CATEGORIES: dict[str, tuple[str, ...]] = {
    "account": ("account.created", "account.updated", "account.deleted"),
    "user": ("user.created", "user.updated", "user.deleted"),
    "api_key": (
        "api_key.created",
        "api_key.updated",
        "api_key.deleted",
        "api_key.revoked",
        "api_key.rate_limited",
    ),
    "subscription": (
        "subscription.created",
        "subscription.updated",
        "subscription.cancelled",
        "subscription.renewed",
    ),
    "billing": (
        "invoice.created",
        "invoice.paid",
        "invoice.payment_failed",
        "invoice.overdue",
    ),
    "usage": ("usage_record.created", "usage_threshold.reached"),
    "webhook": (
        "webhook.created",
        "webhook.updated",
        "webhook.deleted",
        "webhook.delivery.success",
        "webhook.delivery.failed",
        "webhook.delivery.dead",
    ),
}

EVENT_ID_PREFIX = "evt_"
TEST_EVENT_ID_PREFIX = "evt_test_"


def is_known_event(event_type: str) -> bool:
    return event_type in WEBHOOK_EVENTS


def get_events_by_category(category: str) -> list[str]:
    """Get the event types of a category (empty for unknown categories)."""
    return list(WEBHOOK_EVENT_CATEGORIES.get(category, ()))


def get_event_category(event_type: str) -> str | None:
    """Get the category an event type belongs to."""
    for category, events in WEBHOOK_EVENT_CATEGORIES.items():
        if event_type in events:
            return category
    return None


def generate_event_id(prefix: str = EVENT_ID_PREFIX) -> str:
    return f"{prefix}{uuid.uuid4().hex}"


def _isoformat(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class EventEnvelope:
    """The JSON object transmitted to subscribers.

    One envelope is built per dispatch and shared by every subscriber of
    that event occurrence; receivers dedupe on ``id``.
    """

    type: str
    data: dict[str, Any]
    id: str = field(default_factory=generate_event_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def for_test(cls, event_type: str, data: dict[str, Any]) -> EventEnvelope:
        """Create an ad-hoc envelope for a synchronous test delivery."""
        return cls(type=event_type, data=data, id=generate_event_id(TEST_EVENT_ID_PREFIX))

    def to_payload(self) -> dict[str, Any]:
        """Convert to JSON-serializable payload."""
        return {
            "id": self.id,
            "type": self.type,
            "created_at": _isoformat(self.created_at),
            "data": self.data,
        }

    def serialize(self) -> str:
        """Serialize to the exact text that is stored, signed and sent."""
        return json.dumps(self.to_payload(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> EventEnvelope:
        """Create EventEnvelope from JSON payload."""
        return cls(
            id=payload["id"],
            type=payload["type"],
            created_at=datetime.fromisoformat(payload["created_at"].replace("Z", "+00:00")),
            data=payload["data"],
        )

    @classmethod
    def deserialize(cls, body: str) -> EventEnvelope:
        return cls.from_payload(json.loads(body))
