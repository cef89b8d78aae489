"""Webhook management service.

Operator-facing operations on one tenant's subscriptions and deliveries:
registration, inspection, manual redelivery and synchronous test sends.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from typing import TYPE_CHECKING, Any

from splitledger.webhooks.config import WebhookSettings
from splitledger.webhooks.events import WEBHOOK_EVENT_CATEGORIES, EventEnvelope
from splitledger.webhooks.exceptions import (
    DeliveryNotFoundError,
    DeliveryStateError,
    WebhookNotFoundError,
)
from splitledger.webhooks.models import REDELIVERABLE_STATUSES, Webhook, WebhookDelivery
from splitledger.webhooks.queue import JobQueue
from splitledger.webhooks.recovery import enqueue_deliveries
from splitledger.webhooks.signer import WebhookSigner
from splitledger.webhooks.store import DeliveryStore, SubscriptionStore
from splitledger.webhooks.transport import AttemptResult, DeliveryTransport

if TYPE_CHECKING:
    from splitledger.db.session import TenantSessionFactory

logger = logging.getLogger(__name__)

TEST_DELIVERY_ID_PREFIX = "dlv_test_"
DEFAULT_TEST_DATA: dict[str, Any] = {
    "test": True,
    "message": "This is a test webhook delivery",
}


def generate_webhook_secret() -> str:
    """64 hex characters from 32 random bytes."""
    return secrets.token_hex(32)


class WebhookService:
    """Subscription management, redelivery and test delivery for a tenant."""

    def __init__(
        self,
        sessions: TenantSessionFactory,
        queue: JobQueue,
        transport: DeliveryTransport,
        settings: WebhookSettings | None = None,
    ):
        self._sessions = sessions
        self._queue = queue
        self._transport = transport
        self._settings = settings or WebhookSettings()

    @staticmethod
    def event_catalog() -> dict[str, list[str]]:
        return {category: list(events) for category, events in WEBHOOK_EVENT_CATEGORIES.items()}

    async def create_webhook(
        self,
        tenant_scope: str,
        *,
        url: str,
        events: list[str],
        created_by: uuid.UUID,
        description: str | None = None,
        secret: str | None = None,
    ) -> Webhook:
        """Register a subscription. The returned row carries the secret."""
        async with self._sessions.session(tenant_scope) as session:
            webhook = await SubscriptionStore(session).create(
                url=url,
                secret=secret or generate_webhook_secret(),
                events=events,
                created_by=created_by,
                description=description,
            )
            await session.commit()

        logger.info(
            "Webhook created (webhook: %s, tenant: %s, created_by: %s)",
            webhook.id,
            tenant_scope,
            created_by,
        )
        return webhook

    async def list_webhooks(
        self,
        tenant_scope: str,
        *,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Webhook], int]:
        async with self._sessions.session(tenant_scope) as session:
            return await SubscriptionStore(session).list_webhooks(
                is_active=is_active, limit=limit, offset=offset
            )

    async def get_webhook(
        self, tenant_scope: str, webhook_id: uuid.UUID
    ) -> tuple[Webhook, dict[str, Any]]:
        """Get a subscription with its delivery statistics."""
        async with self._sessions.session(tenant_scope) as session:
            webhook = await self._require_webhook(SubscriptionStore(session), webhook_id)
            stats = await DeliveryStore(session).stats_for_webhook(webhook_id)
            return webhook, stats

    async def update_webhook(
        self,
        tenant_scope: str,
        webhook_id: uuid.UUID,
        changes: dict[str, Any],
    ) -> Webhook:
        async with self._sessions.session(tenant_scope) as session:
            store = SubscriptionStore(session)
            webhook = await self._require_webhook(store, webhook_id)
            await store.update(webhook, changes)
            await session.commit()

        logger.info(
            "Webhook updated (webhook: %s, tenant: %s, fields: %s)",
            webhook_id,
            tenant_scope,
            ", ".join(sorted(changes)),
        )
        return webhook

    async def delete_webhook(self, tenant_scope: str, webhook_id: uuid.UUID) -> Webhook:
        """Soft delete: the row and its delivery history are kept."""
        async with self._sessions.session(tenant_scope) as session:
            store = SubscriptionStore(session)
            webhook = await self._require_webhook(store, webhook_id)
            await store.deactivate(webhook)
            await session.commit()

        logger.info("Webhook deactivated (webhook: %s, tenant: %s)", webhook_id, tenant_scope)
        return webhook

    async def list_deliveries(
        self,
        tenant_scope: str,
        webhook_id: uuid.UUID,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]:
        async with self._sessions.session(tenant_scope) as session:
            await self._require_webhook(SubscriptionStore(session), webhook_id)
            return await DeliveryStore(session).list_for_webhook(
                webhook_id, status=status, limit=limit, offset=offset
            )

    async def get_delivery(
        self,
        tenant_scope: str,
        webhook_id: uuid.UUID,
        delivery_id: uuid.UUID,
    ) -> WebhookDelivery:
        async with self._sessions.session(tenant_scope) as session:
            delivery = await DeliveryStore(session).get(delivery_id, webhook_id=webhook_id)
            if delivery is None:
                raise DeliveryNotFoundError(str(delivery_id))
            return delivery

    async def redeliver(
        self,
        tenant_scope: str,
        webhook_id: uuid.UUID,
        delivery_id: uuid.UUID,
    ) -> WebhookDelivery:
        """Start a new attempt cycle for a failed or dead delivery.

        Raises:
            DeliveryNotFoundError: If the delivery does not belong to the webhook
            DeliveryStateError: If the delivery is pending, retrying or successful
        """
        async with self._sessions.session(tenant_scope) as session:
            store = DeliveryStore(session)
            delivery = await store.reset_for_redelivery(delivery_id, webhook_id=webhook_id)
            if delivery is None:
                current = await store.get(delivery_id, webhook_id=webhook_id)
                if current is None:
                    raise DeliveryNotFoundError(str(delivery_id))
                raise DeliveryStateError(str(delivery_id), current.status, REDELIVERABLE_STATUSES)
            await session.commit()

        await enqueue_deliveries(self._sessions, self._queue, tenant_scope, [delivery])
        logger.info(
            "Delivery redelivered (delivery: %s, webhook: %s, tenant: %s)",
            delivery_id,
            webhook_id,
            tenant_scope,
        )
        return delivery

    async def test_webhook(
        self,
        tenant_scope: str,
        webhook_id: uuid.UUID,
        event_type: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> AttemptResult:
        """Send one signed request now and report the outcome.

        Nothing is persisted and nothing is retried.
        """
        async with self._sessions.session(tenant_scope) as session:
            webhook = await self._require_webhook(SubscriptionStore(session), webhook_id)

        event_type = event_type or (webhook.events[0] if webhook.events else "webhook.updated")
        envelope = EventEnvelope.for_test(
            event_type, DEFAULT_TEST_DATA if data is None else data
        )
        body = envelope.serialize()
        headers = WebhookSigner.get_headers(
            body,
            webhook.secret,
            str(webhook.id),
            f"{TEST_DELIVERY_ID_PREFIX}{uuid.uuid4().hex}",
            event_type,
        )

        result = await self._transport.send(
            webhook.url, body, headers, self._settings.test_timeout_seconds
        )
        logger.info(
            "Test delivery to webhook %s (tenant: %s): success=%s status=%s",
            webhook_id,
            tenant_scope,
            result.success,
            result.status_code,
        )
        return result

    @staticmethod
    async def _require_webhook(store: SubscriptionStore, webhook_id: uuid.UUID) -> Webhook:
        webhook = await store.get(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(str(webhook_id))
        return webhook
