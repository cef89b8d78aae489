"""Webhook event dispatcher.

Domain code calls ``dispatch`` when something webhook-worthy happens. The
dispatcher records one ``pending`` delivery per matching subscription and
hands the deliveries to the queue; it never talks HTTP itself.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from splitledger.db.session import validate_tenant_schema
from splitledger.webhooks.config import WebhookSettings
from splitledger.webhooks.events import EventEnvelope
from splitledger.webhooks.queue import DeliveryJob, JobQueue
from splitledger.webhooks.store import DeliveryStore, SubscriptionStore

if TYPE_CHECKING:
    from splitledger.db.session import TenantSessionFactory

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """What one dispatch produced.

    ``envelope`` is None when no subscription matched or the idempotency
    key was already used (``duplicate``).
    """

    envelope: EventEnvelope | None = None
    delivery_ids: list[uuid.UUID] = field(default_factory=list)
    duplicate: bool = False


class WebhookDispatcher:
    """Fans one domain event out to every subscribed endpoint of a tenant."""

    def __init__(
        self,
        sessions: TenantSessionFactory,
        queue: JobQueue,
        settings: WebhookSettings | None = None,
    ):
        self._sessions = sessions
        self._queue = queue
        self._settings = settings or WebhookSettings()

    async def dispatch(
        self,
        tenant_scope: str,
        event_type: str,
        data: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> DispatchResult:
        """
        Record and enqueue deliveries for an event.

        Args:
            tenant_scope: Tenant schema the event belongs to
            event_type: Event type (e.g., "invoice.paid")
            data: Event-specific payload
            idempotency_key: Optional caller key; a repeated key is a no-op

        Returns:
            DispatchResult with the shared envelope and the new delivery ids

        Raises:
            InvalidTenantScopeError: If tenant_scope is not a tenant schema
            Store or queue errors propagate unchanged.
        """
        validate_tenant_schema(tenant_scope)

        if idempotency_key is not None:
            claimed = await self._queue.claim_idempotency_key(
                tenant_scope,
                idempotency_key,
                self._settings.idempotency_ttl_seconds,
            )
            if not claimed:
                logger.info(
                    "Skipping duplicate dispatch of %s (tenant: %s, key: %s)",
                    event_type,
                    tenant_scope,
                    idempotency_key,
                )
                return DispatchResult(duplicate=True)

        try:
            return await self._dispatch(tenant_scope, event_type, data)
        except Exception:
            if idempotency_key is not None:
                await self._release_key(tenant_scope, idempotency_key)
            raise

    async def _dispatch(
        self,
        tenant_scope: str,
        event_type: str,
        data: dict[str, Any],
    ) -> DispatchResult:
        async with self._sessions.session(tenant_scope) as session:
            webhooks = await SubscriptionStore(session).list_active_for_event(event_type)
            if not webhooks:
                logger.debug(
                    "No active webhooks for event %s (tenant: %s)", event_type, tenant_scope
                )
                return DispatchResult()

            envelope = EventEnvelope(type=event_type, data=data)
            payload = envelope.serialize()

            deliveries = DeliveryStore(session)
            jobs: list[DeliveryJob] = []
            for webhook in webhooks:
                delivery = await deliveries.create_pending(
                    webhook_id=webhook.id,
                    event_type=event_type,
                    payload=payload,
                )
                jobs.append(
                    DeliveryJob(
                        delivery_id=str(delivery.id),
                        webhook_id=str(webhook.id),
                        tenant_schema=tenant_scope,
                    )
                )
            # All rows or none
            await session.commit()

            for index, job in enumerate(jobs):
                try:
                    await self._queue.enqueue(job)
                except Exception as e:
                    not_enqueued = [uuid.UUID(j.delivery_id) for j in jobs[index:]]
                    logger.error(
                        "Queue unavailable while dispatching %s (tenant: %s): "
                        "%d delivery(ies) marked failed",
                        envelope.id,
                        tenant_scope,
                        len(not_enqueued),
                    )
                    await deliveries.mark_failed(not_enqueued, f"Queue unavailable: {e}")
                    await session.commit()
                    raise

                logger.info(
                    "Webhook delivery enqueued (delivery: %s, webhook: %s, event: %s, tenant: %s)",
                    job.delivery_id,
                    job.webhook_id,
                    event_type,
                    tenant_scope,
                )

        return DispatchResult(
            envelope=envelope,
            delivery_ids=[uuid.UUID(job.delivery_id) for job in jobs],
        )

    async def _release_key(self, tenant_scope: str, idempotency_key: str) -> None:
        try:
            await self._queue.release_idempotency_key(tenant_scope, idempotency_key)
        except Exception as e:
            # The original error is re-raised by the caller
            logger.error(
                "Failed to release idempotency key %s (tenant: %s): %s",
                idempotency_key,
                tenant_scope,
                e,
            )


async def dispatch_webhook_event(
    dispatcher: WebhookDispatcher,
    tenant_scope: str,
    event_type: str,
    data: dict[str, Any],
    idempotency_key: str | None = None,
) -> DispatchResult:
    """Entry point for domain code (billing, users, API keys...)."""
    return await dispatcher.dispatch(
        tenant_scope,
        event_type,
        data,
        idempotency_key=idempotency_key,
    )
