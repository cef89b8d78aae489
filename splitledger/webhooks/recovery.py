"""Dead-letter recovery for deliveries that exhausted their retries."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from splitledger.webhooks.exceptions import DeliveryNotFoundError
from splitledger.webhooks.models import DeliveryStatus, WebhookDelivery
from splitledger.webhooks.queue import DeliveryJob, JobQueue
from splitledger.webhooks.store import DeliveryStore

if TYPE_CHECKING:
    from splitledger.db.session import TenantSessionFactory

logger = logging.getLogger(__name__)

DEFAULT_REQUEUE_LIMIT = 100


async def enqueue_deliveries(
    sessions: TenantSessionFactory,
    queue: JobQueue,
    tenant_scope: str,
    deliveries: list[WebhookDelivery],
) -> None:
    """Enqueue jobs for deliveries already reset to ``pending``.

    A pending row without a job is never picked up, so when the queue fails
    the rows not yet enqueued are marked ``failed`` (redeliverable) before
    the error propagates.
    """
    for index, delivery in enumerate(deliveries):
        try:
            await queue.enqueue(
                DeliveryJob(
                    delivery_id=str(delivery.id),
                    webhook_id=str(delivery.webhook_id),
                    tenant_schema=tenant_scope,
                )
            )
        except Exception as e:
            not_enqueued = [d.id for d in deliveries[index:]]
            logger.error(
                "Queue unavailable while requeueing (tenant: %s): "
                "%d delivery(ies) marked failed",
                tenant_scope,
                len(not_enqueued),
            )
            async with sessions.session(tenant_scope) as session:
                await DeliveryStore(session).mark_failed(not_enqueued, f"Queue unavailable: {e}")
                await session.commit()
            raise


class DeadLetterRecovery:
    """Lists dead deliveries and puts them back into the automatic cycle."""

    def __init__(self, sessions: TenantSessionFactory, queue: JobQueue):
        self._sessions = sessions
        self._queue = queue

    async def list_dead(
        self,
        tenant_scope: str,
        webhook_id: uuid.UUID | None = None,
        limit: int | None = None,
    ) -> list[WebhookDelivery]:
        """Dead deliveries, newest first."""
        async with self._sessions.session(tenant_scope) as session:
            return await DeliveryStore(session).list_dead(webhook_id=webhook_id, limit=limit)

    async def requeue_dead(self, tenant_scope: str, delivery_id: uuid.UUID) -> WebhookDelivery:
        """Reset one dead delivery to pending and enqueue it.

        Raises:
            DeliveryNotFoundError: If no dead delivery has this id
        """
        async with self._sessions.session(tenant_scope) as session:
            delivery = await DeliveryStore(session).reset_for_redelivery(
                delivery_id,
                from_statuses=(DeliveryStatus.DEAD.value,),
            )
            if delivery is None:
                raise DeliveryNotFoundError(str(delivery_id))
            await session.commit()

        await enqueue_deliveries(self._sessions, self._queue, tenant_scope, [delivery])
        logger.info("Dead delivery requeued (delivery: %s, tenant: %s)", delivery_id, tenant_scope)
        return delivery

    async def requeue_all_dead(
        self,
        tenant_scope: str,
        webhook_id: uuid.UUID | None = None,
        limit: int = DEFAULT_REQUEUE_LIMIT,
    ) -> list[WebhookDelivery]:
        """Requeue up to ``limit`` of the newest dead deliveries."""
        requeued: list[WebhookDelivery] = []
        async with self._sessions.session(tenant_scope) as session:
            store = DeliveryStore(session)
            for dead in await store.list_dead(webhook_id=webhook_id, limit=limit):
                delivery = await store.reset_for_redelivery(
                    dead.id,
                    from_statuses=(DeliveryStatus.DEAD.value,),
                )
                # None when a concurrent requeue got there first
                if delivery is not None:
                    requeued.append(delivery)
            await session.commit()

        await enqueue_deliveries(self._sessions, self._queue, tenant_scope, requeued)

        logger.info(
            "Requeued %d dead delivery(ies) (tenant: %s, webhook: %s)",
            len(requeued),
            tenant_scope,
            webhook_id or "all",
        )
        return requeued
