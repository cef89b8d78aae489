"""Webhook repositories (subscriptions + delivery records).

Both stores operate on a tenant-bound ``AsyncSession``; callers own the
transaction and commit once the state they need is in place.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Select, cast, desc, func, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from splitledger.webhooks.models import (
    REDELIVERABLE_STATUSES,
    DeliveryStatus,
    Webhook,
    WebhookDelivery,
)


def active_for_event_query(event_type: str, dialect_name: str) -> Select[tuple[Webhook]]:
    """Active subscriptions for ``event_type``, filtered in SQL where the dialect allows."""
    query = select(Webhook).where(Webhook.is_active.is_(True)).order_by(Webhook.created_at)
    if dialect_name == "postgresql":
        query = query.where(cast(Webhook.events, JSONB).contains([event_type]))
    return query


class SubscriptionStore:
    """Persisted ``webhooks`` rows."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(
        self,
        *,
        url: str,
        secret: str,
        events: list[str],
        created_by: uuid.UUID,
        description: str | None = None,
    ) -> Webhook:
        webhook = Webhook(
            url=url,
            secret=secret,
            events=list(events),
            description=description,
            created_by=created_by,
            is_active=True,
        )
        self._session.add(webhook)
        await self._session.flush()
        return webhook

    async def get(self, webhook_id: uuid.UUID) -> Webhook | None:
        return await self._session.get(Webhook, webhook_id)

    async def list_webhooks(
        self,
        *,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Webhook], int]:
        query = select(Webhook)
        count_query = select(func.count()).select_from(Webhook)
        if is_active is not None:
            query = query.where(Webhook.is_active == is_active)
            count_query = count_query.where(Webhook.is_active == is_active)

        query = query.order_by(desc(Webhook.created_at)).limit(limit).offset(offset)

        result = await self._session.execute(query)
        total = await self._session.scalar(count_query)
        return list(result.scalars().all()), int(total or 0)

    async def list_active_for_event(self, event_type: str) -> list[Webhook]:
        """Active subscriptions whose event list contains ``event_type``."""
        dialect_name = self._session.get_bind().dialect.name
        result = await self._session.execute(active_for_event_query(event_type, dialect_name))
        # Only PostgreSQL filters on events in SQL; re-check here for the rest
        return [w for w in result.scalars().all() if w.subscribes_to(event_type)]

    async def update(self, webhook: Webhook, changes: dict[str, Any]) -> Webhook:
        for field_name in ("url", "events", "description", "is_active"):
            if field_name in changes:
                setattr(webhook, field_name, changes[field_name])
        await self._session.flush()
        return webhook

    async def deactivate(self, webhook: Webhook) -> Webhook:
        webhook.is_active = False
        await self._session.flush()
        return webhook


class DeliveryStore:
    """Persisted ``webhook_deliveries`` rows."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create_pending(
        self,
        *,
        webhook_id: uuid.UUID,
        event_type: str,
        payload: str,
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            webhook_id=webhook_id,
            event_type=event_type,
            payload=payload,
            status=DeliveryStatus.PENDING.value,
            attempt_count=0,
        )
        self._session.add(delivery)
        await self._session.flush()
        return delivery

    async def get(
        self,
        delivery_id: uuid.UUID,
        webhook_id: uuid.UUID | None = None,
    ) -> WebhookDelivery | None:
        query = select(WebhookDelivery).where(WebhookDelivery.id == delivery_id)
        if webhook_id is not None:
            query = query.where(WebhookDelivery.webhook_id == webhook_id)
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def list_for_webhook(
        self,
        webhook_id: uuid.UUID,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]:
        conditions = [WebhookDelivery.webhook_id == webhook_id]
        if status:
            conditions.append(WebhookDelivery.status == status)

        result = await self._session.execute(
            select(WebhookDelivery)
            .where(*conditions)
            .order_by(desc(WebhookDelivery.created_at))
            .limit(limit)
            .offset(offset)
        )
        total = await self._session.scalar(
            select(func.count()).select_from(WebhookDelivery).where(*conditions)
        )
        return list(result.scalars().all()), int(total or 0)

    async def list_dead(
        self,
        *,
        webhook_id: uuid.UUID | None = None,
        limit: int | None = None,
    ) -> list[WebhookDelivery]:
        """Dead-lettered deliveries, most recent first."""
        query = select(WebhookDelivery).where(
            WebhookDelivery.status == DeliveryStatus.DEAD.value
        )
        if webhook_id is not None:
            query = query.where(WebhookDelivery.webhook_id == webhook_id)
        query = query.order_by(desc(WebhookDelivery.created_at))
        if limit is not None:
            query = query.limit(limit)
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def reset_for_redelivery(
        self,
        delivery_id: uuid.UUID,
        *,
        from_statuses: tuple[str, ...] = REDELIVERABLE_STATUSES,
        webhook_id: uuid.UUID | None = None,
    ) -> WebhookDelivery | None:
        """Start a fresh attempt cycle, but only from one of ``from_statuses``.

        The status check is part of the UPDATE, so two concurrent requeues of
        the same row cannot both succeed.
        """
        conditions = [
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.status.in_(from_statuses),
        ]
        if webhook_id is not None:
            conditions.append(WebhookDelivery.webhook_id == webhook_id)

        result = await self._session.execute(
            update(WebhookDelivery)
            .where(*conditions)
            .values(
                status=DeliveryStatus.PENDING.value,
                attempt_count=0,
                next_retry_at=None,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        delivery = await self.get(delivery_id)
        if delivery is not None:
            await self._session.refresh(delivery)
        return delivery

    async def mark_failed(self, delivery_ids: list[uuid.UUID], error: str) -> None:
        if not delivery_ids:
            return
        await self._session.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id.in_(delivery_ids))
            .values(status=DeliveryStatus.FAILED.value, last_error=error, next_retry_at=None)
            .execution_options(synchronize_session=False)
        )

    async def stats_for_webhook(self, webhook_id: uuid.UUID) -> dict[str, Any]:
        """Delivery counts per status plus the latest successful delivery time."""
        result = await self._session.execute(
            select(WebhookDelivery.status, func.count())
            .where(WebhookDelivery.webhook_id == webhook_id)
            .group_by(WebhookDelivery.status)
        )
        counts = {status: int(count) for status, count in result.all()}
        last_delivery_at: datetime | None = await self._session.scalar(
            select(func.max(WebhookDelivery.delivered_at)).where(
                WebhookDelivery.webhook_id == webhook_id
            )
        )

        total = sum(counts.values())
        success = counts.get(DeliveryStatus.SUCCESS.value, 0)
        return {
            "total_deliveries": total,
            "success_count": success,
            "failure_count": counts.get(DeliveryStatus.FAILED.value, 0)
            + counts.get(DeliveryStatus.RETRYING.value, 0),
            "dead_count": counts.get(DeliveryStatus.DEAD.value, 0),
            "pending_count": counts.get(DeliveryStatus.PENDING.value, 0),
            "last_delivery_at": last_delivery_at,
            "success_rate": round(success / total * 100, 2) if total else 0.0,
        }
