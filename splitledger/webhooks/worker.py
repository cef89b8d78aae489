"""Webhook delivery worker."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from splitledger.webhooks.config import WebhookSettings
from splitledger.webhooks.models import ACTIVE_STATUSES, DeliveryStatus, utcnow
from splitledger.webhooks.queue import DeliveryJob, JobQueue, Reservation
from splitledger.webhooks.retry import RetryPolicy
from splitledger.webhooks.signer import WebhookSigner
from splitledger.webhooks.store import DeliveryStore, SubscriptionStore
from splitledger.webhooks.transport import AttemptResult, DeliveryTransport

if TYPE_CHECKING:
    from splitledger.db.session import TenantSessionFactory

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite drops the offset) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass(frozen=True)
class _AttemptTarget:
    """What an attempt needs, read before the HTTP call."""

    url: str
    body: str
    headers: dict[str, str]
    attempt_count: int


class WebhookWorker:
    """Consumes delivery jobs, attempts them and records the outcome.

    Runs ``worker_concurrency`` consumer tasks plus one scheduler task that
    promotes due retries and reclaims jobs whose worker vanished.
    """

    def __init__(
        self,
        sessions: TenantSessionFactory,
        queue: JobQueue,
        transport: DeliveryTransport,
        settings: WebhookSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the worker.

        Args:
            sessions: Tenant-scoped session factory
            queue: Delivery job queue
            transport: Sends the signed HTTP requests
            settings: Delivery tuning (defaults when omitted)
            clock: Current UTC time
        """
        self._sessions = sessions
        self._queue = queue
        self._transport = transport
        self._settings = settings or WebhookSettings()
        self._policy = RetryPolicy.from_settings(self._settings)
        self._clock = clock
        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the consumer and scheduler tasks."""
        if self._running:
            logger.warning("WebhookWorker is already running")
            return

        await self._queue.recover_orphans()

        self._running = True
        self._tasks = [
            asyncio.create_task(self._consume_loop(n), name=f"webhook-consumer-{n}")
            for n in range(self._settings.worker_concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._schedule_loop(), name="webhook-scheduler"))
        logger.info(
            "WebhookWorker started (concurrency: %d)", self._settings.worker_concurrency
        )

    async def stop(self) -> None:
        """Stop processing. Unacknowledged jobs are reclaimed by the next worker."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("WebhookWorker stopped")

    async def _consume_loop(self, consumer_id: int) -> None:
        while self._running:
            try:
                await self.process_next()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in webhook consumer %d: %s", consumer_id, e)
                await asyncio.sleep(1)  # Back off on error

    async def _schedule_loop(self) -> None:
        while self._running:
            try:
                await self._queue.promote_due()
                await self._queue.reclaim_expired()
                await asyncio.sleep(self._settings.scheduler_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in webhook scheduler: %s", e)
                await asyncio.sleep(1)

    async def process_next(self) -> bool:
        """Reserve and process one job. Returns False when the queue was empty."""
        reservation = await self._queue.reserve()
        if reservation is None:
            return False
        await self.process(reservation)
        return True

    async def drain(self, max_jobs: int = 50) -> int:
        """Promote due retries, then process up to ``max_jobs`` ready jobs."""
        await self._queue.promote_due()
        processed = 0
        while processed < max_jobs and await self.process_next():
            processed += 1
        return processed

    async def process(self, reservation: Reservation) -> None:
        """Handle one reserved job and acknowledge it.

        The outcome (and any retry) is persisted first; if that raises, the
        job stays reserved and returns to the queue after its visibility
        timeout.
        """
        await self.handle_job(reservation.job)
        await self._queue.ack(reservation)

    async def handle_job(self, job: DeliveryJob) -> str | None:
        """Run the delivery state machine for one job.

        Returns:
            The delivery status after handling, or None if the delivery is unknown
        """
        try:
            delivery_id = uuid.UUID(job.delivery_id)
        except ValueError:
            logger.error("Discarding webhook job with invalid delivery id: %s", job.delivery_id)
            return None

        target, status = await self._prepare(job, delivery_id)
        if target is None:
            return status

        try:
            result = await self._transport.send(
                target.url,
                target.body,
                target.headers,
                self._settings.delivery_timeout_seconds,
            )
        except Exception as e:
            logger.exception(
                "Unexpected error delivering %s (tenant: %s)", job.delivery_id, job.tenant_schema
            )
            return await self._record_failure(job, delivery_id, target, f"Unexpected error: {e}")

        return await self._record(job, delivery_id, target, result)

    async def _prepare(
        self, job: DeliveryJob, delivery_id: uuid.UUID
    ) -> tuple[_AttemptTarget | None, str | None]:
        """Load the delivery and decide whether an attempt is due."""
        async with self._sessions.session(job.tenant_schema) as session:
            delivery = await DeliveryStore(session).get(delivery_id)
            if delivery is None:
                logger.warning(
                    "Delivery %s not found (tenant: %s)", job.delivery_id, job.tenant_schema
                )
                return None, None

            if delivery.status not in ACTIVE_STATUSES:
                logger.debug(
                    "Skipping delivery %s in terminal status %s", delivery.id, delivery.status
                )
                return None, delivery.status

            if delivery.status == DeliveryStatus.RETRYING.value and delivery.next_retry_at:
                due_at = _as_utc(delivery.next_retry_at)
                if due_at > self._clock():
                    await self._queue.schedule(job, due_at)
                    logger.debug("Delivery %s is not due until %s", delivery.id, due_at)
                    return None, delivery.status

            webhook = await SubscriptionStore(session).get(delivery.webhook_id)
            if webhook is None or not webhook.is_active:
                reason = "Webhook not found" if webhook is None else "Webhook is inactive"
                delivery.mark_dead(reason)
                await session.commit()
                logger.warning(
                    "Delivery %s dead: %s (webhook: %s, tenant: %s)",
                    delivery.id,
                    reason,
                    delivery.webhook_id,
                    job.tenant_schema,
                )
                return None, delivery.status

            headers = WebhookSigner.get_headers(
                delivery.payload,
                webhook.secret,
                str(webhook.id),
                str(delivery.id),
                delivery.event_type,
            )
            return (
                _AttemptTarget(
                    url=webhook.url,
                    body=delivery.payload,
                    headers=headers,
                    attempt_count=delivery.attempt_count,
                ),
                delivery.status,
            )

    async def _record(
        self,
        job: DeliveryJob,
        delivery_id: uuid.UUID,
        target: _AttemptTarget,
        result: AttemptResult,
    ) -> str | None:
        async with self._sessions.session(job.tenant_schema) as session:
            delivery = await DeliveryStore(session).get(delivery_id)
            if delivery is None or delivery.attempt_count != target.attempt_count:
                # Another worker recorded an attempt for this delivery meanwhile
                logger.warning("Discarding concurrent attempt result for %s", delivery_id)
                return delivery.status if delivery else None

            delivery.attempt_count = target.attempt_count + 1

            if result.success:
                delivery.mark_success(result.status_code, result.response_body)
                await session.commit()
                logger.info(
                    "Webhook delivered (delivery: %s, status: %s, attempt: %d, latency: %dms)",
                    delivery.id,
                    result.status_code,
                    delivery.attempt_count,
                    result.latency_ms or 0,
                )
                return delivery.status

            error = result.error or "Delivery failed"
            if self._policy.should_retry(delivery.attempt_count):
                next_retry_at = self._policy.next_retry_at(delivery.attempt_count, self._clock())
                delivery.mark_retrying(
                    next_retry_at, error, result.status_code, result.response_body
                )
                await session.commit()
                await self._queue.schedule(job, next_retry_at)
                logger.info(
                    "Webhook delivery %s failed (attempt %d/%d): %s. Retrying at %s",
                    delivery.id,
                    delivery.attempt_count,
                    self._policy.max_attempts,
                    error,
                    next_retry_at.isoformat(),
                )
            else:
                delivery.mark_dead(error, result.status_code, result.response_body)
                await session.commit()
                logger.error(
                    "Webhook delivery %s dead after %d attempts: %s (tenant: %s)",
                    delivery.id,
                    delivery.attempt_count,
                    error,
                    job.tenant_schema,
                )
            return delivery.status

    async def _record_failure(
        self,
        job: DeliveryJob,
        delivery_id: uuid.UUID,
        target: _AttemptTarget,
        error: str,
    ) -> str | None:
        async with self._sessions.session(job.tenant_schema) as session:
            delivery = await DeliveryStore(session).get(delivery_id)
            if delivery is None or delivery.attempt_count != target.attempt_count:
                return delivery.status if delivery else None
            delivery.attempt_count = target.attempt_count + 1
            delivery.mark_failed(error)
            await session.commit()
            return delivery.status
