"""Valkey-backed delivery job queue.

At-least-once semantics with four keys:

- ``queue:webhooks``: ready jobs (list, RPUSH / BLMOVE from the left)
- ``queue:webhooks:processing``: jobs reserved by a worker (list)
- ``queue:webhooks:inflight``: visibility deadline per reserved job (sorted set)
- ``queue:webhooks:delayed``: retries waiting for their due time (sorted set)

A reserved job stays in the processing list until it is acknowledged. If
the worker dies first, ``reclaim_expired`` puts it back once its deadline
passes, so the delivery is attempted again rather than lost.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)

WEBHOOK_QUEUE_KEY = "queue:webhooks"
PROCESSING_KEY = f"{WEBHOOK_QUEUE_KEY}:processing"
INFLIGHT_KEY = f"{WEBHOOK_QUEUE_KEY}:inflight"
DELAYED_KEY = f"{WEBHOOK_QUEUE_KEY}:delayed"
IDEMPOTENCY_PREFIX = "webhook:idempotency:"

# Upper bound of jobs moved per promote/reclaim pass
MOVE_BATCH_SIZE = 100


@dataclass(frozen=True)
class DeliveryJob:
    """Reference to one delivery row; the row itself carries all state."""

    delivery_id: str
    webhook_id: str
    tenant_schema: str
    # Distinguishes separate enqueues of the same delivery inside the queue keys
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> DeliveryJob:
        data = json.loads(raw)
        return cls(
            delivery_id=data["delivery_id"],
            webhook_id=data["webhook_id"],
            tenant_schema=data["tenant_schema"],
            job_id=data.get("job_id") or uuid.uuid4().hex,
        )


@dataclass(frozen=True)
class Reservation:
    """A job handed to one worker until it is acknowledged."""

    job: DeliveryJob
    raw: str


class JobQueue(Protocol):
    """Queue capability used by the dispatcher, worker and operator services."""

    async def enqueue(self, job: DeliveryJob) -> None: ...

    async def reserve(self) -> Reservation | None: ...

    async def ack(self, reservation: Reservation) -> None: ...

    async def schedule(self, job: DeliveryJob, run_at: datetime) -> None: ...

    async def promote_due(self, now: float | None = None) -> int: ...

    async def reclaim_expired(self, now: float | None = None) -> int: ...

    async def recover_orphans(self) -> int: ...

    async def claim_idempotency_key(self, tenant_schema: str, key: str, ttl_seconds: int) -> bool: ...

    async def release_idempotency_key(self, tenant_schema: str, key: str) -> None: ...

    async def stats(self) -> dict[str, int]: ...


class ValkeyDeliveryQueue:
    """Reliable job queue on a Valkey (Redis-compatible) server."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        visibility_timeout_seconds: float = 60.0,
        block_timeout_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the queue.

        Args:
            client: Valkey client created with ``decode_responses=True``
            visibility_timeout_seconds: How long a reserved job may stay unacknowledged
            block_timeout_seconds: Upper bound for one blocking pop
            clock: Time source (unix seconds)
        """
        self._client = client
        self._visibility_timeout = visibility_timeout_seconds
        self._block_timeout = block_timeout_seconds
        self._clock = clock

    async def enqueue(self, job: DeliveryJob) -> None:
        await self._client.rpush(WEBHOOK_QUEUE_KEY, job.to_json())

    async def reserve(self) -> Reservation | None:
        """Block up to ``block_timeout_seconds`` for the next ready job."""
        raw = await self._client.blmove(
            WEBHOOK_QUEUE_KEY,
            PROCESSING_KEY,
            self._block_timeout,
            src="LEFT",
            dest="RIGHT",
        )
        if raw is None:
            return None

        await self._client.zadd(INFLIGHT_KEY, {raw: self._clock() + self._visibility_timeout})

        try:
            job = DeliveryJob.from_json(raw)
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error("Discarding malformed webhook job %r: %s", raw[:200], e)
            await self._forget(raw)
            return None

        return Reservation(job=job, raw=raw)

    async def ack(self, reservation: Reservation) -> None:
        await self._forget(reservation.raw)

    async def schedule(self, job: DeliveryJob, run_at: datetime) -> None:
        """Make ``job`` ready again at ``run_at`` (rescheduling updates the due time)."""
        await self._client.zadd(DELAYED_KEY, {job.to_json(): run_at.timestamp()})

    async def promote_due(self, now: float | None = None) -> int:
        """Move delayed jobs whose due time has passed to the ready list."""
        now = self._clock() if now is None else now
        due = await self._client.zrangebyscore(
            DELAYED_KEY, "-inf", now, start=0, num=MOVE_BATCH_SIZE
        )

        promoted = 0
        for raw in due:
            # Only the process that removes the member pushes it
            if await self._client.zrem(DELAYED_KEY, raw):
                await self._client.rpush(WEBHOOK_QUEUE_KEY, raw)
                promoted += 1

        if promoted:
            logger.debug("Promoted %d delayed webhook job(s)", promoted)
        return promoted

    async def reclaim_expired(self, now: float | None = None) -> int:
        """Return reserved jobs whose visibility deadline passed to the ready list."""
        now = self._clock() if now is None else now
        expired = await self._client.zrangebyscore(
            INFLIGHT_KEY, "-inf", now, start=0, num=MOVE_BATCH_SIZE
        )

        reclaimed = 0
        for raw in expired:
            if await self._client.zrem(INFLIGHT_KEY, raw):
                pipe = self._client.pipeline()
                pipe.lrem(PROCESSING_KEY, 1, raw)
                pipe.rpush(WEBHOOK_QUEUE_KEY, raw)
                await pipe.execute()
                reclaimed += 1

        if reclaimed:
            logger.warning("Reclaimed %d unacknowledged webhook job(s)", reclaimed)
        return reclaimed

    async def recover_orphans(self) -> int:
        """Requeue processing entries that never got a visibility deadline.

        Happens when a worker dies between the pop and the deadline write;
        run once at worker start-up.
        """
        entries = await self._client.lrange(PROCESSING_KEY, 0, -1)

        recovered = 0
        for raw in entries:
            if await self._client.zscore(INFLIGHT_KEY, raw) is not None:
                continue
            if await self._client.lrem(PROCESSING_KEY, 1, raw):
                await self._client.rpush(WEBHOOK_QUEUE_KEY, raw)
                recovered += 1

        if recovered:
            logger.warning("Recovered %d orphaned webhook job(s)", recovered)
        return recovered

    async def claim_idempotency_key(self, tenant_schema: str, key: str, ttl_seconds: int) -> bool:
        """Claim a dispatch idempotency key; False if it was already claimed."""
        claimed = await self._client.set(
            f"{IDEMPOTENCY_PREFIX}{tenant_schema}:{key}",
            "1",
            nx=True,
            ex=ttl_seconds,
        )
        return bool(claimed)

    async def release_idempotency_key(self, tenant_schema: str, key: str) -> None:
        await self._client.delete(f"{IDEMPOTENCY_PREFIX}{tenant_schema}:{key}")

    async def stats(self) -> dict[str, int]:
        pipe = self._client.pipeline()
        pipe.llen(WEBHOOK_QUEUE_KEY)
        pipe.zcard(DELAYED_KEY)
        pipe.zcard(INFLIGHT_KEY)
        ready, delayed, in_flight = await pipe.execute()
        return {"ready": int(ready), "delayed": int(delayed), "in_flight": int(in_flight)}

    async def _forget(self, raw: str) -> None:
        pipe = self._client.pipeline()
        pipe.lrem(PROCESSING_KEY, 1, raw)
        pipe.zrem(INFLIGHT_KEY, raw)
        await pipe.execute()
