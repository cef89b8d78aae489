"""Tests for WebhookWorker."""

import asyncio
import json
import uuid
from datetime import timedelta

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from splitledger.webhooks.config import WebhookSettings
from splitledger.webhooks.models import Webhook
from splitledger.webhooks.queue import DeliveryJob
from splitledger.webhooks.signer import WebhookSigner
from splitledger.webhooks.store import DeliveryStore, SubscriptionStore
from splitledger.webhooks.transport import HttpxTransport
from splitledger.webhooks.worker import WebhookWorker

from conftest import (
    TENANT_SCHEMA,
    FakeClock,
    FakeEndpoint,
    InMemoryDeliveryQueue,
    as_utc,
    sqlite_sessions,
)


async def load_delivery(sessions, delivery_id):
    async with sessions.session(TENANT_SCHEMA) as session:
        return await DeliveryStore(session).get(delivery_id)


async def advance_to_next_retry(queue: InMemoryDeliveryQueue, clock: FakeClock) -> None:
    """Move the clock to the scheduled retry and make it ready."""
    [(_, run_at)] = queue.delayed_jobs()
    clock.advance(run_at - clock.now.timestamp())
    await queue.promote_due(now=run_at)


def timeout_error() -> httpx.ReadTimeout:
    return httpx.ReadTimeout("timed out")


class TestWebhookWorkerDelivery:
    """Tests for a single attempt."""

    @pytest.mark.asyncio
    async def test_2xx_marks_success(self, dispatcher, worker, queue, sessions, create_webhook):
        await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {"amount": 1})

        assert await worker.process_next() is True

        delivery = await load_delivery(sessions, result.delivery_ids[0])
        assert delivery.status == "success"
        assert delivery.attempt_count == 1
        assert delivery.delivered_at is not None
        assert delivery.next_retry_at is None
        assert delivery.last_error is None
        assert delivery.last_response_status == 200
        assert delivery.last_response_body == "status 200"
        assert queue.processing == []
        assert queue.delayed == {}

    @pytest.mark.asyncio
    async def test_request_is_signed_over_stored_payload(
        self, dispatcher, worker, endpoint, sessions, create_webhook
    ):
        webhook = await create_webhook(secret="whsec_signing_key_0001")
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {"amount": 1})

        await worker.process_next()

        [request] = endpoint.requests
        delivery = await load_delivery(sessions, result.delivery_ids[0])
        assert request.content == delivery.payload.encode()
        assert WebhookSigner.verify(
            "whsec_signing_key_0001",
            request.content,
            request.headers["X-Webhook-Signature"],
        )
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["X-Webhook-ID"] == str(webhook.id)
        assert request.headers["X-Delivery-ID"] == str(delivery.id)
        assert request.headers["X-Webhook-Event"] == "invoice.paid"
        assert json.loads(request.content)["id"] == result.envelope.id

    @pytest.mark.asyncio
    async def test_empty_queue(self, worker):
        assert await worker.process_next() is False

    @pytest.mark.asyncio
    async def test_non_2xx_schedules_retry(
        self, dispatcher, worker, endpoint, queue, sessions, clock, create_webhook
    ):
        await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {})
        endpoint.script = [503]

        await worker.process_next()

        delivery = await load_delivery(sessions, result.delivery_ids[0])
        assert delivery.status == "retrying"
        assert delivery.attempt_count == 1
        assert delivery.last_response_status == 503
        assert delivery.last_response_body == "status 503"
        assert delivery.last_error == "HTTP 503"
        assert as_utc(delivery.next_retry_at) == clock.now + timedelta(seconds=60)

        [(job, run_at)] = queue.delayed_jobs()
        assert job.delivery_id == str(delivery.id)
        assert run_at == (clock.now + timedelta(seconds=60)).timestamp()
        assert queue.processing == []


class TestWebhookWorkerRetry:
    """Tests for the retry cycle."""

    @pytest.mark.asyncio
    async def test_500_500_200_succeeds_with_increasing_delays(
        self, dispatcher, worker, endpoint, queue, sessions, clock, create_webhook
    ):
        await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {})
        delivery_id = result.delivery_ids[0]
        endpoint.script = [500, 500, 200]

        delays = []
        for _ in range(2):
            attempted_at = clock.now
            await worker.process_next()
            delivery = await load_delivery(sessions, delivery_id)
            assert delivery.status == "retrying"
            delays.append((as_utc(delivery.next_retry_at) - attempted_at).total_seconds())
            await advance_to_next_retry(queue, clock)

        await worker.process_next()

        delivery = await load_delivery(sessions, delivery_id)
        assert delivery.status == "success"
        assert delivery.attempt_count == 3
        assert delivery.last_error is None
        assert delays == [60.0, 120.0]
        assert delays[1] > delays[0]
        assert len(endpoint.requests) == 3
        assert queue.delayed == {}

    @pytest.mark.asyncio
    async def test_timeouts_until_dead(
        self, dispatcher, queue, sessions, transport, endpoint, clock, create_webhook
    ):
        worker = WebhookWorker(
            sessions, queue, transport, WebhookSettings(max_attempts=3), clock=clock
        )
        await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {})
        endpoint.script = [timeout_error() for _ in range(3)]

        statuses = []
        for attempt in range(3):
            await worker.process_next()
            delivery = await load_delivery(sessions, result.delivery_ids[0])
            statuses.append(delivery.status)
            if attempt < 2:
                await advance_to_next_retry(queue, clock)

        assert statuses == ["retrying", "retrying", "dead"]
        assert delivery.attempt_count == 3
        assert delivery.last_error == "Request timeout"
        assert delivery.last_response_status is None
        assert delivery.next_retry_at is None
        assert queue.delayed == {}
        assert queue.ready == []

    @pytest.mark.asyncio
    async def test_timeout_after_http_error_clears_status(
        self, dispatcher, worker, endpoint, queue, sessions, clock, create_webhook
    ):
        await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {})
        endpoint.script = [500, timeout_error()]

        await worker.process_next()
        await advance_to_next_retry(queue, clock)
        await worker.process_next()

        delivery = await load_delivery(sessions, result.delivery_ids[0])
        assert delivery.last_response_status is None
        assert delivery.last_response_body is None
        assert delivery.last_error == "Request timeout"

    @settings(max_examples=10, deadline=None)
    @given(max_attempts=st.integers(min_value=1, max_value=6))
    def test_always_failing_endpoint_dead_after_max_attempts(self, max_attempts: int):
        """pending -> retrying ... -> dead after exactly max_attempts attempts."""

        async def scenario():
            async with sqlite_sessions() as sessions:
                queue = InMemoryDeliveryQueue()
                clock = FakeClock()
                endpoint = FakeEndpoint()
                endpoint.script = [500] * max_attempts
                async with httpx.AsyncClient(transport=httpx.MockTransport(endpoint)) as client:
                    worker = WebhookWorker(
                        sessions,
                        queue,
                        HttpxTransport(client),
                        WebhookSettings(max_attempts=max_attempts),
                        clock=clock,
                    )
                    async with sessions.session(TENANT_SCHEMA) as session:
                        webhook = await SubscriptionStore(session).create(
                            url="https://hooks.example.com/x",
                            secret="0123456789abcdef",
                            events=["invoice.paid"],
                            created_by=uuid.uuid4(),
                        )
                        delivery = await DeliveryStore(session).create_pending(
                            webhook_id=webhook.id, event_type="invoice.paid", payload="{}"
                        )
                        await session.commit()
                    await queue.enqueue(
                        DeliveryJob(str(delivery.id), str(webhook.id), TENANT_SCHEMA)
                    )

                    statuses = []
                    while await worker.process_next():
                        statuses.append((await load_delivery(sessions, delivery.id)).status)
                        if queue.delayed:
                            await advance_to_next_retry(queue, clock)
                    final = await load_delivery(sessions, delivery.id)
                    return statuses, final.attempt_count, len(endpoint.requests)

        statuses, attempt_count, requests = asyncio.run(scenario())

        assert statuses == ["retrying"] * (max_attempts - 1) + ["dead"]
        assert attempt_count == max_attempts
        assert requests == max_attempts


class TestWebhookWorkerSubscriptionState:
    @pytest.mark.asyncio
    async def test_deactivated_subscription_marks_dead_without_request(
        self, dispatcher, worker, endpoint, sessions, create_webhook
    ):
        webhook = await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {})
        async with sessions.session(TENANT_SCHEMA) as session:
            store = SubscriptionStore(session)
            await store.deactivate(await store.get(webhook.id))
            await session.commit()

        await worker.process_next()

        delivery = await load_delivery(sessions, result.delivery_ids[0])
        assert delivery.status == "dead"
        assert delivery.attempt_count == 0
        assert delivery.last_error == "Webhook is inactive"
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_deleted_subscription_marks_dead(
        self, dispatcher, worker, endpoint, sessions, create_webhook
    ):
        webhook = await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {})
        async with sessions.session(TENANT_SCHEMA) as session:
            await session.delete(await session.get(Webhook, webhook.id))
            await session.commit()

        await worker.process_next()

        delivery = await load_delivery(sessions, result.delivery_ids[0])
        assert delivery.status == "dead"
        assert delivery.last_error == "Webhook not found"
        assert endpoint.requests == []


class TestWebhookWorkerDuplicateJobs:
    """At-least-once: the same delivery may be handed out more than once."""

    @pytest.mark.asyncio
    async def test_job_for_terminal_delivery_is_acked_without_attempt(
        self, dispatcher, worker, endpoint, queue, sessions, create_webhook
    ):
        await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {})
        duplicate = queue.ready[0]
        queue.ready.append(duplicate)

        await worker.process_next()
        await worker.process_next()

        delivery = await load_delivery(sessions, result.delivery_ids[0])
        assert delivery.status == "success"
        assert delivery.attempt_count == 1
        assert len(endpoint.requests) == 1
        assert queue.processing == []

    @pytest.mark.asyncio
    async def test_early_job_for_retrying_delivery_is_rescheduled(
        self, dispatcher, worker, endpoint, queue, sessions, clock, create_webhook
    ):
        await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {})
        endpoint.script = [500]
        await worker.process_next()
        [(job, run_at)] = queue.delayed_jobs()

        # Reclaimed copy shows up before the retry is due
        await queue.enqueue(job)
        clock.advance(10)
        await worker.process_next()

        delivery = await load_delivery(sessions, result.delivery_ids[0])
        assert delivery.status == "retrying"
        assert delivery.attempt_count == 1
        assert len(endpoint.requests) == 1
        assert queue.delayed_jobs() == [(job, run_at)]

    @pytest.mark.asyncio
    async def test_unknown_delivery_is_acked(self, worker, queue):
        await queue.enqueue(DeliveryJob(str(uuid.uuid4()), str(uuid.uuid4()), TENANT_SCHEMA))

        assert await worker.process_next() is True
        assert queue.processing == []


class TestWebhookWorkerFailures:
    @pytest.mark.asyncio
    async def test_unexpected_transport_exception_marks_failed(
        self, dispatcher, queue, sessions, clock, create_webhook
    ):
        class BrokenTransport:
            async def send(self, url, body, headers, timeout):
                raise RuntimeError("boom")

            async def aclose(self):
                pass

        worker = WebhookWorker(sessions, queue, BrokenTransport(), clock=clock)
        await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {})

        await worker.process_next()

        delivery = await load_delivery(sessions, result.delivery_ids[0])
        assert delivery.status == "failed"
        assert delivery.attempt_count == 1
        assert delivery.last_error == "Unexpected error: boom"
        assert queue.processing == []
        assert queue.delayed == {}

    @pytest.mark.asyncio
    async def test_retry_schedule_failure_leaves_job_unacked(
        self, dispatcher, worker, endpoint, queue, sessions, create_webhook
    ):
        await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {})
        endpoint.script = [500]

        async def broken_schedule(job, run_at):
            raise ConnectionError("Connection refused")

        queue.schedule = broken_schedule

        with pytest.raises(ConnectionError):
            await worker.process_next()

        # Outcome persisted, job still reserved for reclaim
        delivery = await load_delivery(sessions, result.delivery_ids[0])
        assert delivery.status == "retrying"
        assert len(queue.processing) == 1


class TestWebhookWorkerLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, worker):
        await worker.start()
        assert worker.running is True

        await worker.stop()
        assert worker.running is False

    @pytest.mark.asyncio
    async def test_start_recovers_orphans(self, worker, queue):
        orphan = DeliveryJob(str(uuid.uuid4()), str(uuid.uuid4()), TENANT_SCHEMA).to_json()
        queue.processing.append(orphan)

        await worker.start()
        await worker.stop()

        assert orphan not in queue.processing

    @pytest.mark.asyncio
    async def test_drain_processes_ready_jobs(self, dispatcher, worker, sessions, create_webhook):
        await create_webhook()
        await create_webhook()
        result = await dispatcher.dispatch(TENANT_SCHEMA, "invoice.paid", {})

        assert await worker.drain(max_jobs=10) == 2

        for delivery_id in result.delivery_ids:
            assert (await load_delivery(sessions, delivery_id)).status == "success"
