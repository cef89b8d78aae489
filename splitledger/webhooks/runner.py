"""Standalone webhook worker process.

    python -m splitledger.webhooks.runner          # run until SIGINT/SIGTERM
    python -m splitledger.webhooks.runner --once   # drain one batch and exit (cron)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from splitledger.config import get_settings
from splitledger.db.session import TenantSessionFactory, create_engine
from splitledger.logging import configure_logging
from splitledger.valkey import close_valkey_client, create_valkey_client
from splitledger.webhooks.config import load_webhook_settings
from splitledger.webhooks.queue import ValkeyDeliveryQueue
from splitledger.webhooks.transport import HttpxTransport
from splitledger.webhooks.worker import WebhookWorker

logger = logging.getLogger(__name__)

# Batch size for --once; keeps a cron invocation short
CRON_BATCH_SIZE = 50


async def run(once: bool = False, batch_size: int = CRON_BATCH_SIZE) -> int:
    """Run the worker; returns the number of jobs processed in ``once`` mode."""
    settings = get_settings()
    webhook_settings = load_webhook_settings(settings.WEBHOOK_CONFIG_PATH)

    sessions = TenantSessionFactory(
        create_engine(settings.DATABASE_URL),
        schema_isolation=settings.TENANT_SCHEMA_ISOLATION,
    )
    valkey = create_valkey_client(settings.VALKEY_URL)
    queue = ValkeyDeliveryQueue(
        valkey,
        visibility_timeout_seconds=webhook_settings.visibility_timeout_seconds,
        # Cron runs must not wait on an empty queue
        block_timeout_seconds=0.1 if once else webhook_settings.poll_interval_seconds,
    )
    transport = HttpxTransport(
        response_body_max_length=webhook_settings.response_body_max_length,
    )
    worker = WebhookWorker(sessions, queue, transport, webhook_settings)

    processed = 0
    try:
        if once:
            await queue.reclaim_expired()
            processed = await worker.drain(batch_size)
            logger.info("Processed %d webhook job(s)", processed)
        else:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)

            await worker.start()
            await stop.wait()
            logger.info("Shutdown signal received")
            await worker.stop()
    finally:
        await transport.aclose()
        await close_valkey_client(valkey)
        await sessions.dispose()

    return processed


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Split-ledger webhook delivery worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process one batch of due jobs and exit",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=CRON_BATCH_SIZE,
        help="Maximum jobs per --once run (default: %(default)s)",
    )
    args = parser.parse_args(argv)

    configure_logging(get_settings().LOG_LEVEL)
    asyncio.run(run(once=args.once, batch_size=args.batch_size))


if __name__ == "__main__":
    main()
