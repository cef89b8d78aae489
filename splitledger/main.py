"""Split-ledger webhooks - Main application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from splitledger import __version__
from splitledger.auth.rate_limit import limiter
from splitledger.config import get_settings
from splitledger.db.session import TenantSessionFactory, create_engine
from splitledger.logging import configure_logging
from splitledger.metrics import router as metrics_router
from splitledger.valkey import close_valkey_client, create_valkey_client
from splitledger.webhooks.config import load_webhook_settings
from splitledger.webhooks.dispatcher import WebhookDispatcher
from splitledger.webhooks.queue import ValkeyDeliveryQueue
from splitledger.webhooks.router import router as webhooks_router
from splitledger.webhooks.transport import HttpxTransport
from splitledger.webhooks.worker import WebhookWorker

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    configure_logging(settings.LOG_LEVEL)

    webhook_settings = load_webhook_settings(settings.WEBHOOK_CONFIG_PATH)
    sessions = TenantSessionFactory(
        create_engine(settings.DATABASE_URL),
        schema_isolation=settings.TENANT_SCHEMA_ISOLATION,
    )
    valkey = create_valkey_client(settings.VALKEY_URL)
    queue = ValkeyDeliveryQueue(
        valkey,
        visibility_timeout_seconds=webhook_settings.visibility_timeout_seconds,
        block_timeout_seconds=webhook_settings.poll_interval_seconds,
    )
    transport = HttpxTransport(
        response_body_max_length=webhook_settings.response_body_max_length,
    )

    app.state.webhook_settings = webhook_settings
    app.state.sessions = sessions
    app.state.webhook_queue = queue
    app.state.webhook_transport = transport
    app.state.webhook_dispatcher = WebhookDispatcher(sessions, queue, webhook_settings)
    app.state.webhook_worker = None

    if settings.WEBHOOK_WORKER_ENABLED:
        worker = WebhookWorker(sessions, queue, transport, webhook_settings)
        await worker.start()
        app.state.webhook_worker = worker

    yield

    # Cleanup on shutdown
    if app.state.webhook_worker is not None:
        await app.state.webhook_worker.stop()
    await transport.aclose()
    await close_valkey_client(valkey)
    await sessions.dispose()


app = FastAPI(
    title="Split-Ledger Webhooks",
    description="""
## Webhook Delivery API

Tenant operators register HTTPS endpoints and receive signed event
notifications with automatic retries.

### Features

- **Signed deliveries** - `X-Webhook-Signature: sha256=<hex>` over the raw body
- **Retries** - exponential backoff, then a dead-letter list
- **Redelivery** - resend failed or dead deliveries on demand
- **Test sends** - synchronous, unrecorded test deliveries

All endpoints require an owner or admin access token:
`Authorization: Bearer <token>`.
    """,
    version=__version__,
    lifespan=lifespan,
)

# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes - all under /api/v1
API_PREFIX = "/api/v1"
app.include_router(webhooks_router, prefix=API_PREFIX)

# Metrics at root level (for Prometheus scraping)
app.include_router(metrics_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Split-Ledger Webhooks",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
