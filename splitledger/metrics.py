"""Prometheus metrics endpoint."""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(request: Request):
    """Prometheus-compatible metrics endpoint."""

    metrics_output = []

    # Delivery queue depths
    try:
        stats = await request.app.state.webhook_queue.stats()
    except Exception as e:
        logger.error("Failed to read webhook queue stats: %s", e)
        metrics_output.append("splitledger_webhook_queue_up 0")
    else:
        metrics_output.append("splitledger_webhook_queue_up 1")
        metrics_output.append(f'splitledger_webhook_jobs{{state="ready"}} {stats["ready"]}')
        metrics_output.append(f'splitledger_webhook_jobs{{state="delayed"}} {stats["delayed"]}')
        metrics_output.append(
            f'splitledger_webhook_jobs{{state="in_flight"}} {stats["in_flight"]}'
        )

    # In-process worker
    worker = getattr(request.app.state, "webhook_worker", None)
    running = 1 if worker is not None and worker.running else 0
    metrics_output.append(f"splitledger_webhook_worker_running {running}")

    return "\n".join(metrics_output) + "\n"
