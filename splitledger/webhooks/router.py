"""Webhook management API router."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from splitledger.auth.jwt import Operator, require_operator
from splitledger.auth.rate_limit import get_test_rate_limit, limiter
from splitledger.webhooks.events import WEBHOOK_EVENTS
from splitledger.webhooks.exceptions import (
    DeliveryStateError,
    InvalidTenantScopeError,
    NotFoundError,
    WebhookError,
)
from splitledger.webhooks.models import DeliveryStatus
from splitledger.webhooks.recovery import DeadLetterRecovery
from splitledger.webhooks.schemas import (
    DeadLetterListResponse,
    DeadLetterRequeueRequest,
    DeadLetterRequeueResponse,
    EventCatalogResponse,
    WebhookCreateRequest,
    WebhookCreateResponse,
    WebhookDeliveryListResponse,
    WebhookDeliveryResponse,
    WebhookDetailResponse,
    WebhookListResponse,
    WebhookResponse,
    WebhookStats,
    WebhookTestRequest,
    WebhookTestResponse,
    WebhookUpdateRequest,
)
from splitledger.webhooks.service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_webhook_service(request: Request) -> WebhookService:
    state = request.app.state
    return WebhookService(
        state.sessions,
        state.webhook_queue,
        state.webhook_transport,
        state.webhook_settings,
    )


def get_dead_letter_recovery(request: Request) -> DeadLetterRecovery:
    return DeadLetterRecovery(request.app.state.sessions, request.app.state.webhook_queue)


def _http_error(e: WebhookError) -> HTTPException:
    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, DeliveryStateError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, InvalidTenantScopeError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=e.to_dict()["error"])


@router.get("/events", response_model=EventCatalogResponse)
async def list_event_types(
    operator: Operator = Depends(require_operator),
):
    """List the event types a webhook can subscribe to."""
    return EventCatalogResponse(
        events=list(WEBHOOK_EVENTS),
        categories=WebhookService.event_catalog(),
    )


@router.get("/dead-letters", response_model=DeadLetterListResponse)
async def list_dead_letters(
    webhook_id: UUID | None = Query(None, description="Filter by webhook"),
    limit: int | None = Query(None, ge=1, le=1000, description="Maximum results"),
    operator: Operator = Depends(require_operator),
    recovery: DeadLetterRecovery = Depends(get_dead_letter_recovery),
):
    """List deliveries that exhausted their retries, newest first."""
    deliveries = await recovery.list_dead(operator.tenant_schema, webhook_id=webhook_id, limit=limit)
    return DeadLetterListResponse(
        deliveries=[WebhookDeliveryResponse.model_validate(d) for d in deliveries],
        total=len(deliveries),
    )


@router.post("/dead-letters/redeliver", response_model=DeadLetterRequeueResponse)
async def requeue_dead_letters(
    body: DeadLetterRequeueRequest | None = None,
    operator: Operator = Depends(require_operator),
    recovery: DeadLetterRecovery = Depends(get_dead_letter_recovery),
):
    """Requeue the newest dead deliveries in one call."""
    body = body or DeadLetterRequeueRequest()
    requeued = await recovery.requeue_all_dead(
        operator.tenant_schema,
        webhook_id=body.webhook_id,
        limit=body.limit,
    )
    return DeadLetterRequeueResponse(
        requeued=len(requeued),
        delivery_ids=[d.id for d in requeued],
    )


@router.post("/dead-letters/{delivery_id}/redeliver", response_model=WebhookDeliveryResponse)
async def requeue_dead_letter(
    delivery_id: UUID,
    operator: Operator = Depends(require_operator),
    recovery: DeadLetterRecovery = Depends(get_dead_letter_recovery),
):
    """Reset a dead delivery to pending and enqueue it again."""
    try:
        return await recovery.requeue_dead(operator.tenant_schema, delivery_id)
    except WebhookError as e:
        raise _http_error(e) from e


@router.get("", response_model=WebhookListResponse)
async def list_webhooks(
    is_active: bool | None = Query(None, description="Filter by active flag"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    operator: Operator = Depends(require_operator),
    service: WebhookService = Depends(get_webhook_service),
):
    """List the tenant's webhooks."""
    webhooks, total = await service.list_webhooks(
        operator.tenant_schema, is_active=is_active, limit=limit, offset=offset
    )
    return WebhookListResponse(
        webhooks=[WebhookResponse.model_validate(w) for w in webhooks],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("", response_model=WebhookCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    body: WebhookCreateRequest,
    operator: Operator = Depends(require_operator),
    service: WebhookService = Depends(get_webhook_service),
):
    """Register a webhook.

    The signing secret is only returned by this call.
    """
    return await service.create_webhook(
        operator.tenant_schema,
        url=body.url,
        events=body.events,
        created_by=operator.user_id,
        description=body.description,
        secret=body.secret,
    )


@router.get("/{webhook_id}", response_model=WebhookDetailResponse)
async def get_webhook(
    webhook_id: UUID,
    operator: Operator = Depends(require_operator),
    service: WebhookService = Depends(get_webhook_service),
):
    """Get a webhook with its delivery statistics."""
    try:
        webhook, stats = await service.get_webhook(operator.tenant_schema, webhook_id)
    except WebhookError as e:
        raise _http_error(e) from e

    return WebhookDetailResponse(
        **WebhookResponse.model_validate(webhook).model_dump(),
        stats=WebhookStats(**stats),
    )


@router.patch("/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    webhook_id: UUID,
    body: WebhookUpdateRequest,
    operator: Operator = Depends(require_operator),
    service: WebhookService = Depends(get_webhook_service),
):
    """Update url, events, description or active flag."""
    changes = body.model_dump(exclude_unset=True)
    # null is not a valid value for these columns
    for field_name in ("url", "events", "is_active"):
        if field_name in changes and changes[field_name] is None:
            del changes[field_name]

    try:
        return await service.update_webhook(operator.tenant_schema, webhook_id, changes)
    except WebhookError as e:
        raise _http_error(e) from e


@router.delete("/{webhook_id}", response_model=WebhookResponse)
async def delete_webhook(
    webhook_id: UUID,
    operator: Operator = Depends(require_operator),
    service: WebhookService = Depends(get_webhook_service),
):
    """Deactivate a webhook. Delivery history is kept."""
    try:
        return await service.delete_webhook(operator.tenant_schema, webhook_id)
    except WebhookError as e:
        raise _http_error(e) from e


@router.get("/{webhook_id}/deliveries", response_model=WebhookDeliveryListResponse)
async def list_deliveries(
    webhook_id: UUID,
    delivery_status: DeliveryStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    operator: Operator = Depends(require_operator),
    service: WebhookService = Depends(get_webhook_service),
):
    """List a webhook's deliveries, newest first."""
    try:
        deliveries, total = await service.list_deliveries(
            operator.tenant_schema,
            webhook_id,
            status=delivery_status.value if delivery_status else None,
            limit=limit,
            offset=offset,
        )
    except WebhookError as e:
        raise _http_error(e) from e

    return WebhookDeliveryListResponse(
        deliveries=[WebhookDeliveryResponse.model_validate(d) for d in deliveries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{webhook_id}/deliveries/{delivery_id}", response_model=WebhookDeliveryResponse)
async def get_delivery(
    webhook_id: UUID,
    delivery_id: UUID,
    operator: Operator = Depends(require_operator),
    service: WebhookService = Depends(get_webhook_service),
):
    try:
        return await service.get_delivery(operator.tenant_schema, webhook_id, delivery_id)
    except WebhookError as e:
        raise _http_error(e) from e


@router.post(
    "/{webhook_id}/deliveries/{delivery_id}/redeliver",
    response_model=WebhookDeliveryResponse,
)
async def redeliver(
    webhook_id: UUID,
    delivery_id: UUID,
    operator: Operator = Depends(require_operator),
    service: WebhookService = Depends(get_webhook_service),
):
    """Send a failed or dead delivery again (409 for any other status)."""
    try:
        return await service.redeliver(operator.tenant_schema, webhook_id, delivery_id)
    except WebhookError as e:
        raise _http_error(e) from e


@router.post("/{webhook_id}/test", response_model=WebhookTestResponse)
@limiter.limit(get_test_rate_limit)
async def test_webhook(
    request: Request,
    webhook_id: UUID,
    body: WebhookTestRequest | None = None,
    operator: Operator = Depends(require_operator),
    service: WebhookService = Depends(get_webhook_service),
):
    """Send one signed test event now and report the endpoint's response.

    Nothing is recorded and the request is not retried.
    """
    body = body or WebhookTestRequest()
    try:
        result = await service.test_webhook(
            operator.tenant_schema,
            webhook_id,
            event_type=body.event_type,
            data=body.payload,
        )
    except WebhookError as e:
        raise _http_error(e) from e

    return WebhookTestResponse(**result.to_dict())
