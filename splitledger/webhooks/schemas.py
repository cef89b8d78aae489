"""Webhook Pydantic schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from splitledger.webhooks.events import WEBHOOK_EVENTS
from splitledger.webhooks.models import DeliveryStatus

URL_MAX_LENGTH = 2048


_http_url_adapter = TypeAdapter(HttpUrl)


def _validate_https_url(value: str) -> str:
    # The URL parser drops tabs and newlines silently; the HTTP client rejects them
    if any(c.isspace() or not c.isprintable() for c in value):
        raise ValueError("Webhook URL must not contain whitespace or control characters")
    try:
        parsed = _http_url_adapter.validate_python(value)
    except ValidationError as e:
        raise ValueError(f"Invalid webhook URL: {e.errors()[0]['msg']}") from e
    if parsed.scheme != "https":
        raise ValueError("Webhook URL must use HTTPS")
    return value


def _validate_events(value: list[str]) -> list[str]:
    unknown = [event for event in value if event not in WEBHOOK_EVENTS]
    if unknown:
        raise ValueError(f"Unknown event type(s): {', '.join(unknown)}")
    # Keep first occurrence order, drop repeats
    return list(dict.fromkeys(value))


class WebhookCreateRequest(BaseModel):
    """Register a new webhook endpoint."""

    url: str = Field(..., max_length=URL_MAX_LENGTH, description="Endpoint URL (HTTPS)")
    events: list[str] = Field(..., min_length=1, description="Subscribed event types")
    description: str | None = Field(None, max_length=255, description="Endpoint description")
    secret: str | None = Field(
        None,
        min_length=16,
        max_length=255,
        description="Signing secret; generated when omitted",
    )

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        return _validate_https_url(value)

    @field_validator("events")
    @classmethod
    def check_events(cls, value: list[str]) -> list[str]:
        return _validate_events(value)


class WebhookUpdateRequest(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    url: str | None = Field(None, max_length=URL_MAX_LENGTH)
    events: list[str] | None = Field(None, min_length=1)
    description: str | None = Field(None, max_length=255)
    is_active: bool | None = None

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str | None) -> str | None:
        return None if value is None else _validate_https_url(value)

    @field_validator("events")
    @classmethod
    def check_events(cls, value: list[str] | None) -> list[str] | None:
        return None if value is None else _validate_events(value)


class WebhookResponse(BaseModel):
    """Webhook subscription (secret never included)."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    url: str
    events: list[str]
    is_active: bool
    description: str | None = None
    created_by: UUID
    created_at: datetime
    updated_at: datetime


class WebhookCreateResponse(WebhookResponse):
    """Returned once at registration; the only response carrying the secret."""

    secret: str = Field(..., description="Signing secret. Store it now, it is not shown again")


class WebhookStats(BaseModel):
    """Delivery statistics for one webhook."""

    total_deliveries: int
    success_count: int
    failure_count: int
    dead_count: int
    pending_count: int
    last_delivery_at: datetime | None = None
    success_rate: float


class WebhookDetailResponse(WebhookResponse):
    stats: WebhookStats


class WebhookListResponse(BaseModel):
    webhooks: list[WebhookResponse]
    total: int
    limit: int
    offset: int


class WebhookDeliveryResponse(BaseModel):
    """Delivery record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Delivery record ID")
    webhook_id: UUID = Field(..., description="Target webhook ID")
    event_type: str = Field(..., description="Event type (e.g., invoice.paid)")
    payload: str = Field(..., description="Serialized envelope as transmitted")
    status: DeliveryStatus = Field(..., description="pending, retrying, success, failed or dead")
    attempt_count: int = Field(..., description="Attempts made in the current cycle")
    last_response_status: int | None = Field(None, description="Last HTTP response status")
    last_response_body: str | None = Field(None, description="Last response body (truncated)")
    last_error: str | None = Field(None, description="Last failure reason")
    next_retry_at: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime


class WebhookDeliveryListResponse(BaseModel):
    deliveries: list[WebhookDeliveryResponse]
    total: int
    limit: int
    offset: int


class DeadLetterListResponse(BaseModel):
    deliveries: list[WebhookDeliveryResponse]
    total: int


class DeadLetterRequeueRequest(BaseModel):
    """Bulk requeue of dead deliveries."""

    webhook_id: UUID | None = Field(None, description="Only this webhook's dead deliveries")
    limit: int = Field(100, ge=1, le=1000, description="Maximum deliveries to requeue")


class DeadLetterRequeueResponse(BaseModel):
    requeued: int
    delivery_ids: list[UUID]


class WebhookTestRequest(BaseModel):
    """Synchronous test delivery."""

    event_type: str | None = Field(None, description="Defaults to the webhook's first event")
    payload: dict[str, Any] | None = Field(None, description="Event data to send")

    @field_validator("event_type")
    @classmethod
    def check_event_type(cls, value: str | None) -> str | None:
        if value is not None and value not in WEBHOOK_EVENTS:
            raise ValueError(f"Unknown event type: {value}")
        return value


class WebhookTestResponse(BaseModel):
    success: bool
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    latency_ms: int | None = None


class EventCatalogResponse(BaseModel):
    events: list[str]
    categories: dict[str, list[str]]
