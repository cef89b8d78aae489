"""Webhook SQLAlchemy models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from splitledger.db.base import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class DeliveryStatus(str, Enum):
    """Webhook delivery status."""

    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"
    DEAD = "dead"


# Statuses the worker still acts on
ACTIVE_STATUSES = (DeliveryStatus.PENDING.value, DeliveryStatus.RETRYING.value)
# Statuses an operator may send again
REDELIVERABLE_STATUSES = (DeliveryStatus.FAILED.value, DeliveryStatus.DEAD.value)


class Webhook(Base):
    """Tenant-registered endpoint plus the event types it receives."""

    __tablename__ = "webhooks"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    url: Mapped[str] = mapped_column(
        String(2048),
        nullable=False,
    )
    # Shared HMAC key; never returned by the API after creation
    secret: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    events: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
    )
    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    created_by: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    deliveries: Mapped[list[WebhookDelivery]] = relationship(
        "WebhookDelivery",
        back_populates="webhook",
        passive_deletes=True,
    )

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this webhook is active and subscribed to the event type."""
        return self.is_active and event_type in (self.events or [])


class WebhookDelivery(Base):
    """One subscriber's copy of one event, with its attempt history."""

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'retrying', 'success', 'failed', 'dead')",
            name="webhook_deliveries_status_valid",
        ),
        Index("idx_deliveries_status_created", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    webhook_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("webhooks.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    # Serialized envelope, stored verbatim: these exact bytes are signed and sent
    payload: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    # Delivery status
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DeliveryStatus.PENDING.value,
    )
    attempt_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    last_response_status: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    last_response_body: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Timing
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        index=True,
    )

    webhook: Mapped[Webhook] = relationship("Webhook", back_populates="deliveries")

    def mark_success(self, response_status: int, response_body: str | None) -> None:
        self.status = DeliveryStatus.SUCCESS.value
        self.last_response_status = response_status
        self.last_response_body = response_body
        self.last_error = None
        self.next_retry_at = None
        self.delivered_at = utcnow()

    def mark_retrying(
        self,
        next_retry_at: datetime,
        error: str,
        response_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        self.status = DeliveryStatus.RETRYING.value
        self.last_response_status = response_status
        self.last_response_body = response_body
        self.last_error = error
        self.next_retry_at = next_retry_at

    def mark_dead(
        self,
        error: str,
        response_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        self.status = DeliveryStatus.DEAD.value
        self.last_response_status = response_status
        self.last_response_body = response_body
        self.last_error = error
        self.next_retry_at = None

    def mark_failed(self, error: str) -> None:
        """Leave the automatic cycle without exhausting retries."""
        self.status = DeliveryStatus.FAILED.value
        self.last_response_status = None
        self.last_response_body = None
        self.last_error = error
        self.next_retry_at = None
