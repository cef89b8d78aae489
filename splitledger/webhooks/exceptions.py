"""Webhook exception hierarchy.

Operator-facing failures raised by the webhook services. The router maps
them to HTTP responses; delivery failures never surface as exceptions and
are recorded on the delivery row instead.
"""

from __future__ import annotations


class WebhookError(Exception):
    """Base exception for webhook errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "webhook_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class InvalidTenantScopeError(WebhookError):
    """Tenant scope is not a well-formed tenant schema name."""

    code: str = "invalid_tenant_scope"

    def __init__(self, tenant_scope: str) -> None:
        self.tenant_scope = tenant_scope
        super().__init__(f"Invalid tenant scope: {tenant_scope!r}")


class NotFoundError(WebhookError):
    """Resource not found in the tenant's schema."""

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class WebhookNotFoundError(NotFoundError):
    """Webhook subscription does not exist."""

    def __init__(self, webhook_id: str) -> None:
        super().__init__("Webhook", webhook_id)


class DeliveryNotFoundError(NotFoundError):
    """Delivery does not exist or belongs to another webhook."""

    def __init__(self, delivery_id: str) -> None:
        super().__init__("Delivery", delivery_id)


class DeliveryStateError(WebhookError):
    """Operation is not allowed in the delivery's current status.

    Attributes:
        delivery_id: The delivery that was targeted.
        status: Its status at the time of the request.
    """

    code: str = "invalid_delivery_state"

    def __init__(self, delivery_id: str, status: str, allowed: tuple[str, ...]) -> None:
        self.delivery_id = delivery_id
        self.status = status
        self.allowed = allowed
        super().__init__(
            f"Delivery {delivery_id} is {status}; only {', '.join(allowed)} deliveries "
            "can be redelivered"
        )
