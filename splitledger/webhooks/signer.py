"""Webhook payload signer using HMAC-SHA256."""

import hashlib
import hmac


class WebhookSigner:
    """Signs webhook payloads for verification."""

    SIGNATURE_PREFIX = "sha256="

    @staticmethod
    def sign(secret: str, body: str | bytes) -> str:
        """
        Generate the HMAC-SHA256 signature of a serialized envelope.

        Args:
            secret: The subscription's shared secret
            body: The exact body that will be transmitted

        Returns:
            Hex-encoded digest (without prefix)
        """
        if isinstance(body, str):
            body = body.encode("utf-8")
        return hmac.new(
            secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()

    @staticmethod
    def signature_header(secret: str, body: str | bytes) -> str:
        """Value for the X-Webhook-Signature header (``sha256=<hex>``)."""
        return f"{WebhookSigner.SIGNATURE_PREFIX}{WebhookSigner.sign(secret, body)}"

    @staticmethod
    def verify(secret: str, body: str | bytes, signature: str) -> bool:
        """
        Verify a webhook signature the way a receiver should.

        Args:
            secret: The shared secret key
            body: The raw request body
            signature: X-Webhook-Signature header value, with or without prefix

        Returns:
            True if signature is valid, False otherwise
        """
        if signature.startswith(WebhookSigner.SIGNATURE_PREFIX):
            signature = signature[len(WebhookSigner.SIGNATURE_PREFIX) :]
        expected = WebhookSigner.sign(secret, body)
        return hmac.compare_digest(expected, signature)

    @staticmethod
    def get_headers(
        body: str,
        secret: str,
        webhook_id: str,
        delivery_id: str,
        event_type: str,
    ) -> dict[str, str]:
        """
        Generate all webhook HTTP headers including signature.

        Args:
            body: The serialized envelope
            secret: The shared secret key
            webhook_id: The subscription ID
            delivery_id: The delivery record ID
            event_type: The event type (e.g., "invoice.paid")

        Returns:
            Dictionary of HTTP headers
        """
        return {
            "Content-Type": "application/json",
            "X-Webhook-Signature": WebhookSigner.signature_header(secret, body),
            "X-Webhook-ID": webhook_id,
            "X-Delivery-ID": delivery_id,
            "X-Webhook-Event": event_type,
        }
