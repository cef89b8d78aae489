"""Outbound HTTP for webhook delivery attempts."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol

import httpx

RESPONSE_BODY_MAX_LENGTH = 1000


@dataclass
class AttemptResult:
    """Outcome of a single HTTP attempt."""

    success: bool
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    latency_ms: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "status_code": self.status_code,
            "response_body": self.response_body,
            "error": self.error,
            "latency_ms": self.latency_ms,
        }


class DeliveryTransport(Protocol):
    """Sends one signed webhook request."""

    async def send(
        self,
        url: str,
        body: str,
        headers: dict[str, str],
        timeout: float,
    ) -> AttemptResult: ...

    async def aclose(self) -> None: ...


class HttpxTransport:
    """``DeliveryTransport`` over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        response_body_max_length: int = RESPONSE_BODY_MAX_LENGTH,
    ):
        """
        Initialize the transport.

        Args:
            client: Client to send with; one is created (and owned) when omitted
            response_body_max_length: Response bodies are truncated to this length
        """
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(follow_redirects=False)
        self._max_body = response_body_max_length

    async def send(
        self,
        url: str,
        body: str,
        headers: dict[str, str],
        timeout: float,
    ) -> AttemptResult:
        """POST ``body`` to ``url``. Transport failures are returned, never raised."""
        start_time = time.monotonic()

        try:
            response = await self._client.post(
                url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException:
            return AttemptResult(
                success=False,
                error="Request timeout",
                latency_ms=self._elapsed_ms(start_time),
            )
        except (httpx.RequestError, httpx.InvalidURL) as e:
            return AttemptResult(
                success=False,
                error=str(e) or e.__class__.__name__,
                latency_ms=self._elapsed_ms(start_time),
            )

        latency_ms = self._elapsed_ms(start_time)
        success = 200 <= response.status_code < 300
        return AttemptResult(
            success=success,
            status_code=response.status_code,
            response_body=response.text[: self._max_body] if response.text else None,
            error=None if success else f"HTTP {response.status_code}",
            latency_ms=latency_ms,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.monotonic() - start_time) * 1000)
