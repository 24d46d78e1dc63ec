"""Webhook delivery service using httpx.

Performs best-effort JSON POSTs to callback URLs. Every outcome, including
timeouts and connection errors, is returned as a DeliveryResult; nothing is
raised to the caller and nothing is retried.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)

__all__ = [
    "DeliveryResult",
    "WebhookDeliveryService",
]

USER_AGENT = "wahook/0.1"


@dataclass
class DeliveryResult:
    """Result of a webhook delivery attempt."""

    url: str
    success: bool
    status_code: int | None = None
    error: str | None = None
    duration_ms: float = 0.0


class WebhookDeliveryService:
    """Handles webhook HTTP delivery.

    Uses httpx.AsyncClient for connection pooling and async requests.

    Example:
        >>> service = WebhookDeliveryService(timeout=10)
        >>> result = await service.deliver(
        ...     "https://example.com/hook", {"session": "alice"}, {}
        ... )
        >>> result.success
        True
    """

    def __init__(
        self,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize delivery service.

        Args:
            timeout: HTTP timeout in seconds
            client: Shared client to use instead of creating one
        """
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            import httpx

            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this service created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def deliver(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> DeliveryResult:
        """POST ``body`` as JSON to ``url``.

        Args:
            url: Destination callback URL, used exactly as configured
            body: JSON-serializable event body
            headers: Extra headers (e.g. Authorization) merged over the defaults

        Returns:
            DeliveryResult; only 2xx responses count as success
        """
        import httpx

        start_time = time.monotonic()
        request_headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        request_headers.update(headers or {})

        def elapsed() -> float:
            return (time.monotonic() - start_time) * 1000

        try:
            client = await self._get_client()
            response = await client.post(url, json=body, headers=request_headers)

            if 200 <= response.status_code < 300:
                logger.debug(f"Webhook delivered to {url}: HTTP {response.status_code}")
                return DeliveryResult(
                    url=url,
                    success=True,
                    status_code=response.status_code,
                    duration_ms=elapsed(),
                )

            result = DeliveryResult(
                url=url,
                success=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}",
                duration_ms=elapsed(),
            )

        except httpx.TimeoutException as e:
            result = DeliveryResult(
                url=url, success=False, error=f"Timeout: {e}", duration_ms=elapsed()
            )

        except httpx.ConnectError as e:
            result = DeliveryResult(
                url=url,
                success=False,
                error=f"Connection error: {e}",
                duration_ms=elapsed(),
            )

        except (httpx.HTTPError, httpx.InvalidURL) as e:
            result = DeliveryResult(
                url=url, success=False, error=f"HTTP error: {e}", duration_ms=elapsed()
            )

        except Exception as e:
            logger.exception(f"Unexpected error delivering webhook to {url}: {e}")
            return DeliveryResult(
                url=url,
                success=False,
                error=f"Unexpected error: {type(e).__name__}: {e}",
                duration_ms=elapsed(),
            )

        logger.error(f"Failed to send webhook to {url}: {result.error}")
        return result
