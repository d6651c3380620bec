"""
Webhook Service

Outbound HTTP calls made on behalf of chatbot flows (action-node webhooks,
agent notifications). Transient failures are retried with exponential backoff;
client errors are not.
"""

import asyncio
import logging
from typing import Dict, Optional, Any

import httpx

from ..core.config import settings

logger = logging.getLogger(__name__)


class WebhookError(Exception):
    """Base exception for outbound webhook calls."""

    def __init__(self, message: str, status_code: int = None, response_data: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data


class TransientWebhookError(WebhookError):
    """Network errors, timeouts and 5xx/429 responses; safe to retry."""
    pass


RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


class WebhookService:
    """
    Async HTTP client wrapper used as an async context manager.

    Usage::

        async with WebhookService() as webhooks:
            data = await webhooks.send("POST", url, payload)
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT
        self.retry_attempts = max(1, retry_attempts or settings.WEBHOOK_RETRY_ATTEMPTS)
        self.backoff_seconds = settings.WEBHOOK_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def send(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        """
        Send a JSON request, retrying transient failures.

        Args:
            method: HTTP method
            url: Target URL
            payload: JSON body (sent as query params for GET)
            headers: Extra headers

        Returns:
            Decoded JSON body, or the response text when it is not JSON

        Raises:
            WebhookError: permanent failure (4xx)
            TransientWebhookError: retries exhausted
        """
        if self._http_client is None:
            raise RuntimeError("Service not initialized. Use as async context manager.")

        method = method.upper()
        last_error: Optional[WebhookError] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await self._send_once(method, url, payload, headers)
            except TransientWebhookError as e:
                last_error = e
                logger.warning(f"Webhook {method} {url} attempt {attempt}/{self.retry_attempts} failed: {e}")
                if attempt < self.retry_attempts:
                    await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        raise last_error

    async def _send_once(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]],
        headers: Optional[Dict[str, str]]
    ) -> Any:
        request_kwargs: Dict[str, Any] = {"headers": headers or {}}
        if method == "GET":
            request_kwargs["params"] = payload or {}
        else:
            request_kwargs["json"] = payload or {}

        try:
            response = await self._http_client.request(method, url, **request_kwargs)
        except httpx.TransportError as e:
            raise TransientWebhookError(f"Transport error: {e}") from e

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientWebhookError(
                f"Webhook returned {response.status_code}",
                response.status_code,
                response.text,
            )
        if response.status_code >= 400:
            raise WebhookError(
                f"Webhook rejected request with {response.status_code}",
                response.status_code,
                response.text,
            )

        try:
            return response.json()
        except ValueError:
            return response.text
