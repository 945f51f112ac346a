"""Webhook transport for nodeselector-notify.

Thin wrapper around a shared ``httpx.AsyncClient``: it POSTs a JSON payload
to the message's endpoint (the configured one by default) and hands back
the response.  Retry and error classification live in ``engine.py``.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

_log = structlog.get_logger(component="notifications.webhook")


class WebhookTransport:
    """POSTs JSON payloads to one webhook URL.

    Args:
        url:       Full endpoint URL (must be HTTPS in production).
        timeout:   Per-request timeout in seconds. Defaults to 10.
        headers:   Optional extra headers (e.g. Authorization).
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("Webhook url must not be empty")
        self._url = url
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def url(self) -> str:
        return self._url

    async def post(self, payload: dict[str, Any], url: str | None = None) -> httpx.Response:
        """POST *payload* to *url* (default: the configured endpoint) and return the response.

        Raises:
            httpx.TimeoutException: the request exceeded the timeout.
            httpx.HTTPError:        any other transport-level failure.
        """
        response = await self._client.post(url or self._url, json=payload, headers=self._headers)
        if not response.is_success:
            _log.debug(
                "webhook_non_2xx_response",
                status_code=response.status_code,
                body=response.text[:200],
            )
        return response

    async def stop(self) -> None:
        await self._client.aclose()
