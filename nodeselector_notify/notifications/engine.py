"""Delivery engine: one message, bounded retries, classified failures.

``DeliveryEngine.deliver()`` returns an Ack or raises a DeliveryError
subclass.  Failures are split into:

* transient -- transport errors, timeouts, 5xx, 408 and 429.  Retried with
  exponential backoff and full jitter up to ``max_attempts``; then
  DeliveryExhaustedError.
* permanent -- any other non-2xx status.  Raised immediately as
  DeliveryPermanentError.

Once ``begin_shutdown()`` has been called no further retries are scheduled.
"""

from __future__ import annotations

import asyncio
import random

import httpx
import structlog

from nodeselector_notify.models.notifications import Ack, OutboundMessage
from nodeselector_notify.notifications.webhook import WebhookTransport

_log = structlog.get_logger(component="notifications.engine")

_TRANSIENT_STATUS = frozenset({408, 429})


class DeliveryError(Exception):
    """Base class for delivery failures reported back to the tracker."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class DeliveryTransientError(DeliveryError):
    """A single attempt failed in a way worth retrying."""

    def __init__(self, message: str, status_code: int | None = None, retry_after: float | None = None) -> None:
        super().__init__(message, attempts=1)
        self.status_code = status_code
        self.retry_after = retry_after


class DeliveryPermanentError(DeliveryError):
    """The webhook rejected the message; retrying would not help."""

    def __init__(self, message: str, status_code: int | None = None, attempts: int = 1) -> None:
        super().__init__(message, attempts=attempts)
        self.status_code = status_code


class DeliveryExhaustedError(DeliveryError):
    """Every allowed attempt failed transiently."""


class DeliveryDroppedError(DeliveryError):
    """The delivery queue was saturated and this message was discarded."""


class DeliveryAbandonedError(DeliveryError):
    """Shutdown began before the message could be delivered."""


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After", "")
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _check_response(response: httpx.Response) -> None:
    status = response.status_code
    if response.is_success:
        return
    if status in _TRANSIENT_STATUS or status >= 500:
        raise DeliveryTransientError(
            f"webhook returned {status}",
            status_code=status,
            retry_after=_retry_after(response) if status == 429 else None,
        )
    raise DeliveryPermanentError(f"webhook rejected message with {status}", status_code=status)


class DeliveryEngine:
    """Delivers OutboundMessages through a WebhookTransport.

    Args:
        transport:    Webhook collaborator.
        max_attempts: Total attempts per message (first try included).
        base_delay:   Backoff base in seconds.
        max_delay:    Upper bound for a single backoff sleep.
        rng:          Random source for jitter.
    """

    def __init__(
        self,
        transport: WebhookTransport,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._transport = transport
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._rng = rng or random.Random()
        self._shutdown = asyncio.Event()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def begin_shutdown(self) -> None:
        self._shutdown.set()

    def backoff_delay(self, attempt: int) -> float:
        """Full-jitter delay before retry number *attempt* (1-based)."""
        ceiling = min(self._max_delay, self._base_delay * (2 ** (attempt - 1)))
        return self._rng.uniform(0, ceiling)

    async def deliver(self, message: OutboundMessage) -> Ack:
        """Send *message*, retrying transient failures.

        Raises:
            DeliveryPermanentError: non-retryable rejection.
            DeliveryExhaustedError: attempt cap reached.
            DeliveryAbandonedError: shutdown interrupted the retry loop.
        """
        last_error: DeliveryTransientError | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await self._transport.post(message.payload, url=message.webhook_url)
                _check_response(response)
                return Ack(status_code=response.status_code, attempts=attempt)
            except DeliveryPermanentError as exc:
                exc.attempts = attempt
                _log.warning(
                    "delivery_rejected",
                    correlation_key=message.correlation_key,
                    status_code=exc.status_code,
                )
                raise
            except DeliveryTransientError as exc:
                last_error = exc
            except httpx.TimeoutException as exc:
                last_error = DeliveryTransientError(f"timeout: {exc!r}")
            except httpx.TransportError as exc:
                last_error = DeliveryTransientError(f"transport error: {exc!r}")
            except httpx.HTTPError as exc:
                raise DeliveryPermanentError(f"http error: {exc!r}", attempts=attempt) from exc

            if attempt == self._max_attempts:
                break

            delay = self.backoff_delay(attempt)
            if last_error.retry_after is not None:
                delay = min(self._max_delay, last_error.retry_after)
            _log.info(
                "delivery_retry_scheduled",
                correlation_key=message.correlation_key,
                attempt=attempt,
                delay_s=round(delay, 3),
                error=str(last_error),
            )
            if await self._sleep_or_shutdown(delay):
                raise DeliveryAbandonedError("shutdown in progress", attempts=attempt) from last_error

        raise DeliveryExhaustedError(
            f"gave up after {self._max_attempts} attempts: {last_error}",
            attempts=self._max_attempts,
        ) from last_error

    async def _sleep_or_shutdown(self, delay: float) -> bool:
        """Sleep for *delay*; return True if shutdown began meanwhile."""
        if self._shutdown.is_set():
            return True
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True
