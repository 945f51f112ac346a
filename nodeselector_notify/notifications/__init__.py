"""Notification delivery for nodeselector-notify.

Turns tracker intents into webhook calls without blocking the
reconciliation loop.

Exports:
    render_message       -- Builds the OutboundMessage (Slack text or JSON).
    WebhookTransport     -- httpx client bound to the configured endpoint.
    DeliveryEngine       -- Retry with exponential backoff + jitter,
                            transient/permanent classification.
    DeliveryDispatcher   -- Bounded worker pool and priority queue;
                            reports outcomes through a callback.
    build_delivery       -- Factory used by the application bootstrap.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from nodeselector_notify.notifications.dispatcher import DeliveryDispatcher, OnComplete
from nodeselector_notify.notifications.engine import (
    DeliveryAbandonedError,
    DeliveryDroppedError,
    DeliveryEngine,
    DeliveryError,
    DeliveryExhaustedError,
    DeliveryPermanentError,
    DeliveryTransientError,
)
from nodeselector_notify.notifications.render import render_message
from nodeselector_notify.notifications.webhook import WebhookTransport

if TYPE_CHECKING:
    from nodeselector_notify.models.config import NotifierConfig

_log = structlog.get_logger(component="notifications")

__all__ = [
    "DeliveryAbandonedError",
    "DeliveryDispatcher",
    "DeliveryDroppedError",
    "DeliveryEngine",
    "DeliveryError",
    "DeliveryExhaustedError",
    "DeliveryPermanentError",
    "DeliveryTransientError",
    "WebhookTransport",
    "build_delivery",
    "render_message",
]


def build_delivery(config: NotifierConfig, on_complete: OnComplete) -> tuple[WebhookTransport, DeliveryDispatcher]:
    """Wire transport, engine and dispatcher from the loaded configuration.

    The caller owns both returned objects and must ``stop()`` them
    (dispatcher first, then transport).
    """
    transport = WebhookTransport(url=config.webhook.url, timeout=config.webhook.timeout_seconds)
    engine = DeliveryEngine(
        transport,
        max_attempts=config.delivery.max_retry_attempts,
        base_delay=config.delivery.retry_base_delay_seconds,
        max_delay=config.delivery.retry_max_delay_seconds,
    )
    dispatcher = DeliveryDispatcher(
        engine,
        on_complete=on_complete,
        max_concurrent=config.delivery.max_concurrent_deliveries,
        max_queued=config.delivery.max_queued_deliveries,
    )
    _log.info(
        "delivery_configured",
        payload_format=config.webhook.payload_format,
        max_attempts=config.delivery.max_retry_attempts,
        workers=config.delivery.max_concurrent_deliveries,
    )
    return transport, dispatcher
