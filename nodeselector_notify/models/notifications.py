"""Notification records, intents and outbound messages."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum, StrEnum
from typing import Any

from nodeselector_notify.models.pods import PodRef, UnschedulableCause


class NotificationState(StrEnum):
    """Per-pod notification state machine."""

    IDLE = "idle"
    PENDING_DEBOUNCE = "pending_debounce"
    NOTIFIED = "notified"
    SUPPRESSED = "suppressed"


class MessageKind(StrEnum):
    """What an outbound message announces."""

    INCIDENT = "incident"
    RENOTIFY = "renotify"
    RESOLVED = "resolved"
    BATCH = "batch"


class DeliveryPriority(IntEnum):
    """Queue priority; lower values are delivered first and dropped last."""

    RESOLVED = 1
    INCIDENT = 2
    RENOTIFY = 3


_PRIORITY_BY_KIND: dict[MessageKind, DeliveryPriority] = {
    MessageKind.RESOLVED: DeliveryPriority.RESOLVED,
    MessageKind.INCIDENT: DeliveryPriority.INCIDENT,
    MessageKind.BATCH: DeliveryPriority.INCIDENT,
    MessageKind.RENOTIFY: DeliveryPriority.RENOTIFY,
}


@dataclass
class NotificationRecord:
    """Mutable notification state for one pod.

    Owned by the NotificationTracker; only the reconciliation loop touches it.
    """

    ref: PodRef
    first_seen_at: datetime
    state: NotificationState = NotificationState.IDLE
    state_since: datetime | None = None
    last_reason: UnschedulableCause | None = None
    last_notified_at: datetime | None = None
    retry_count: int = 0
    current_cause: UnschedulableCause | None = None
    pending_cause: UnschedulableCause | None = None
    resource_version: str = ""
    in_flight: NotificationIntent | None = None
    resolution_due: bool = False
    deleted: bool = False
    unconfirmed: bool = False
    last_error: str = ""

    @property
    def incident_open(self) -> bool:
        """True when humans have been told about a failure not yet resolved."""
        return self.last_reason is not None and self.last_notified_at is not None


@dataclass(frozen=True)
class NotificationIntent:
    """A decision by the tracker that something must be sent about one pod."""

    kind: MessageKind
    ref: PodRef
    cause: UnschedulableCause | None = None
    deleted: bool = False

    @property
    def correlation_key(self) -> str:
        cause_key = self.cause.key if self.cause is not None else "-"
        return f"{self.ref}|{cause_key}|{self.kind}"


@dataclass(frozen=True)
class OutboundMessage:
    """Rendered message bound for the webhook.

    ``subjects`` holds one intent, or several for a BATCH message.
    """

    kind: MessageKind
    subjects: tuple[NotificationIntent, ...]
    text: str
    payload: dict[str, Any]
    webhook_url: str
    correlation_key: str = ""

    @property
    def priority(self) -> DeliveryPriority:
        return _PRIORITY_BY_KIND[self.kind]

    @property
    def refs(self) -> list[PodRef]:
        return [s.ref for s in self.subjects]


@dataclass(frozen=True)
class Ack:
    """Successful delivery acknowledgement."""

    status_code: int
    attempts: int = 1


@dataclass(frozen=True)
class DeliveryOutcome:
    """Completion report from the dispatcher to the reconciliation loop."""

    message: OutboundMessage
    ack: Ack | None = None
    error: Exception | None = None
    attempts: int = 0
    completed_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.ack is not None
