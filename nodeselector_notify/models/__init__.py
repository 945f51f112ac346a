"""Core data structures for nodeselector-notify."""

from nodeselector_notify.models.config import NotifierConfig
from nodeselector_notify.models.notifications import (
    Ack,
    DeliveryOutcome,
    DeliveryPriority,
    MessageKind,
    NotificationIntent,
    NotificationRecord,
    NotificationState,
    OutboundMessage,
)
from nodeselector_notify.models.pods import (
    AffinityKind,
    CauseKind,
    EventKind,
    PodCondition,
    PodEvent,
    PodRef,
    PodSnapshot,
    SchedulingPhase,
    SchedulingStatus,
    UnschedulableCause,
    snapshot_from_raw,
)

__all__ = [
    "Ack",
    "AffinityKind",
    "CauseKind",
    "DeliveryOutcome",
    "DeliveryPriority",
    "EventKind",
    "MessageKind",
    "NotificationIntent",
    "NotificationRecord",
    "NotificationState",
    "NotifierConfig",
    "OutboundMessage",
    "PodCondition",
    "PodEvent",
    "PodRef",
    "PodSnapshot",
    "SchedulingPhase",
    "SchedulingStatus",
    "UnschedulableCause",
    "snapshot_from_raw",
]
