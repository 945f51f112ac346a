"""Shared fixtures for nodeselector-notify integration tests.

Provides a scripted pod source, a recording dispatcher and a manual clock so
that the Reconciler can be exercised end to end (classify → track → render
→ submit → outcome) without a cluster or a webhook.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from nodeselector_notify.models.notifications import Ack, DeliveryOutcome, OutboundMessage
from nodeselector_notify.models.pods import EventKind, PodEvent, PodSnapshot, snapshot_from_raw
from nodeselector_notify.reconciler import Reconciler
from nodeselector_notify.tracker import NotificationTracker

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)

SELECTOR_MESSAGE = "0/3 nodes are available: 3 node(s) didn't match Pod's node affinity/selector."
CAPACITY_MESSAGE = "0/3 nodes are available: 3 Insufficient memory."


# ---------------------------------------------------------------------------
# Pod factories
# ---------------------------------------------------------------------------


def make_pod(
    name: str = "foo",
    namespace: str = "ns",
    rv: int = 1,
    node_selector: dict[str, str] | None = None,
    message: str | None = SELECTOR_MESSAGE,
    node_name: str = "",
) -> PodSnapshot:
    """Pending pod with ``PodScheduled=False`` and *message*; scheduled when *node_name* is set."""
    status: dict[str, object] = {"phase": "Pending"}
    if node_name:
        status = {
            "phase": "Running",
            "conditions": [{"type": "PodScheduled", "status": "True"}],
        }
    elif message is not None:
        status["conditions"] = [
            {"type": "PodScheduled", "status": "False", "reason": "Unschedulable", "message": message}
        ]
    spec: dict[str, object] = {"nodeSelector": node_selector if node_selector is not None else {"zone": "us-east"}}
    if node_name:
        spec["nodeName"] = node_name
    return snapshot_from_raw(
        {
            "metadata": {"namespace": namespace, "name": name, "resourceVersion": str(rv)},
            "spec": spec,
            "status": status,
        }
    )


def added(snapshot: PodSnapshot) -> PodEvent:
    return PodEvent(kind=EventKind.ADDED, snapshot=snapshot)


def modified(snapshot: PodSnapshot) -> PodEvent:
    return PodEvent(kind=EventKind.MODIFIED, snapshot=snapshot)


def deleted(snapshot: PodSnapshot) -> PodEvent:
    return PodEvent(kind=EventKind.DELETED, snapshot=snapshot)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class ManualClock:
    """Callable clock advanced explicitly by the test."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class RecordingDispatcher:
    """Stands in for DeliveryDispatcher: records submissions.

    With ``auto_ack`` set, every message is acknowledged through the bound
    reconciler's inbox, the way real workers report back.
    """

    def __init__(self, auto_ack: bool = False) -> None:
        self.messages: list[OutboundMessage] = []
        self.auto_ack = auto_ack
        self.reconciler: Reconciler | None = None

    def submit(self, message: OutboundMessage) -> bool:
        self.messages.append(message)
        if self.auto_ack and self.reconciler is not None:
            self.reconciler.report_outcome(DeliveryOutcome(message=message, ack=Ack(status_code=200), attempts=1))
        return True

    def kinds(self) -> list[str]:
        return [m.kind.value for m in self.messages]


class FakePodSource:
    """Scripted PodSource.

    ``listings`` are returned by successive ``list_pods()`` calls (the last
    one repeats).  ``sessions`` are consumed by successive ``watch()`` calls:
    a list of events is streamed and the watch then ends normally, an
    exception is raised as-is.  With no sessions left, ``watch()`` blocks
    until cancelled.
    """

    def __init__(
        self,
        listings: list[list[PodSnapshot]] | None = None,
        sessions: list[list[PodEvent] | Exception] | None = None,
    ) -> None:
        self.listings = listings or [[]]
        self.sessions = list(sessions or [])
        self.list_calls = 0
        self.watch_calls: list[str] = []
        self.last_resource_version = ""

    async def list_pods(self) -> tuple[list[PodSnapshot], str]:
        snapshots = self.listings[min(self.list_calls, len(self.listings) - 1)]
        self.list_calls += 1
        self.last_resource_version = str(1000 * self.list_calls)
        return list(snapshots), self.last_resource_version

    async def watch(self, resource_version: str = ""):  # noqa: ANN201
        self.watch_calls.append(resource_version)
        if not self.sessions:
            await asyncio.Event().wait()
        session = self.sessions.pop(0)
        if isinstance(session, Exception):
            raise session
        for event in session:
            yield event


def ok(message: OutboundMessage) -> DeliveryOutcome:
    return DeliveryOutcome(message=message, ack=Ack(status_code=200), attempts=1)


def failed(message: OutboundMessage, error: Exception, attempts: int = 5) -> DeliveryOutcome:
    return DeliveryOutcome(message=message, error=error, attempts=attempts)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def tracker() -> NotificationTracker:
    return NotificationTracker(
        debounce=timedelta(seconds=30),
        renotify_interval=timedelta(seconds=3600),
        cooldown=timedelta(seconds=300),
    )


@pytest.fixture()
def reconciler(tracker: NotificationTracker, dispatcher: RecordingDispatcher, clock: ManualClock) -> Reconciler:
    rec = Reconciler(
        FakePodSource(),
        tracker,
        env_name="prod-eu",
        webhook_url="https://hooks.example.com/notify",
        batch_threshold=3,
        clock=clock,
    )
    rec.bind_dispatcher(dispatcher)
    dispatcher.reconciler = rec
    return rec
