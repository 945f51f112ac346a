"""Reconciliation loop.

One consumer task drains a single inbox and is the only code that touches
the NotificationTracker.  Three producers feed the inbox:

* the stream pump -- pod events from the watch, and resync markers wrapped
  around a full re-list after the stream breaks;
* the ticker -- a periodic Tick so that debounce, re-notify and cool-down
  timers fire while the cluster is quiet;
* delivery workers -- DeliveryOutcomes via ``report_outcome``.

Per-pod ordering follows inbox order, which is the order the source (or the
re-list) produced the events in.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import structlog

from nodeselector_notify.classifier import classify
from nodeselector_notify.collector.pod_source import StreamBroken
from nodeselector_notify.models.notifications import (
    DeliveryOutcome,
    MessageKind,
    NotificationIntent,
    OutboundMessage,
)
from nodeselector_notify.models.pods import EventKind, PodEvent, PodSnapshot
from nodeselector_notify.notifications.render import render_message
from nodeselector_notify.tracker import NotificationTracker

_log = structlog.get_logger(component="reconciler")

_BACKOFF_MIN_S = 1.0
_BACKOFF_MAX_S = 60.0


class PodSource(Protocol):
    """Minimal event source interface required by the Reconciler."""

    last_resource_version: str

    async def list_pods(self) -> tuple[list[PodSnapshot], str]: ...

    def watch(self, resource_version: str = "") -> AsyncIterator[PodEvent]: ...


class Submitter(Protocol):
    """Minimal dispatcher interface required by the Reconciler."""

    def submit(self, message: OutboundMessage) -> bool: ...


@dataclass(frozen=True)
class Tick:
    """Wake-up for timer-only transitions."""


@dataclass(frozen=True)
class ResyncStarted:
    reason: str


@dataclass(frozen=True)
class ResyncFinished:
    resource_version: str
    pod_count: int


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class Reconciler:
    """Owns the tracker and drives classify → track → deliver.

    Args:
        source:          Cluster event source.
        tracker:         Notification state; owned exclusively from here on.
        env_name:        Cluster/environment label put into messages.
        webhook_url:     Target of every OutboundMessage.
        payload_format:  ``slack`` or ``json``.
        batch_threshold: Send INCIDENTs due on the same tick as one message
                         when at least this many are due; 0 disables.
        tick_interval:   Seconds between timer evaluations.
        resync_interval: Seconds between full re-lists while the stream is
                         healthy; 0 re-lists only after a break.
        clock:           Returns the current UTC time.
    """

    def __init__(
        self,
        source: PodSource,
        tracker: NotificationTracker,
        env_name: str,
        webhook_url: str,
        payload_format: str = "slack",
        batch_threshold: int = 0,
        tick_interval: float = 5.0,
        resync_interval: float = 0.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._source = source
        self._tracker = tracker
        self._env_name = env_name
        self._webhook_url = webhook_url
        self._payload_format = payload_format
        self._batch_threshold = batch_threshold
        self._tick_interval = tick_interval
        self._resync_interval = resync_interval
        self._clock = clock
        self._dispatcher: Submitter | None = None

        self._inbox: asyncio.Queue[object] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []
        self._synced_once = False
        self._stream_connected = False
        self._halted_task: str | None = None

    # ------------------------------------------------------------------
    # Wiring and status
    # ------------------------------------------------------------------

    def bind_dispatcher(self, dispatcher: Submitter) -> None:
        self._dispatcher = dispatcher

    @property
    def tracker(self) -> NotificationTracker:
        return self._tracker

    @property
    def ready(self) -> bool:
        """True once the first full sync completed, the stream is up and no loop task has died."""
        return self._synced_once and self._stream_connected and self._halted_task is None

    @property
    def backlog(self) -> int:
        return self._inbox.qsize()

    def report_outcome(self, outcome: DeliveryOutcome) -> None:
        """Delivery completion callback; only posts to the inbox."""
        self._inbox.put_nowait(outcome)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._tasks:
            return
        if self._dispatcher is None:
            raise RuntimeError("bind_dispatcher() must be called before start()")
        self._tasks = [
            asyncio.create_task(self._consume(), name="reconcile-loop"),
            asyncio.create_task(self._pump(), name="pod-stream"),
            asyncio.create_task(self._ticker(), name="reconcile-ticker"),
        ]
        self._halted_task = None
        for task in self._tasks:
            task.add_done_callback(self._on_task_done)
        _log.info("reconciler_started", tick_interval_s=self._tick_interval)

    async def stop(self) -> None:
        # producers first, so the loop does not act on half-read streams
        for task in reversed(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._stream_connected = False
        _log.info("reconciler_stopped", tracked_pods=len(self._tracker))

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        # the loops never return on their own; readiness stays down until restart
        self._halted_task = task.get_name()
        exc = task.exception()
        _log.error("reconciler_task_exited", task=task.get_name(), error=repr(exc) if exc else None, exc_info=exc)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def _pump(self) -> None:
        backoff = _BACKOFF_MIN_S
        reason = "initial"
        while True:
            try:
                resource_version = await self._resync(reason)
                backoff = _BACKOFF_MIN_S
                await self._follow(resource_version)
                reason = "periodic"
                continue
            except StreamBroken as exc:
                reason = "expired" if exc.expired else "stream_broken"
                _log.warning(
                    "stream_broken",
                    reason=exc.reason,
                    status=exc.status,
                    retry_in_s=backoff,
                )
            except Exception as exc:  # noqa: BLE001
                reason = "stream_error"
                _log.exception("stream_failed", error=str(exc), retry_in_s=backoff)
            self._stream_connected = False
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, _BACKOFF_MAX_S)

    async def _follow(self, resource_version: str) -> None:
        """Watch from *resource_version* until the periodic re-list is due.

        Without a resync interval this only returns by raising.
        """
        try:
            async with asyncio.timeout(self._resync_interval or None) as deadline:
                while True:
                    async with aclosing(self._source.watch(resource_version)) as events:
                        async for event in events:
                            await self._inbox.put(event)
                    resource_version = self._source.last_resource_version
        except TimeoutError:
            if not deadline.expired():
                raise

    async def _resync(self, reason: str) -> str:
        """List every pod and queue the replay between resync markers."""
        snapshots, resource_version = await self._source.list_pods()
        self._inbox.put_nowait(ResyncStarted(reason=reason))
        for snapshot in snapshots:
            self._inbox.put_nowait(PodEvent(kind=EventKind.MODIFIED, snapshot=snapshot))
        self._inbox.put_nowait(ResyncFinished(resource_version=resource_version, pod_count=len(snapshots)))
        self._stream_connected = True
        return resource_version

    async def _ticker(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            self._inbox.put_nowait(Tick())

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def _consume(self) -> None:
        while True:
            item = await self._inbox.get()
            try:
                self.process(item)
            except Exception as exc:  # noqa: BLE001
                _log.exception("reconcile_item_failed", item_type=type(item).__name__, error=str(exc))

    def process(self, item: object) -> None:
        """Apply one inbox item to the tracker and deliver what it decides."""
        now = self._clock()
        if isinstance(item, PodEvent):
            self._emit(self._on_pod_event(item, now))
        elif isinstance(item, Tick):
            self._emit(self._tracker.tick(now), allow_batch=True)
        elif isinstance(item, DeliveryOutcome):
            self._emit(self._on_outcome(item, now))
        elif isinstance(item, ResyncStarted):
            _log.info("resync_started", reason=item.reason, tracked_pods=len(self._tracker))
            self._tracker.begin_resync()
        elif isinstance(item, ResyncFinished):
            self._emit(self._on_resync_finished(item, now))
        else:
            raise TypeError(f"unexpected inbox item {item!r}")

    def _on_pod_event(self, event: PodEvent, now: datetime) -> list[NotificationIntent]:
        if event.kind is EventKind.DELETED:
            return self._tracker.forget(event.ref, now)
        try:
            status = classify(event.snapshot)
        except Exception as exc:  # noqa: BLE001
            _log.error("classification_failed", pod=str(event.ref), error=str(exc))
            return []
        return self._tracker.observe(event.snapshot, status, now)

    def _on_outcome(self, outcome: DeliveryOutcome, now: datetime) -> list[NotificationIntent]:
        intents: list[NotificationIntent] = []
        for subject in outcome.message.subjects:
            if outcome.ok:
                intents.extend(self._tracker.delivery_succeeded(subject, now))
            else:
                error = outcome.error or RuntimeError("delivery failed")
                intents.extend(self._tracker.delivery_failed(subject, error, now, attempts=outcome.attempts or 1))
        return intents

    def _on_resync_finished(self, item: ResyncFinished, now: datetime) -> list[NotificationIntent]:
        intents: list[NotificationIntent] = []
        missing = self._tracker.end_resync()
        for ref in missing:
            intents.extend(self._tracker.forget(ref, now))
        self._synced_once = True
        _log.info(
            "resync_finished",
            pods=item.pod_count,
            resource_version=item.resource_version,
            vanished=len(missing),
            tracked_pods=len(self._tracker),
        )
        return intents

    def _emit(self, intents: Sequence[NotificationIntent], allow_batch: bool = False) -> None:
        if not intents:
            return
        incidents = [i for i in intents if i.kind is MessageKind.INCIDENT]
        if allow_batch and self._batch_threshold and len(incidents) >= self._batch_threshold:
            self._send(incidents)
            intents = [i for i in intents if i.kind is not MessageKind.INCIDENT]
        for intent in intents:
            self._send([intent])

    def _send(self, subjects: Sequence[NotificationIntent]) -> None:
        assert self._dispatcher is not None
        message = render_message(
            subjects,
            env_name=self._env_name,
            webhook_url=self._webhook_url,
            payload_format=self._payload_format,
        )
        self._dispatcher.submit(message)
