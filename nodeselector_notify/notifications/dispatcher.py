"""Delivery dispatcher: bounded worker pool over a bounded priority queue.

* ``submit()`` never blocks the caller; it only enqueues.
* Workers run ``DeliveryEngine.deliver()`` concurrently, at most
  ``max_concurrent`` at a time.
* Every submitted message produces exactly one DeliveryOutcome through the
  ``on_complete`` callback -- success, failure, or a DeliveryDroppedError
  when the queue was saturated -- except for duplicates, which are refused
  up front, and messages still queued when shutdown begins.
* When the queue is full the lowest-priority message is dropped
  (re-notifies first, then incidents, resolutions last); among equals the
  oldest goes.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from nodeselector_notify.models.notifications import DeliveryOutcome, OutboundMessage
from nodeselector_notify.notifications.engine import DeliveryDroppedError, DeliveryEngine, DeliveryError

_log = structlog.get_logger(component="notifications.dispatcher")

OnComplete = Callable[[DeliveryOutcome], None]


@dataclass(order=True)
class _Queued:
    priority: int
    seq: int
    message: OutboundMessage = field(compare=False)


class DeliveryDispatcher:
    """Runs deliveries off the reconciliation loop.

    Args:
        engine:         DeliveryEngine used by every worker.
        on_complete:    Called (from a worker task) with each outcome.  Must
                        not block; the reconciler posts it to its inbox.
        max_concurrent: Number of worker tasks.
        max_queued:     Queue depth at which messages start being dropped.
    """

    def __init__(
        self,
        engine: DeliveryEngine,
        on_complete: OnComplete,
        max_concurrent: int = 4,
        max_queued: int = 100,
    ) -> None:
        self._engine = engine
        self._on_complete = on_complete
        self._max_concurrent = max_concurrent
        self._max_queued = max_queued
        self._heap: list[_Queued] = []
        self._keys: set[str] = set()
        self._seq = itertools.count()
        self._items = asyncio.Semaphore(0)
        self._workers: list[asyncio.Task[None]] = []
        self._in_flight = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._accepting = False

    @property
    def queued(self) -> int:
        return len(self._heap)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def start(self) -> None:
        if self._workers:
            return
        self._accepting = True
        for i in range(self._max_concurrent):
            self._workers.append(asyncio.create_task(self._worker(), name=f"delivery-worker-{i}"))
        _log.info("delivery_dispatcher_started", workers=self._max_concurrent, max_queued=self._max_queued)

    def submit(self, message: OutboundMessage) -> bool:
        """Enqueue *message*; return False if it was refused or dropped."""
        if not self._accepting:
            _log.warning("delivery_refused_shutting_down", correlation_key=message.correlation_key)
            return False
        if message.correlation_key in self._keys:
            _log.debug("delivery_duplicate_ignored", correlation_key=message.correlation_key)
            return False

        if len(self._heap) >= self._max_queued:
            worst = max(item.priority for item in self._heap)
            if message.priority > worst:
                self._drop(message)
                return False
            victim = min((item for item in self._heap if item.priority == worst), key=lambda item: item.seq)
            self._heap.remove(victim)
            heapq.heapify(self._heap)
            self._keys.discard(victim.message.correlation_key)
            self._drop(victim.message)
            # the slot is reused, so the semaphore count stays as it is
            heapq.heappush(self._heap, _Queued(int(message.priority), next(self._seq), message))
            self._keys.add(message.correlation_key)
            return True

        heapq.heappush(self._heap, _Queued(int(message.priority), next(self._seq), message))
        self._keys.add(message.correlation_key)
        self._items.release()
        return True

    def _drop(self, message: OutboundMessage) -> None:
        _log.error(
            "delivery_dropped_queue_full",
            correlation_key=message.correlation_key,
            kind=message.kind.value,
            max_queued=self._max_queued,
        )
        self._on_complete(
            DeliveryOutcome(
                message=message,
                error=DeliveryDroppedError("delivery queue full"),
                completed_at=datetime.now(tz=UTC),
            )
        )

    async def _worker(self) -> None:
        while True:
            await self._items.acquire()
            if not self._heap:
                continue
            item = heapq.heappop(self._heap)
            message = item.message
            self._in_flight += 1
            self._drained.clear()
            try:
                outcome = await self._deliver(message)
            finally:
                self._keys.discard(message.correlation_key)
                self._in_flight -= 1
                if self._in_flight == 0:
                    self._drained.set()
            self._on_complete(outcome)

    async def _deliver(self, message: OutboundMessage) -> DeliveryOutcome:
        try:
            ack = await self._engine.deliver(message)
        except DeliveryError as exc:
            return DeliveryOutcome(
                message=message,
                error=exc,
                attempts=exc.attempts,
                completed_at=datetime.now(tz=UTC),
            )
        except Exception as exc:  # noqa: BLE001
            _log.error(
                "delivery_unexpected_error",
                correlation_key=message.correlation_key,
                error=str(exc),
            )
            return DeliveryOutcome(message=message, error=exc, attempts=1, completed_at=datetime.now(tz=UTC))
        _log.info(
            "notification_sent",
            kind=message.kind.value,
            pods=[str(ref) for ref in message.refs],
            status_code=ack.status_code,
            attempts=ack.attempts,
        )
        return DeliveryOutcome(message=message, ack=ack, attempts=ack.attempts, completed_at=datetime.now(tz=UTC))

    async def stop(self, grace: float = 10.0) -> None:
        """Stop accepting work, let in-flight deliveries finish within *grace*."""
        if not self._workers:
            return
        self._accepting = False
        self._engine.begin_shutdown()

        if self._heap:
            _log.warning("queued_deliveries_abandoned", count=len(self._heap))
            for item in self._heap:
                self._keys.discard(item.message.correlation_key)
            self._heap.clear()

        if self._in_flight:
            try:
                await asyncio.wait_for(self._drained.wait(), timeout=grace)
            except TimeoutError:
                _log.warning("in_flight_deliveries_abandoned", count=self._in_flight, grace_s=grace)

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        _log.info("delivery_dispatcher_stopped")
