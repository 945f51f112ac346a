"""Notification state tracker.

Holds one NotificationRecord per PodRef and decides, for every classified
event, timer tick and delivery outcome, whether something must be sent.
The tracker performs no I/O: every operation returns the list of
NotificationIntents the caller has to deliver.  It is not thread-safe and is
meant to be owned by a single task (the reconciliation loop).

State machine per pod::

    (none) ──unschedulable──▶ PENDING_DEBOUNCE ──debounce elapsed──▶ NOTIFIED
                                  ▲      │                              │
                 reason changed ──┘      └─resolved before timer─▶ (none)
                                                                        │
    NOTIFIED ──resolved/deleted──▶ IDLE (resolution sent) ──cool-down──▶ (none)
    any ──delivery failed──▶ SUPPRESSED ──cool-down──▶ PENDING_DEBOUNCE | NOTIFIED | (none)

A suppressed record whose earlier incident is still open returns to NOTIFIED
instead of being dropped, so the pod's resolution is still announced.

Only one delivery per pod is in flight at a time; timers for a record are
not evaluated while its delivery is outstanding.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta

import structlog

from nodeselector_notify.models.config import TrackerConfig
from nodeselector_notify.models.notifications import (
    MessageKind,
    NotificationIntent,
    NotificationRecord,
    NotificationState,
)
from nodeselector_notify.models.pods import (
    PodRef,
    PodSnapshot,
    SchedulingPhase,
    SchedulingStatus,
    UnschedulableCause,
    is_newer_or_same,
)

_log = structlog.get_logger(component="tracker")


def _same_cause(a: UnschedulableCause | None, b: UnschedulableCause | None) -> bool:
    if a is None or b is None:
        return False
    return a.key == b.key


class NotificationTracker:
    """Per-pod debounce, de-duplication and flap suppression.

    Args:
        debounce:          How long a pod must stay unschedulable with the same
                           reason before the first notification.
        renotify_interval: Repeat interval for long-standing failures;
                           ``timedelta(0)`` disables re-notification.
        cooldown:          Quiet period after a resolution (and after a failed
                           delivery) before a new cycle may start.
    """

    def __init__(
        self,
        debounce: timedelta,
        renotify_interval: timedelta,
        cooldown: timedelta,
    ) -> None:
        if renotify_interval and renotify_interval < debounce:
            raise ValueError("renotify_interval must be zero or at least the debounce window")
        self._debounce = debounce
        self._renotify = renotify_interval
        self._cooldown = cooldown
        self._records: dict[PodRef, NotificationRecord] = {}

    @classmethod
    def from_config(cls, config: TrackerConfig) -> NotificationTracker:
        return cls(
            debounce=timedelta(seconds=config.debounce_seconds),
            renotify_interval=timedelta(seconds=config.renotify_interval_seconds),
            cooldown=timedelta(seconds=config.cooldown_seconds),
        )

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def get(self, ref: PodRef) -> NotificationRecord | None:
        return self._records.get(ref)

    def records(self) -> Iterator[NotificationRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, ref: object) -> bool:
        return ref in self._records

    # ------------------------------------------------------------------
    # Cluster-driven transitions
    # ------------------------------------------------------------------

    def observe(self, snapshot: PodSnapshot, status: SchedulingStatus, now: datetime) -> list[NotificationIntent]:
        """Feed one classified snapshot (ADDED or MODIFIED)."""
        ref = snapshot.ref
        record = self._records.get(ref)

        if record is not None:
            record.unconfirmed = False
            if not is_newer_or_same(snapshot.resource_version, record.resource_version):
                _log.debug(
                    "stale_update_discarded",
                    pod=str(ref),
                    resource_version=snapshot.resource_version,
                    known_version=record.resource_version,
                )
                return []
            if snapshot.resource_version:
                record.resource_version = snapshot.resource_version

        if status.phase is SchedulingPhase.PENDING_UNSCHEDULABLE:
            assert status.cause is not None
            return self._on_unschedulable(ref, record, status.cause, snapshot.resource_version, now)
        if record is None:
            return []
        if status.is_resolved:
            return self._on_resolved(record, now, deleted=False)
        return self._on_pending_other(record)

    def forget(self, ref: PodRef, now: datetime) -> list[NotificationIntent]:
        """The pod was deleted from the cluster."""
        record = self._records.get(ref)
        if record is None:
            return []
        record.unconfirmed = False
        intents = self._on_resolved(record, now, deleted=True)
        if ref in self._records:
            record.deleted = True
        return intents

    def _on_unschedulable(
        self,
        ref: PodRef,
        record: NotificationRecord | None,
        cause: UnschedulableCause,
        resource_version: str,
        now: datetime,
    ) -> list[NotificationIntent]:
        if record is None:
            record = NotificationRecord(ref=ref, first_seen_at=now, resource_version=resource_version)
            self._records[ref] = record
            self._start_debounce(record, cause, now)
            _log.info("pod_unschedulable", pod=str(ref), cause=cause.kind.value, detail=cause.describe())
            return []

        record.current_cause = cause
        record.deleted = False
        state = record.state

        if state is NotificationState.PENDING_DEBOUNCE:
            if not _same_cause(record.pending_cause, cause):
                _log.info("unschedulable_reason_changed", pod=str(ref), cause=cause.kind.value)
                self._start_debounce(record, cause, now)
        elif state is NotificationState.NOTIFIED:
            if not _same_cause(record.pending_cause, cause):
                _log.info("unschedulable_reason_changed", pod=str(ref), cause=cause.kind.value)
                self._start_debounce(record, cause, now)
        elif state is NotificationState.IDLE:
            # a new cycle only starts once the cool-down has elapsed
            if record.in_flight is None and self._elapsed(record, now) >= self._cooldown:
                self._start_debounce(record, cause, now)
        # SUPPRESSED: current_cause is picked up when the window ends
        return []

    def _on_resolved(self, record: NotificationRecord, now: datetime, deleted: bool) -> list[NotificationIntent]:
        record.current_cause = None
        if record.state is NotificationState.IDLE:
            return []

        if record.in_flight is not None:
            # resolution goes out once the outstanding delivery completes
            record.state = NotificationState.IDLE
            record.state_since = now
            record.resolution_due = True
            record.deleted = deleted
            return []

        if not record.incident_open:
            _log.info("unschedulable_pod_recovered_silently", pod=str(record.ref), state=record.state.value)
            del self._records[record.ref]
            return []

        record.state = NotificationState.IDLE
        record.state_since = now
        record.deleted = deleted
        return [self._dispatch(record, MessageKind.RESOLVED, record.last_reason)]

    def _on_pending_other(self, record: NotificationRecord) -> list[NotificationIntent]:
        record.current_cause = None
        if (
            record.state is NotificationState.PENDING_DEBOUNCE
            and record.in_flight is None
            and not record.incident_open
        ):
            del self._records[record.ref]
        return []

    # ------------------------------------------------------------------
    # Time-driven transitions
    # ------------------------------------------------------------------

    def tick(self, now: datetime) -> list[NotificationIntent]:
        """Evaluate debounce, re-notify, suppression and cool-down timers."""
        intents: list[NotificationIntent] = []
        for record in list(self._records.values()):
            if record.in_flight is not None:
                continue
            elapsed = self._elapsed(record, now)
            state = record.state

            if state is NotificationState.PENDING_DEBOUNCE:
                if elapsed < self._debounce:
                    continue
                if _same_cause(record.current_cause, record.pending_cause):
                    record.state = NotificationState.NOTIFIED
                    record.state_since = now
                    intents.append(self._dispatch(record, MessageKind.INCIDENT, record.pending_cause))
                elif not record.incident_open:
                    del self._records[record.ref]

            elif state is NotificationState.NOTIFIED:
                if (
                    self._renotify
                    and record.last_notified_at is not None
                    and now - record.last_notified_at >= self._renotify
                    and _same_cause(record.current_cause, record.pending_cause)
                ):
                    intents.append(self._dispatch(record, MessageKind.RENOTIFY, record.pending_cause))

            elif state is NotificationState.SUPPRESSED:
                if elapsed < self._cooldown:
                    continue
                if record.current_cause is not None:
                    _log.info("suppression_expired", pod=str(record.ref))
                    self._start_debounce(record, record.current_cause, now)
                elif record.incident_open:
                    # an earlier incident is still open; keep it until the pod resolves
                    record.state = NotificationState.NOTIFIED
                    record.state_since = now
                    record.pending_cause = record.last_reason
                else:
                    del self._records[record.ref]

            elif elapsed >= self._cooldown:  # IDLE
                if record.current_cause is not None:
                    record.last_reason = None
                    record.last_notified_at = None
                    self._start_debounce(record, record.current_cause, now)
                else:
                    del self._records[record.ref]
        return intents

    # ------------------------------------------------------------------
    # Delivery outcomes
    # ------------------------------------------------------------------

    def delivery_succeeded(self, intent: NotificationIntent, now: datetime) -> list[NotificationIntent]:
        record = self._records.get(intent.ref)
        if record is None or record.in_flight != intent:
            return []
        record.in_flight = None
        record.retry_count = 0
        record.last_error = ""

        if intent.kind is MessageKind.RESOLVED:
            record.last_reason = None
            record.last_notified_at = None
        else:
            record.last_reason = intent.cause
            record.last_notified_at = now

        if record.resolution_due:
            record.resolution_due = False
            return [self._dispatch(record, MessageKind.RESOLVED, record.last_reason)]
        return []

    def delivery_failed(
        self,
        intent: NotificationIntent,
        error: Exception,
        now: datetime,
        attempts: int = 1,
    ) -> list[NotificationIntent]:
        record = self._records.get(intent.ref)
        if record is None or record.in_flight != intent:
            return []
        record.in_flight = None
        record.retry_count += attempts
        record.last_error = f"{type(error).__name__}: {error}"

        if intent.kind is MessageKind.RESOLVED:
            # the resolution is given up, not retried
            record.last_reason = None
            record.last_notified_at = None

        if record.resolution_due:
            record.resolution_due = False
            if record.incident_open:
                return [self._dispatch(record, MessageKind.RESOLVED, record.last_reason)]
            # nobody heard about the incident, so there is nothing to resolve
            return []

        record.state = NotificationState.SUPPRESSED
        record.state_since = now
        _log.warning(
            "delivery_suppressed",
            pod=str(record.ref),
            message_kind=intent.kind.value,
            error=record.last_error,
            retry_count=record.retry_count,
            cooldown_seconds=self._cooldown.total_seconds(),
        )
        return []

    # ------------------------------------------------------------------
    # Resync support
    # ------------------------------------------------------------------

    def begin_resync(self) -> None:
        """Mark every tracked pod as unconfirmed before a full re-list."""
        for record in self._records.values():
            record.unconfirmed = True

    def end_resync(self) -> list[PodRef]:
        """Return pods not seen during the re-list; the caller treats them as deleted."""
        missing = [r.ref for r in self._records.values() if r.unconfirmed]
        for record in self._records.values():
            record.unconfirmed = False
        return missing

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_debounce(self, record: NotificationRecord, cause: UnschedulableCause, now: datetime) -> None:
        if not _same_cause(record.pending_cause, cause):
            record.retry_count = 0
        record.state = NotificationState.PENDING_DEBOUNCE
        record.state_since = now
        record.pending_cause = cause
        record.current_cause = cause

    def _dispatch(
        self,
        record: NotificationRecord,
        kind: MessageKind,
        cause: UnschedulableCause | None,
    ) -> NotificationIntent:
        intent = NotificationIntent(kind=kind, ref=record.ref, cause=cause, deleted=record.deleted)
        record.in_flight = intent
        return intent

    @staticmethod
    def _elapsed(record: NotificationRecord, now: datetime) -> timedelta:
        since = record.state_since or record.first_seen_at
        return now - since
