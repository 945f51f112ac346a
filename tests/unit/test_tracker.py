"""Tests for nodeselector_notify.tracker.NotificationTracker.

The tracker is driven with explicit timestamps; no real time passes.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from nodeselector_notify.models.config import TrackerConfig
from nodeselector_notify.models.notifications import MessageKind, NotificationIntent, NotificationState
from nodeselector_notify.models.pods import PodRef, PodSnapshot, SchedulingStatus, UnschedulableCause
from nodeselector_notify.tracker import NotificationTracker

_T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)
_REF = PodRef("payments", "api-7d9f-abcde")
_OTHER = PodRef("batch", "etl-0")

_SELECTOR = UnschedulableCause.node_selector_mismatch(
    {"disktype": "ssd"},
    "0/3 nodes are available: 3 node(s) didn't match Pod's node affinity/selector.",
)
_CAPACITY = UnschedulableCause.insufficient_resources("0/3 nodes are available: 3 Insufficient cpu.")


def _at(seconds: float) -> datetime:
    return _T0 + timedelta(seconds=seconds)


def _snap(rv: str = "", ref: PodRef = _REF) -> PodSnapshot:
    return PodSnapshot(ref=ref, resource_version=rv, phase="Pending")


def _unsched(cause: UnschedulableCause = _SELECTOR) -> SchedulingStatus:
    return SchedulingStatus.unschedulable(cause)


def _tracker(renotify: float = 3600) -> NotificationTracker:
    return NotificationTracker(
        debounce=timedelta(seconds=30),
        renotify_interval=timedelta(seconds=renotify),
        cooldown=timedelta(seconds=300),
    )


def _notified(tracker: NotificationTracker, ref: PodRef = _REF) -> NotificationIntent:
    """Drive *ref* to NOTIFIED with a delivered incident (observe@0, tick@30, ack@31)."""
    assert tracker.observe(_snap("1", ref), _unsched(), _at(0)) == []
    intents = tracker.tick(_at(30))
    incident = next(i for i in intents if i.ref == ref)
    assert tracker.delivery_succeeded(incident, _at(31)) == []
    return incident


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_renotify_shorter_than_debounce_rejected(self) -> None:
        with pytest.raises(ValueError):
            NotificationTracker(timedelta(seconds=60), timedelta(seconds=10), timedelta(0))

    def test_renotify_zero_allowed(self) -> None:
        assert len(_tracker(renotify=0)) == 0

    def test_from_config(self) -> None:
        tracker = NotificationTracker.from_config(
            TrackerConfig(debounce_seconds=5, renotify_interval_seconds=0, cooldown_seconds=1)
        )
        tracker.observe(_snap(), _unsched(), _at(0))
        assert tracker.tick(_at(4)) == []
        assert len(tracker.tick(_at(5))) == 1


# ---------------------------------------------------------------------------
# Debounce and first notification
# ---------------------------------------------------------------------------


class TestDebounce:
    def test_first_observation_only_starts_timer(self) -> None:
        tracker = _tracker()
        assert tracker.observe(_snap("1"), _unsched(), _at(0)) == []
        record = tracker.get(_REF)
        assert record is not None
        assert record.state is NotificationState.PENDING_DEBOUNCE
        assert record.first_seen_at == _at(0)

    def test_incident_after_debounce(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("1"), _unsched(), _at(0))
        assert tracker.tick(_at(29)) == []
        intents = tracker.tick(_at(30))
        assert intents == [NotificationIntent(kind=MessageKind.INCIDENT, ref=_REF, cause=_SELECTOR)]
        record = tracker.get(_REF)
        assert record is not None
        assert record.state is NotificationState.NOTIFIED
        assert record.in_flight == intents[0]

    def test_no_duplicate_while_in_flight(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("1"), _unsched(), _at(0))
        assert len(tracker.tick(_at(30))) == 1
        tracker.observe(_snap("2"), _unsched(), _at(40))
        assert tracker.tick(_at(5000)) == []

    def test_repeated_events_do_not_reset_timer(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("1"), _unsched(), _at(0))
        tracker.observe(_snap("2"), _unsched(), _at(20))
        assert len(tracker.tick(_at(30))) == 1

    def test_reason_change_restarts_timer(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("1"), _unsched(), _at(0))
        tracker.observe(_snap("2"), _unsched(_CAPACITY), _at(20))
        assert tracker.tick(_at(30)) == []
        intents = tracker.tick(_at(50))
        assert [i.cause for i in intents] == [_CAPACITY]

    def test_resolved_before_debounce_is_silent(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("1"), _unsched(), _at(0))
        assert tracker.observe(_snap("2"), SchedulingStatus.scheduled(), _at(10)) == []
        assert _REF not in tracker
        assert tracker.tick(_at(60)) == []

    def test_pending_other_during_debounce_drops_record(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("1"), _unsched(), _at(0))
        tracker.observe(_snap("2"), SchedulingStatus.pending_other(), _at(10))
        assert _REF not in tracker

    def test_scheduled_pod_never_tracked(self) -> None:
        tracker = _tracker()
        assert tracker.observe(_snap("1"), SchedulingStatus.scheduled(), _at(0)) == []
        assert len(tracker) == 0

    def test_delivery_success_records_reason(self) -> None:
        tracker = _tracker()
        _notified(tracker)
        record = tracker.get(_REF)
        assert record is not None
        assert record.last_reason == _SELECTOR
        assert record.last_notified_at == _at(31)
        assert record.in_flight is None
        assert record.incident_open


# ---------------------------------------------------------------------------
# Re-notification and reason changes after NOTIFIED
# ---------------------------------------------------------------------------


class TestRenotify:
    def test_same_reason_is_deduplicated(self) -> None:
        tracker = _tracker()
        _notified(tracker)
        for i in range(5):
            assert tracker.observe(_snap(str(10 + i)), _unsched(), _at(100 + i)) == []
        assert tracker.tick(_at(600)) == []

    def test_renotify_after_interval(self) -> None:
        tracker = _tracker()
        _notified(tracker)
        assert tracker.tick(_at(31 + 3599)) == []
        intents = tracker.tick(_at(31 + 3600))
        assert [i.kind for i in intents] == [MessageKind.RENOTIFY]
        tracker.delivery_succeeded(intents[0], _at(31 + 3601))
        assert tracker.tick(_at(31 + 3602)) == []

    def test_renotify_disabled(self) -> None:
        tracker = _tracker(renotify=0)
        _notified(tracker)
        assert tracker.tick(_at(100_000)) == []

    def test_new_reason_after_notification(self) -> None:
        tracker = _tracker()
        _notified(tracker)
        tracker.observe(_snap("5"), _unsched(_CAPACITY), _at(100))
        record = tracker.get(_REF)
        assert record is not None
        assert record.state is NotificationState.PENDING_DEBOUNCE
        assert tracker.tick(_at(129)) == []
        intents = tracker.tick(_at(130))
        assert intents == [NotificationIntent(kind=MessageKind.INCIDENT, ref=_REF, cause=_CAPACITY)]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestResolution:
    def test_resolved_after_notification(self) -> None:
        tracker = _tracker()
        _notified(tracker)
        intents = tracker.observe(_snap("5"), SchedulingStatus.scheduled(), _at(100))
        assert intents == [NotificationIntent(kind=MessageKind.RESOLVED, ref=_REF, cause=_SELECTOR)]
        record = tracker.get(_REF)
        assert record is not None
        assert record.state is NotificationState.IDLE

        tracker.delivery_succeeded(intents[0], _at(101))
        assert not record.incident_open
        assert tracker.tick(_at(399)) == []
        assert _REF in tracker
        tracker.tick(_at(400))
        assert _REF not in tracker

    def test_deleted_after_notification(self) -> None:
        tracker = _tracker()
        _notified(tracker)
        intents = tracker.forget(_REF, _at(100))
        assert len(intents) == 1
        assert intents[0].kind is MessageKind.RESOLVED
        assert intents[0].deleted

    def test_forget_unknown_pod(self) -> None:
        assert _tracker().forget(_OTHER, _at(0)) == []

    def test_resolution_waits_for_in_flight_incident(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("1"), _unsched(), _at(0))
        [incident] = tracker.tick(_at(30))
        assert tracker.observe(_snap("2"), SchedulingStatus.scheduled(), _at(31)) == []

        follow_up = tracker.delivery_succeeded(incident, _at(32))
        assert follow_up == [NotificationIntent(kind=MessageKind.RESOLVED, ref=_REF, cause=_SELECTOR)]

    def test_failed_incident_with_resolution_due_sends_nothing(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("1"), _unsched(), _at(0))
        [incident] = tracker.tick(_at(30))
        tracker.observe(_snap("2"), SchedulingStatus.scheduled(), _at(31))
        assert tracker.delivery_failed(incident, RuntimeError("boom"), _at(32)) == []
        tracker.tick(_at(32 + 300))
        assert _REF not in tracker

    def test_recurrence_during_cooldown_waits(self) -> None:
        tracker = _tracker()
        _notified(tracker)
        [resolved] = tracker.observe(_snap("5"), SchedulingStatus.scheduled(), _at(100))
        tracker.delivery_succeeded(resolved, _at(101))

        tracker.observe(_snap("6"), _unsched(), _at(150))
        assert tracker.tick(_at(200)) == []
        assert tracker.tick(_at(400)) == []  # cool-down over, debounce starts
        intents = tracker.tick(_at(430))
        assert [i.kind for i in intents] == [MessageKind.INCIDENT]

    def test_stale_update_discarded(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("10"), _unsched(), _at(0))
        assert tracker.observe(_snap("9"), SchedulingStatus.scheduled(), _at(5)) == []
        record = tracker.get(_REF)
        assert record is not None
        assert record.state is NotificationState.PENDING_DEBOUNCE
        assert record.resource_version == "10"


# ---------------------------------------------------------------------------
# Delivery failures
# ---------------------------------------------------------------------------


class TestSuppression:
    def test_failure_suppresses_until_cooldown(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("1"), _unsched(), _at(0))
        [incident] = tracker.tick(_at(30))
        assert tracker.delivery_failed(incident, RuntimeError("503"), _at(31), attempts=5) == []

        record = tracker.get(_REF)
        assert record is not None
        assert record.state is NotificationState.SUPPRESSED
        assert record.retry_count == 5
        assert "503" in record.last_error

        assert tracker.tick(_at(330)) == []
        assert tracker.tick(_at(331)) == []  # back to debounce
        assert record.state is NotificationState.PENDING_DEBOUNCE
        assert [i.kind for i in tracker.tick(_at(361))] == [MessageKind.INCIDENT]

    def test_suppressed_record_cleared_when_resolved(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("1"), _unsched(), _at(0))
        [incident] = tracker.tick(_at(30))
        tracker.delivery_failed(incident, RuntimeError("boom"), _at(31))
        # never notified, so no resolution goes out
        assert tracker.observe(_snap("2"), SchedulingStatus.scheduled(), _at(40)) == []
        assert _REF not in tracker

    def test_open_incident_survives_failed_follow_up(self) -> None:
        tracker = _tracker()
        _notified(tracker)
        tracker.observe(_snap("2"), _unsched(_CAPACITY), _at(40))
        [second] = tracker.tick(_at(70))
        tracker.delivery_failed(second, RuntimeError("503"), _at(71))
        tracker.observe(_snap("3"), SchedulingStatus.pending_other(), _at(80))

        assert tracker.tick(_at(371)) == []
        record = tracker.get(_REF)
        assert record is not None
        assert record.state is NotificationState.NOTIFIED

        intents = tracker.observe(_snap("4"), SchedulingStatus.scheduled(), _at(400))
        assert intents == [NotificationIntent(kind=MessageKind.RESOLVED, ref=_REF, cause=_SELECTOR)]

    def test_failed_resolution_is_not_retried(self) -> None:
        tracker = _tracker()
        _notified(tracker)
        [resolved] = tracker.observe(_snap("5"), SchedulingStatus.scheduled(), _at(100))
        assert tracker.delivery_failed(resolved, RuntimeError("503"), _at(101)) == []

        record = tracker.get(_REF)
        assert record is not None
        assert record.state is NotificationState.SUPPRESSED
        assert not record.incident_open
        assert tracker.observe(_snap("6"), SchedulingStatus.scheduled(), _at(120)) == []
        assert _REF not in tracker

    def test_outcome_for_unknown_intent_ignored(self) -> None:
        tracker = _tracker()
        stray = NotificationIntent(kind=MessageKind.INCIDENT, ref=_OTHER, cause=_SELECTOR)
        assert tracker.delivery_succeeded(stray, _at(0)) == []
        assert tracker.delivery_failed(stray, RuntimeError("x"), _at(0)) == []


# ---------------------------------------------------------------------------
# Resync
# ---------------------------------------------------------------------------


class TestResync:
    def test_unconfirmed_pods_reported(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("1", _REF), _unsched(), _at(0))
        tracker.observe(_snap("2", _OTHER), _unsched(), _at(0))

        tracker.begin_resync()
        tracker.observe(_snap("3", _REF), _unsched(), _at(10))
        assert tracker.end_resync() == [_OTHER]

    def test_replayed_stale_version_still_confirms(self) -> None:
        tracker = _tracker()
        tracker.observe(_snap("5"), _unsched(), _at(0))
        tracker.begin_resync()
        tracker.observe(_snap("4"), _unsched(), _at(10))
        assert tracker.end_resync() == []


# ---------------------------------------------------------------------------
# Properties over random event sequences
# ---------------------------------------------------------------------------

_DEBOUNCE = timedelta(seconds=30)

_OPS = st.lists(
    st.tuples(
        st.sampled_from(["selector", "capacity", "scheduled", "pending", "delete", "tick", "ok", "fail"]),
        st.integers(min_value=0, max_value=400),
    ),
    max_size=60,
)


@pytest.mark.parametrize(("renotify", "cooldown"), [(3600, 300), (30, 0), (0, 5)])
@given(ops=_OPS)
@settings(max_examples=200, deadline=None)
def test_delivery_invariants(renotify: int, cooldown: int, ops: list[tuple[str, int]]) -> None:
    """For any sequence of events and outcomes on one pod:

    * at most one delivery is in flight;
    * successful announcements of the same reason were issued at least one
      debounce window apart;
    * an announced failure gets exactly one delivered resolution before the
      record is dropped, unless that resolution could not be delivered.
    """
    tracker = NotificationTracker(
        debounce=_DEBOUNCE,
        renotify_interval=timedelta(seconds=renotify),
        cooldown=timedelta(seconds=cooldown),
    )
    now = _T0
    outstanding: NotificationIntent | None = None
    issued_at = _T0
    announced_at: dict[str, datetime] = {}
    incident_open = False

    for rv, (op, advance) in enumerate(ops, start=1):
        now += timedelta(seconds=advance)
        intents: list[NotificationIntent] = []
        if op == "selector":
            intents = tracker.observe(_snap(str(rv)), _unsched(_SELECTOR), now)
        elif op == "capacity":
            intents = tracker.observe(_snap(str(rv)), _unsched(_CAPACITY), now)
        elif op == "scheduled":
            intents = tracker.observe(_snap(str(rv)), SchedulingStatus.scheduled(), now)
        elif op == "pending":
            intents = tracker.observe(_snap(str(rv)), SchedulingStatus.pending_other(), now)
        elif op == "delete":
            intents = tracker.forget(_REF, now)
        elif op == "tick":
            intents = tracker.tick(now)
        elif outstanding is not None:
            done, outstanding = outstanding, None
            if op == "ok":
                if done.kind is MessageKind.RESOLVED:
                    assert incident_open, "resolution delivered twice or without an incident"
                    incident_open = False
                else:
                    assert done.cause is not None
                    previous = announced_at.get(done.cause.key)
                    assert previous is None or issued_at - previous >= _DEBOUNCE, "same reason announced twice"
                    announced_at[done.cause.key] = issued_at
                    incident_open = True
                intents = tracker.delivery_succeeded(done, now)
            else:
                if done.kind is MessageKind.RESOLVED:
                    incident_open = False
                intents = tracker.delivery_failed(done, RuntimeError("boom"), now)

        for intent in intents:
            assert outstanding is None, "second delivery issued while one is outstanding"
            outstanding = intent
            issued_at = now
            record = tracker.get(intent.ref)
            assert record is not None
            assert record.in_flight == intent

        if tracker.get(_REF) is None:
            assert not incident_open, "record dropped while its incident was still open"
