"""Unschedulability classifier.

``classify()`` is a pure function over a PodSnapshot.  The cluster API does
not expose a structured cause for ``PodScheduled=False``, so the cause is
derived from the scheduler's free-text message.  Matching is best-effort;
anything unrecognised falls through to an UNKNOWN cause, which is still
notifiable.

A single scheduler message usually aggregates per-node verdicts, e.g.::

    0/5 nodes are available: 2 Insufficient cpu,
    3 node(s) didn't match Pod's node affinity/selector.

When several causes are listed, ``classify_message`` checks them in a fixed
order: placement constraints the pod author controls outrank capacity
problems.
"""

from __future__ import annotations

import re

from nodeselector_notify.models.pods import (
    AffinityKind,
    PodSnapshot,
    SchedulingStatus,
    UnschedulableCause,
)

_TERMINAL_PHASES = frozenset({"Succeeded", "Failed"})

# Pod never reaches the scheduler queue while it still has scheduling gates.
_NOT_YET_SCHEDULABLE_REASONS = frozenset({"SchedulingGated"})

_RE_NODE_SELECTOR = re.compile(
    r"didn't match (?:pod's )?node (?:affinity|selector)|node\(s\) didn't match node selector|"
    r"MatchNodeSelector|node affinity/selector",
    re.IGNORECASE,
)
_RE_POD_ANTI_AFFINITY = re.compile(r"anti-affinity", re.IGNORECASE)
_RE_POD_AFFINITY = re.compile(
    r"didn't match pod affinity|pod affinity rules|MatchInterPodAffinity",
    re.IGNORECASE,
)
_RE_TAINT = re.compile(
    r"had (?:untolerated )?taint|didn't tolerate|PodToleratesNodeTaints",
    re.IGNORECASE,
)
_RE_INSUFFICIENT = re.compile(
    r"Insufficient [\w./-]+|Too many pods",
    re.IGNORECASE,
)


def classify(snapshot: PodSnapshot) -> SchedulingStatus:
    """Derive the scheduling status of *snapshot*."""
    if snapshot.phase in _TERMINAL_PHASES:
        return SchedulingStatus.terminated()

    scheduled = snapshot.condition("PodScheduled")
    if scheduled is not None and scheduled.status == "False":
        if scheduled.reason in _NOT_YET_SCHEDULABLE_REASONS:
            return SchedulingStatus.pending_other()
        return SchedulingStatus.unschedulable(classify_message(scheduled.message, snapshot))

    if (scheduled is not None and scheduled.status == "True") or snapshot.node_name:
        return SchedulingStatus.scheduled()

    return SchedulingStatus.pending_other()


def classify_message(message: str, snapshot: PodSnapshot) -> UnschedulableCause:
    """Map a scheduler message onto an UnschedulableCause.

    *snapshot* supplies the selector copied into NODE_SELECTOR_MISMATCH and
    decides between a nodeSelector and a required node affinity.
    """
    text = message or ""

    if _RE_NODE_SELECTOR.search(text):
        if not snapshot.node_selector and snapshot.has_required_node_affinity():
            return UnschedulableCause.affinity_mismatch(AffinityKind.NODE_AFFINITY, text)
        return UnschedulableCause.node_selector_mismatch(snapshot.node_selector, text)

    # anti-affinity must be tested first: its phrasing contains "affinity"
    if _RE_POD_ANTI_AFFINITY.search(text):
        return UnschedulableCause.affinity_mismatch(AffinityKind.POD_ANTI_AFFINITY, text)
    if _RE_POD_AFFINITY.search(text):
        return UnschedulableCause.affinity_mismatch(AffinityKind.POD_AFFINITY, text)
    if _RE_TAINT.search(text):
        return UnschedulableCause.affinity_mismatch(AffinityKind.TAINT_TOLERATION, text)
    if _RE_INSUFFICIENT.search(text):
        return UnschedulableCause.insufficient_resources(text)

    return UnschedulableCause.unknown(text)
