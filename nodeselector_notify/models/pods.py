"""Pod identity, snapshots and derived scheduling status."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

_DIGITS = re.compile(r"\d+")


class EventKind(StrEnum):
    """Kind of change reported by the cluster watch."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True, order=True)
class PodRef:
    """Stable identity of a pod: namespace + name."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class PodCondition:
    """One entry of ``status.conditions``."""

    type: str
    status: str
    reason: str = ""
    message: str = ""


@dataclass(frozen=True)
class PodSnapshot:
    """The fields of a pod needed for classification.

    Immutable: built once per watch event or list item.
    """

    ref: PodRef
    resource_version: str = ""
    phase: str = ""
    node_name: str = ""
    conditions: tuple[PodCondition, ...] = ()
    node_selector: Mapping[str, str] = field(default_factory=dict)
    affinity: Mapping[str, Any] | None = None
    tolerations: tuple[Mapping[str, Any], ...] = ()
    deletion_timestamp: str | None = None

    def condition(self, cond_type: str) -> PodCondition | None:
        for cond in self.conditions:
            if cond.type == cond_type:
                return cond
        return None

    def has_required_node_affinity(self) -> bool:
        node_affinity = (self.affinity or {}).get("nodeAffinity") or {}
        required = node_affinity.get("requiredDuringSchedulingIgnoredDuringExecution") or {}
        return bool(required.get("nodeSelectorTerms"))


@dataclass(frozen=True)
class PodEvent:
    """A single (kind, snapshot) item produced by the event source."""

    kind: EventKind
    snapshot: PodSnapshot

    @property
    def ref(self) -> PodRef:
        return self.snapshot.ref


def is_newer_or_same(candidate: str, current: str) -> bool:
    """Return False only when *candidate* is provably older than *current*.

    Resource versions are opaque strings; in practice etcd-backed clusters
    hand out integers, so they are compared numerically when both parse.
    Anything else is accepted as-is.
    """
    if not candidate or not current:
        return True
    if candidate.isdigit() and current.isdigit():
        return int(candidate) >= int(current)
    return True


def snapshot_from_raw(raw: Mapping[str, Any]) -> PodSnapshot:
    """Build a PodSnapshot from a camelCase pod dict (watch ``raw_object``)."""
    metadata = raw.get("metadata") or {}
    spec = raw.get("spec") or {}
    status = raw.get("status") or {}

    conditions = tuple(
        PodCondition(
            type=str(c.get("type", "")),
            status=str(c.get("status", "")),
            reason=str(c.get("reason") or ""),
            message=str(c.get("message") or ""),
        )
        for c in status.get("conditions") or []
        if isinstance(c, Mapping)
    )

    return PodSnapshot(
        ref=PodRef(
            namespace=str(metadata.get("namespace") or "default"),
            name=str(metadata.get("name") or "unknown"),
        ),
        resource_version=str(metadata.get("resourceVersion") or ""),
        phase=str(status.get("phase") or ""),
        node_name=str(spec.get("nodeName") or ""),
        conditions=conditions,
        node_selector=dict(spec.get("nodeSelector") or {}),
        affinity=spec.get("affinity") or None,
        tolerations=tuple(spec.get("tolerations") or ()),
        deletion_timestamp=metadata.get("deletionTimestamp"),
    )


# ---------------------------------------------------------------------------
# Derived scheduling status
# ---------------------------------------------------------------------------


class SchedulingPhase(StrEnum):
    """Scheduling state derived from a snapshot; never stored by the cluster."""

    SCHEDULED = "scheduled"
    PENDING_UNSCHEDULABLE = "pending_unschedulable"
    PENDING_OTHER = "pending_other"
    TERMINATED = "terminated"


class CauseKind(StrEnum):
    """Why the scheduler could not place a pod."""

    NODE_SELECTOR_MISMATCH = "node_selector_mismatch"
    AFFINITY_MISMATCH = "affinity_mismatch"
    INSUFFICIENT_RESOURCES = "insufficient_resources"
    UNKNOWN = "unknown"


class AffinityKind(StrEnum):
    NODE_AFFINITY = "node-affinity"
    POD_AFFINITY = "pod-affinity"
    POD_ANTI_AFFINITY = "pod-anti-affinity"
    TAINT_TOLERATION = "taint-toleration"


@dataclass(frozen=True)
class UnschedulableCause:
    """Structured cause of an unschedulable pod.

    ``selector`` is only set for NODE_SELECTOR_MISMATCH and ``affinity`` only
    for AFFINITY_MISMATCH.  ``message`` is the scheduler's text, kept for
    rendering; it does not take part in ``key`` except for UNKNOWN causes.
    """

    kind: CauseKind
    message: str = ""
    selector: tuple[tuple[str, str], ...] = ()
    affinity: AffinityKind | None = None

    @classmethod
    def node_selector_mismatch(cls, selector: Mapping[str, str], message: str = "") -> UnschedulableCause:
        return cls(
            kind=CauseKind.NODE_SELECTOR_MISMATCH,
            message=message,
            selector=tuple(sorted((str(k), str(v)) for k, v in selector.items())),
        )

    @classmethod
    def affinity_mismatch(cls, affinity: AffinityKind, message: str = "") -> UnschedulableCause:
        return cls(kind=CauseKind.AFFINITY_MISMATCH, message=message, affinity=affinity)

    @classmethod
    def insufficient_resources(cls, message: str = "") -> UnschedulableCause:
        return cls(kind=CauseKind.INSUFFICIENT_RESOURCES, message=message)

    @classmethod
    def unknown(cls, message: str) -> UnschedulableCause:
        return cls(kind=CauseKind.UNKNOWN, message=message)

    @property
    def key(self) -> str:
        """Stable identity of the cause, used for reason-change detection."""
        if self.kind is CauseKind.NODE_SELECTOR_MISMATCH:
            return f"{self.kind}:{self.selector_text}"
        if self.kind is CauseKind.AFFINITY_MISMATCH:
            return f"{self.kind}:{self.affinity}"
        if self.kind is CauseKind.UNKNOWN:
            # node counts change between scheduler retries
            return f"{self.kind}:{_DIGITS.sub('N', self.message.strip())}"
        return str(self.kind)

    @property
    def selector_text(self) -> str:
        return ",".join(f"{k}={v}" for k, v in self.selector)

    def describe(self) -> str:
        """One-line human readable summary."""
        if self.kind is CauseKind.NODE_SELECTOR_MISMATCH:
            if self.selector:
                return f"no node matches nodeSelector {{{self.selector_text}}}"
            return "no node matches the pod's node selector"
        if self.kind is CauseKind.AFFINITY_MISMATCH:
            return {
                AffinityKind.NODE_AFFINITY: "no node satisfies the required node affinity",
                AffinityKind.POD_AFFINITY: "no node satisfies the pod affinity rules",
                AffinityKind.POD_ANTI_AFFINITY: "every candidate node violates pod anti-affinity",
                AffinityKind.TAINT_TOLERATION: "nodes carry taints the pod does not tolerate",
            }.get(self.affinity, "affinity mismatch")  # type: ignore[arg-type]
        if self.kind is CauseKind.INSUFFICIENT_RESOURCES:
            return "no node has enough free resources"
        return self.message or "unschedulable for an unrecognised reason"


@dataclass(frozen=True)
class SchedulingStatus:
    """Result of classifying one snapshot."""

    phase: SchedulingPhase
    cause: UnschedulableCause | None = None

    @classmethod
    def scheduled(cls) -> SchedulingStatus:
        return cls(SchedulingPhase.SCHEDULED)

    @classmethod
    def terminated(cls) -> SchedulingStatus:
        return cls(SchedulingPhase.TERMINATED)

    @classmethod
    def pending_other(cls) -> SchedulingStatus:
        return cls(SchedulingPhase.PENDING_OTHER)

    @classmethod
    def unschedulable(cls, cause: UnschedulableCause) -> SchedulingStatus:
        return cls(SchedulingPhase.PENDING_UNSCHEDULABLE, cause)

    @property
    def is_unschedulable(self) -> bool:
        return self.phase is SchedulingPhase.PENDING_UNSCHEDULABLE

    @property
    def is_resolved(self) -> bool:
        return self.phase in (SchedulingPhase.SCHEDULED, SchedulingPhase.TERMINATED)
