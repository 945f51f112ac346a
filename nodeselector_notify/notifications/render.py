"""Message rendering for webhook delivery.

Two payload formats are supported:

``slack``
    ``{"text": "..."}`` as accepted by Slack (and Mattermost/Rocket.Chat)
    incoming webhooks.
``json``
    The same text plus structured fields so that generic receivers can route
    on them without parsing prose.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from nodeselector_notify.models.notifications import MessageKind, NotificationIntent, OutboundMessage

_BATCH_LIST_LIMIT = 20

_HEADLINES = {
    MessageKind.INCIDENT: "⚠️ Pod unschedulable",
    MessageKind.RENOTIFY: "⏰ Pod still unschedulable",
    MessageKind.RESOLVED: "✅ Pod no longer unschedulable",
}


def _cause_fields(intent: NotificationIntent) -> dict[str, Any]:
    cause = intent.cause
    if cause is None:
        return {"cause": None, "reason": "", "selector": {}}
    return {
        "cause": cause.kind.value,
        "affinity": cause.affinity.value if cause.affinity is not None else None,
        "reason": cause.describe(),
        "scheduler_message": cause.message,
        "selector": dict(cause.selector),
    }


def _single_text(intent: NotificationIntent, env_name: str) -> str:
    lines = [
        _HEADLINES[intent.kind],
        f"env: {env_name}",
        f"pod: {intent.ref}",
    ]
    cause = intent.cause
    if intent.kind is MessageKind.RESOLVED:
        lines.append("status: deleted" if intent.deleted else "status: scheduled")
        if cause is not None:
            lines.append(f"previous cause: {cause.describe()}")
        return "\n".join(lines)

    if cause is not None:
        lines.append(f"cause: {cause.describe()}")
        if cause.message and cause.message != cause.describe():
            lines.append(f"scheduler: {cause.message}")
    return "\n".join(lines)


def _batch_text(subjects: Sequence[NotificationIntent], env_name: str) -> str:
    shown = subjects[:_BATCH_LIST_LIMIT]
    lines = [
        f"⚠️ Found {len(subjects)} unschedulable pod(s)",
        f"env: {env_name}",
    ]
    for intent in shown:
        reason = intent.cause.describe() if intent.cause is not None else "unknown"
        lines.append(f"• {intent.ref}: {reason}")
    if len(subjects) > len(shown):
        lines.append(f"… and {len(subjects) - len(shown)} more")
    return "\n".join(lines)


def render_message(
    subjects: Sequence[NotificationIntent],
    env_name: str,
    webhook_url: str,
    payload_format: str = "slack",
) -> OutboundMessage:
    """Render one intent, or several as a BATCH message.

    Raises:
        ValueError: if *subjects* is empty.
    """
    if not subjects:
        raise ValueError("render_message needs at least one intent")

    if len(subjects) == 1:
        intent = subjects[0]
        kind = intent.kind
        text = _single_text(intent, env_name)
        correlation_key = intent.correlation_key
    else:
        kind = MessageKind.BATCH
        text = _batch_text(subjects, env_name)
        correlation_key = "batch|" + ",".join(sorted(s.correlation_key for s in subjects))

    payload: dict[str, Any] = {"text": text}
    if payload_format == "json":
        payload.update(
            {
                "kind": kind.value,
                "env": env_name,
                "resolved": kind is MessageKind.RESOLVED,
                "pods": [
                    {
                        "namespace": s.ref.namespace,
                        "name": s.ref.name,
                        "deleted": s.deleted,
                        **_cause_fields(s),
                    }
                    for s in subjects
                ],
            }
        )
        if len(subjects) == 1:
            payload["namespace"] = subjects[0].ref.namespace
            payload["name"] = subjects[0].ref.name
            payload.update(_cause_fields(subjects[0]))

    return OutboundMessage(
        kind=kind,
        subjects=tuple(subjects),
        text=text,
        payload=payload,
        webhook_url=webhook_url,
        correlation_key=correlation_key,
    )
