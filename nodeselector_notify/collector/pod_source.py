"""Cluster event source: pod list + watch over kubernetes-asyncio.

``PodEventSource.watch()`` is a lazy async iterator of PodEvents.  It ends
normally when the server-side watch timeout expires (the caller re-watches
from ``last_resource_version``) and raises StreamBroken on anything that
invalidates the stream: 410 Gone, other API errors, dropped connections.
Recovery (full re-list + replay) is the caller's job.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from typing import Any

import aiohttp
import structlog
from kubernetes_asyncio import watch
from kubernetes_asyncio.client.exceptions import ApiException

from nodeselector_notify.models.pods import EventKind, PodEvent, PodSnapshot, snapshot_from_raw

_log = structlog.get_logger(component="collector.pods")

_EVENT_KINDS = {kind.value: kind for kind in EventKind}

# client-side timeout is kept above the server-side watch timeout
_CLIENT_TIMEOUT_SLACK_S = 30


class StreamBroken(Exception):
    """The watch stream can no longer be resumed; a full resync is needed."""

    def __init__(self, reason: str, status: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status = status

    @property
    def expired(self) -> bool:
        """True for 410 Gone: the resource version fell out of the watch cache."""
        return self.status == 410


def _extract_rv(raw: Any) -> str:
    if not isinstance(raw, dict):
        return ""
    metadata = raw.get("metadata")
    if not isinstance(metadata, dict):
        return ""
    return str(metadata.get("resourceVersion") or "")


class PodEventSource:
    """Lists and watches pods cluster-wide.

    Args:
        api:                A ``kubernetes_asyncio.client.CoreV1Api``.
        ignored_namespaces: Namespaces whose pods are never emitted.
        watch_timeout:      Server-side watch timeout in seconds; the stream
                            ends quietly after this long.
    """

    def __init__(
        self,
        api: Any,
        ignored_namespaces: Iterable[str] = (),
        watch_timeout: int = 300,
    ) -> None:
        self._api = api
        self._ignored = frozenset(ignored_namespaces)
        self._watch_timeout = watch_timeout
        self.last_resource_version = ""

    def _wanted(self, snapshot: PodSnapshot) -> bool:
        return snapshot.ref.namespace not in self._ignored

    async def check_connectivity(self) -> None:
        """Issue a cheap list call; raises if the API server is unreachable."""
        await self._api.list_pod_for_all_namespaces(limit=1, _request_timeout=10)

    async def list_pods(self) -> tuple[list[PodSnapshot], str]:
        """Return every current pod (minus ignored namespaces) and the list RV.

        Raises:
            StreamBroken: if the list call fails.
        """
        try:
            response = await self._api.list_pod_for_all_namespaces(
                _request_timeout=self._watch_timeout,
            )
        except ApiException as exc:
            raise StreamBroken(f"list failed: {exc.reason}", status=exc.status) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise StreamBroken(f"list failed: {exc!r}") from exc

        serialize = self._api.api_client.sanitize_for_serialization
        snapshots = [snapshot_from_raw(serialize(item)) for item in response.items or []]
        snapshots = [s for s in snapshots if self._wanted(s)]

        metadata = getattr(response, "metadata", None)
        resource_version = str(getattr(metadata, "resource_version", "") or "")
        if resource_version:
            self.last_resource_version = resource_version
        _log.info("pods_listed", count=len(snapshots), resource_version=resource_version)
        return snapshots, resource_version

    async def watch(self, resource_version: str = "") -> AsyncIterator[PodEvent]:
        """Stream pod changes after *resource_version*.

        Raises:
            StreamBroken: on 410 Gone, API errors, transport failures or
                          data the watch decoder cannot parse.
        """
        rv = resource_version or self.last_resource_version
        kwargs: dict[str, Any] = {
            "timeout_seconds": self._watch_timeout,
            "allow_watch_bookmarks": True,
            "_request_timeout": self._watch_timeout + _CLIENT_TIMEOUT_SLACK_S,
        }
        if rv:
            kwargs["resource_version"] = rv

        _log.debug("watch_started", resource_version=rv)
        w = watch.Watch()
        try:
            async with w.stream(self._api.list_pod_for_all_namespaces, **kwargs) as stream:
                async for event in stream:
                    pod_event = self._convert(event)
                    if pod_event is not None:
                        yield pod_event
        except ApiException as exc:
            if exc.status == 410:
                self.last_resource_version = ""
            raise StreamBroken(f"watch failed: {exc.reason}", status=exc.status) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise StreamBroken(f"watch connection lost: {exc!r}") from exc
        except Exception as exc:
            # malformed lines and undecodable objects from the watch decoder
            raise StreamBroken(f"watch stream failed: {exc!r}") from exc
        _log.debug("watch_timeout_reached", resource_version=self.last_resource_version)

    def _convert(self, event: Any) -> PodEvent | None:
        if not isinstance(event, dict):
            _log.warning("watch_line_unparsed", line=str(event)[:200])
            return None
        event_type = str(event.get("type", ""))
        raw = event.get("raw_object")
        rv = _extract_rv(raw)

        if event_type == "BOOKMARK":
            if rv:
                self.last_resource_version = rv
            return None

        kind = _EVENT_KINDS.get(event_type)
        if kind is None or not isinstance(raw, dict):
            _log.debug("watch_event_ignored", type=event_type)
            return None

        if rv:
            self.last_resource_version = rv
        snapshot = snapshot_from_raw(raw)
        if not self._wanted(snapshot):
            return None
        return PodEvent(kind=kind, snapshot=snapshot)
