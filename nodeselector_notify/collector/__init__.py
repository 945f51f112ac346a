"""Collector package for nodeselector-notify.

Submodules
----------
pod_source -- PodEventSource: pod list + watch stream, StreamBroken on failure.
"""

from nodeselector_notify.collector.pod_source import PodEventSource, StreamBroken

__all__ = ["PodEventSource", "StreamBroken"]
