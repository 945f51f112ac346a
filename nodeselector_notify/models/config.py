"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class WebhookConfig:
    """Outbound webhook configuration."""

    url: str = ""
    payload_format: str = "slack"
    timeout_seconds: float = 10.0


@dataclass
class TrackerConfig:
    """Debounce, re-notify and cool-down timings (seconds)."""

    debounce_seconds: float = 30.0
    renotify_interval_seconds: float = 3600.0
    cooldown_seconds: float = 300.0


@dataclass
class DeliveryConfig:
    """Retry policy and worker pool limits for webhook delivery."""

    max_retry_attempts: int = 5
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    max_concurrent_deliveries: int = 4
    max_queued_deliveries: int = 100
    batch_threshold: int = 5


@dataclass
class WatchConfig:
    """Cluster watch configuration."""

    ignored_namespaces: frozenset[str] = field(default_factory=frozenset)
    tick_interval_seconds: float = 5.0
    watch_timeout_seconds: int = 300
    resync_interval_seconds: float = 0.0


@dataclass
class HealthConfig:
    """Health endpoint configuration."""

    enabled: bool = True
    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"
    format: str = "json"


@dataclass
class NotifierConfig:
    """Top-level nodeselector-notify configuration."""

    env_name: str = "unknown"
    shutdown_grace_seconds: float = 10.0
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    log: LogConfig = field(default_factory=LogConfig)
