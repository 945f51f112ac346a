"""Configuration loading from environment variables.

Every option is read from ``NSNOTIFY_<NAME>``.  For compatibility with the
older deployment manifests, ``SLACK_WEBHOOK_URL``, ``ENV`` and
``IGNORED_NAMESPACES`` are honoured when the prefixed variable is unset.

Unlike a best-effort loader, any malformed or out-of-range value raises
ConfigError so that the process refuses to start.
"""

from __future__ import annotations

import math
import os
from collections.abc import Mapping
from urllib.parse import urlparse

from nodeselector_notify.models.config import (
    DeliveryConfig,
    HealthConfig,
    LogConfig,
    NotifierConfig,
    TrackerConfig,
    WatchConfig,
    WebhookConfig,
)

_PREFIX = "NSNOTIFY_"

_LEGACY_NAMES = {
    "WEBHOOK_URL": "SLACK_WEBHOOK_URL",
    "ENV": "ENV",
    "IGNORED_NAMESPACES": "IGNORED_NAMESPACES",
}


class ConfigError(ValueError):
    """Raised when the environment holds an invalid configuration."""


def _env(environ: Mapping[str, str], key: str, default: str = "") -> str:
    value = environ.get(f"{_PREFIX}{key}")
    if value is None and key in _LEGACY_NAMES:
        value = environ.get(_LEGACY_NAMES[key])
    return default if value is None else value.strip()


def _env_bool(environ: Mapping[str, str], key: str, default: bool = False) -> bool:
    val = _env(environ, key, str(default).lower()).lower()
    if val in ("true", "1", "yes"):
        return True
    if val in ("false", "0", "no"):
        return False
    raise ConfigError(f"{_PREFIX}{key} must be a boolean, got {val!r}")


def _env_int(
    environ: Mapping[str, str],
    key: str,
    default: int,
    min_val: int | None = None,
    max_val: int | None = None,
) -> int:
    raw = _env(environ, key, str(default))
    try:
        val = int(raw)
    except ValueError:
        raise ConfigError(f"{_PREFIX}{key} must be an integer, got {raw!r}") from None
    _check_range(key, val, min_val, max_val)
    return val


def _env_float(
    environ: Mapping[str, str],
    key: str,
    default: float,
    min_val: float | None = None,
    max_val: float | None = None,
) -> float:
    raw = _env(environ, key, str(default))
    try:
        val = float(raw)
    except ValueError:
        raise ConfigError(f"{_PREFIX}{key} must be a number, got {raw!r}") from None
    if math.isnan(val) or math.isinf(val):
        raise ConfigError(f"{_PREFIX}{key} must be a finite number, got {raw!r}")
    _check_range(key, val, min_val, max_val)
    return val


def _check_range(key: str, val: float, min_val: float | None, max_val: float | None) -> None:
    if min_val is not None and val < min_val:
        raise ConfigError(f"{_PREFIX}{key} must be >= {min_val}, got {val}")
    if max_val is not None and val > max_val:
        raise ConfigError(f"{_PREFIX}{key} must be <= {max_val}, got {val}")


def _validate_webhook_url(value: str) -> str:
    if not value:
        raise ConfigError(f"{_PREFIX}WEBHOOK_URL (or SLACK_WEBHOOK_URL) must be set")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError("webhook URL must be an absolute http(s) URL")
    return value


def _validate_choice(key: str, value: str, choices: set[str]) -> str:
    if value.lower() not in choices:
        raise ConfigError(f"Invalid {_PREFIX}{key}: {value}. Must be one of {sorted(choices)}")
    return value.lower()


def _parse_namespaces(value: str) -> frozenset[str]:
    return frozenset(s.strip() for s in value.split(",") if s.strip())


def load_config(environ: Mapping[str, str] | None = None) -> NotifierConfig:
    """Load configuration from NSNOTIFY_* environment variables.

    Raises:
        ConfigError: if a value is missing, malformed or out of range.
    """
    env = os.environ if environ is None else environ

    tracker = TrackerConfig(
        debounce_seconds=_env_float(env, "DEBOUNCE_SECONDS", 30.0, min_val=0.001),
        renotify_interval_seconds=_env_float(env, "RENOTIFY_INTERVAL_SECONDS", 3600.0, min_val=0.0),
        cooldown_seconds=_env_float(env, "COOLDOWN_SECONDS", 300.0, min_val=0.0),
    )
    if 0 < tracker.renotify_interval_seconds < tracker.debounce_seconds:
        raise ConfigError(
            f"{_PREFIX}RENOTIFY_INTERVAL_SECONDS must be 0 or at least the debounce window "
            f"({tracker.debounce_seconds}s)"
        )

    delivery = DeliveryConfig(
        max_retry_attempts=_env_int(env, "MAX_RETRY_ATTEMPTS", 5, min_val=1, max_val=20),
        retry_base_delay_seconds=_env_float(env, "RETRY_BASE_DELAY_SECONDS", 1.0, min_val=0.001),
        retry_max_delay_seconds=_env_float(env, "RETRY_MAX_DELAY_SECONDS", 30.0, min_val=0.001),
        max_concurrent_deliveries=_env_int(env, "MAX_CONCURRENT_DELIVERIES", 4, min_val=1, max_val=64),
        max_queued_deliveries=_env_int(env, "MAX_QUEUED_DELIVERIES", 100, min_val=1),
        batch_threshold=_env_int(env, "BATCH_THRESHOLD", 5, min_val=0),
    )
    if delivery.retry_max_delay_seconds < delivery.retry_base_delay_seconds:
        raise ConfigError(f"{_PREFIX}RETRY_MAX_DELAY_SECONDS must be >= {_PREFIX}RETRY_BASE_DELAY_SECONDS")
    if delivery.batch_threshold == 1:
        raise ConfigError(f"{_PREFIX}BATCH_THRESHOLD must be 0 (disabled) or at least 2")

    return NotifierConfig(
        env_name=_env(env, "ENV", "unknown") or "unknown",
        shutdown_grace_seconds=_env_float(env, "SHUTDOWN_GRACE_SECONDS", 10.0, min_val=0.0),
        webhook=WebhookConfig(
            url=_validate_webhook_url(_env(env, "WEBHOOK_URL")),
            payload_format=_validate_choice("PAYLOAD_FORMAT", _env(env, "PAYLOAD_FORMAT", "slack"), {"slack", "json"}),
            timeout_seconds=_env_float(env, "DELIVERY_TIMEOUT_SECONDS", 10.0, min_val=0.001),
        ),
        tracker=tracker,
        delivery=delivery,
        watch=WatchConfig(
            ignored_namespaces=_parse_namespaces(_env(env, "IGNORED_NAMESPACES")),
            tick_interval_seconds=_env_float(env, "TICK_INTERVAL_SECONDS", 5.0, min_val=0.01),
            watch_timeout_seconds=_env_int(env, "WATCH_TIMEOUT_SECONDS", 300, min_val=1),
            resync_interval_seconds=_env_float(env, "RESYNC_INTERVAL_SECONDS", 0.0, min_val=0.0),
        ),
        health=HealthConfig(
            enabled=_env_bool(env, "HEALTH_ENABLED", True),
            port=_env_int(env, "HEALTH_PORT", 8080, min_val=1024, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_choice("LOG_LEVEL", _env(env, "LOG_LEVEL", "info"), {"debug", "info", "warning", "error"}),
            format=_validate_choice("LOG_FORMAT", _env(env, "LOG_FORMAT", "json"), {"json", "console"}),
        ),
    )


def redacted(config: NotifierConfig) -> dict[str, object]:
    """Return the effective configuration as a dict with the webhook URL masked."""
    from dataclasses import asdict

    data = asdict(config)
    url = config.webhook.url
    parsed = urlparse(url)
    data["webhook"]["url"] = f"{parsed.scheme}://{parsed.netloc}/***" if parsed.netloc else "***"
    data["watch"]["ignored_namespaces"] = sorted(config.watch.ignored_namespaces)
    return data
