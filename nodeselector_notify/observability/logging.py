"""Structured logging configuration using structlog.

JSON lines go to stderr so that a cluster log shipper can pick them up;
``console`` output is meant for running the watcher from a laptop against
a kubeconfig context.
"""

from __future__ import annotations

import logging
import sys

import structlog

_RENDERERS = {
    "json": structlog.processors.JSONRenderer,
    "console": structlog.dev.ConsoleRenderer,
}


def setup_logging(level: str = "info", fmt: str = "json", env_name: str = "") -> None:
    """Configure structlog and bind process-wide context.

    Args:
        level:    Minimum level name (debug, info, warning, error).
        fmt:      ``json`` or ``console``.
        env_name: Cluster/environment label added to every log line.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    renderer = _RENDERERS.get(fmt, structlog.processors.JSONRenderer)()
    # console renderer formats tracebacks itself
    tracebacks = [structlog.processors.format_exc_info] if fmt != "console" else []

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            *tracebacks,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if env_name:
        structlog.contextvars.bind_contextvars(env=env_name)


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with a component name."""
    return structlog.get_logger(component=component)  # type: ignore[return-value]
