"""Health API for nodeselector-notify.

Exposes:
    create_app -- FastAPI application factory serving /healthz and /readyz.
"""

from nodeselector_notify.api.app import create_app

__all__ = ["create_app"]
