"""FastAPI application factory for the health endpoints.

Usage::

    from nodeselector_notify.api.app import create_app

    app = create_app(reconciler, dispatcher=dispatcher)

Used by both the production bootstrap (``nodeselector_notify.app``) and
unit tests.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from nodeselector_notify.api.routes import router

_log = structlog.get_logger(component="api.app")


def create_app(reconciler: Any, dispatcher: Any = None) -> FastAPI:
    """Create the health API.

    Args:
        reconciler: Object exposing ``ready``, ``tracker`` and ``backlog``.
        dispatcher: Optional object exposing ``queued`` and ``in_flight``.
    """
    from nodeselector_notify import __version__

    app = FastAPI(
        title="nodeselector-notify",
        summary="Unschedulable pod notifier health endpoints",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.state.reconciler = reconciler
    app.state.dispatcher = dispatcher
    app.include_router(router)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(status_code=500, content={"error": "INTERNAL_ERROR"})

    return app
