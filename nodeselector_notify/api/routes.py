"""Health routes.  Dependencies are read from ``request.app.state``."""

from __future__ import annotations

from fastapi import APIRouter, Request, Response, status

from nodeselector_notify.api.schemas import HealthResponse, ReadinessResponse

router = APIRouter()


@router.get("/healthz", response_model=HealthResponse)
async def healthz() -> HealthResponse:
    from nodeselector_notify import __version__

    return HealthResponse(version=__version__)


@router.get("/readyz", response_model=ReadinessResponse)
async def readyz(request: Request, response: Response) -> ReadinessResponse:
    """200 once the reconciler has synced, 503 before that or while the stream is down."""
    reconciler = request.app.state.reconciler
    dispatcher = request.app.state.dispatcher

    body = ReadinessResponse(
        ready=reconciler.ready,
        tracked_pods=len(reconciler.tracker),
        inbox_backlog=reconciler.backlog,
        queued_deliveries=dispatcher.queued if dispatcher is not None else 0,
        in_flight_deliveries=dispatcher.in_flight if dispatcher is not None else 0,
    )
    if not body.ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return body
