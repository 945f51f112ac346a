"""Pydantic response models for the health API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Liveness: the process is up and its event loop answers."""

    status: str = "ok"
    version: str


class ReadinessResponse(BaseModel):
    """Readiness: the first full pod sync completed and the watch is up."""

    ready: bool
    tracked_pods: int = Field(ge=0)
    inbox_backlog: int = Field(ge=0)
    queued_deliveries: int = Field(default=0, ge=0)
    in_flight_deliveries: int = Field(default=0, ge=0)
