"""Health check endpoint, polled by clients waiting for the restart."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter

from ..api_models import HealthResponse
from ._helpers import iso_now

if TYPE_CHECKING:
    from ..app import RuntimeState


def create_health_routes(state: RuntimeState) -> APIRouter:
    router = APIRouter()

    @router.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return {
            "status": "OK",
            "message": "SpectraBox server is running",
            "performance": state.performance.snapshot(),
            "timestamp": iso_now(),
        }

    return router
