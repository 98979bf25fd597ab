"""Installed-version endpoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter

from ..api_models import VersionResponse
from ._helpers import iso_now

if TYPE_CHECKING:
    from ..app import RuntimeState


def create_version_routes(state: RuntimeState) -> APIRouter:
    router = APIRouter()

    @router.get("/api/version", response_model=VersionResponse)
    async def get_version() -> VersionResponse:
        store = state.version_store
        return {
            "success": True,
            "version": store.current_version(),
            "versionFile": {"available": store.is_available(), "path": str(store.path)},
            "timestamp": iso_now(),
        }

    return router
