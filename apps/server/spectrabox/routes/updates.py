"""Update check, trigger and status endpoints."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter

from ..api_models import (
    ErrorResponse,
    UpdateCheckResponse,
    UpdateExecuteResponse,
    UpdateStatusResponse,
)
from ..update.errors import InitiationError, NoUpdateAvailable, RequestFailed, UpdateError
from ._helpers import error_response

if TYPE_CHECKING:
    from ..app import RuntimeState

LOGGER = logging.getLogger(__name__)

UPDATE_STARTED_MESSAGE = "Update process started. The server will restart automatically."

_ERROR_RESPONSES = {
    code: {"model": ErrorResponse} for code in (400, 404, 408, 409, 429, 500, 503)
}


def create_update_routes(state: RuntimeState) -> APIRouter:
    router = APIRouter()
    manager = state.update_manager

    def _profile() -> str:
        return state.config.update.profile

    @router.get(
        "/api/update/check",
        response_model=UpdateCheckResponse,
        responses=_ERROR_RESPONSES,
    )
    async def check_for_updates() -> UpdateCheckResponse:
        try:
            info = await manager.check()
        except UpdateError as exc:
            LOGGER.warning("Update check failed: %s (%s)", exc.message, exc.details)
            return _check_error(exc)
        except Exception as exc:
            LOGGER.exception("Unexpected error during update check")
            return _check_error(RequestFailed(details=str(exc)))
        body = {
            "success": True,
            "updateAvailable": info.update_available,
            "currentVersion": info.local_version,
            "latestVersion": info.remote_version,
            "updateInfo": info.update_info(),
            "rateLimitInfo": info.rate_limit.to_dict(),
        }
        if info.message:
            body["message"] = info.message
        return body

    def _check_error(exc: UpdateError):
        return error_response(
            exc,
            profile=_profile(),
            troubleshooting=False,
            updateAvailable=False,
            currentVersion=manager.current_version(),
            latestVersion="unknown",
            rateLimitInfo=manager.rate_limit_info(),
        )

    @router.post(
        "/api/update/execute",
        response_model=UpdateExecuteResponse,
        responses=_ERROR_RESPONSES,
    )
    async def execute_update() -> UpdateExecuteResponse:
        try:
            result = await manager.execute()
        except NoUpdateAvailable as exc:
            LOGGER.info("Update rejected: %s", exc.message)
            return error_response(
                exc,
                profile=_profile(),
                currentVersion=exc.current_version,
                latestVersion=exc.latest_version,
            )
        except UpdateError as exc:
            LOGGER.warning("Update rejected: %s (%s)", exc.message, exc.details)
            return error_response(exc, profile=_profile())
        except Exception as exc:
            LOGGER.exception("Unexpected error while starting update")
            return error_response(InitiationError(details=str(exc)), profile=_profile())
        return {
            "success": True,
            "message": UPDATE_STARTED_MESSAGE,
            "currentVersion": result.current_version,
            "latestVersion": result.latest_version,
            "updateInfo": result.update_info,
        }

    @router.get(
        "/api/update/status",
        response_model=UpdateStatusResponse,
        response_model_exclude_unset=True,
    )
    async def get_update_status() -> UpdateStatusResponse:
        return {"success": True, **manager.status()}

    return router
