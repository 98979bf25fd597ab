"""Shared route helpers: turning update errors into JSON responses."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi.responses import JSONResponse

from ..update.errors import UpdateError
from ..update.troubleshooting import troubleshooting_for_code

DEVELOPMENT_PROFILE = "development"


def iso_now() -> str:
    return datetime.now(UTC).isoformat()


def error_body(
    exc: UpdateError,
    *,
    profile: str,
    troubleshooting: bool = True,
    **extra: Any,
) -> dict[str, Any]:
    """Error payload; raw ``details`` are only exposed in development."""
    body: dict[str, Any] = {
        "success": False,
        "error": exc.error_code,
        "message": exc.message,
    }
    if profile == DEVELOPMENT_PROFILE and exc.details:
        body["details"] = exc.details
    body.update(extra)
    if troubleshooting:
        body["troubleshooting"] = troubleshooting_for_code(exc.error_code, exc.details)
    return body


def error_response(
    exc: UpdateError,
    *,
    profile: str,
    troubleshooting: bool = True,
    **extra: Any,
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc, profile=profile, troubleshooting=troubleshooting, **extra),
    )
