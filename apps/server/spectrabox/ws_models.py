"""Pydantic models for the live-update WebSocket messages.

Every message is a JSON object with a ``type`` discriminator:

- ``connected``: greeting sent once to a new subscriber, with the current status
- ``updateStatus``: one tracker transition
- ``serverShutdown``: sent once right before the update script is launched
"""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, Field

from .update.models import UpdateState

HEALTH_ENDPOINT = "/api/health"
STATUS_ENDPOINT = "/api/update/status"
RECONNECT_MESSAGE = "Server is restarting to apply the update. Reconnect when it is back."


class Troubleshooting(BaseModel):
    canRetry: bool
    suggestedActions: list[str] = []


class UpdateStatusMessage(BaseModel):
    type: Literal["updateStatus"] = "updateStatus"
    status: str
    message: str
    progress: int = Field(ge=0, le=100)
    timestamp: int
    startedAt: float | None = None
    error: str | None = None
    errorCode: str | None = None
    troubleshooting: Troubleshooting | None = None


class ConnectedMessage(BaseModel):
    type: Literal["connected"] = "connected"
    message: str = "Connected to update notifications"
    status: UpdateStatusMessage
    timestamp: int


class ReconnectInstructions(BaseModel):
    message: str
    healthEndpoint: str
    statusEndpoint: str
    retryIntervalMs: int
    maxAttempts: int


class ServerShutdownMessage(BaseModel):
    type: Literal["serverShutdown"] = "serverShutdown"
    expectedDowntime: int
    """Milliseconds."""
    reconnectInstructions: ReconnectInstructions
    timestamp: int


def _now_ms() -> int:
    return int(time.time() * 1000)


def update_status_message(state: UpdateState) -> dict[str, Any]:
    msg = UpdateStatusMessage(
        status=state.status.value,
        message=state.message,
        progress=state.progress,
        timestamp=state.timestamp,
        startedAt=state.started_at,
        error=state.error,
        errorCode=state.error_code,
        troubleshooting=state.troubleshooting,
    )
    return msg.model_dump(exclude_none=True)


def connected_message(state: UpdateState) -> dict[str, Any]:
    status = UpdateStatusMessage.model_validate(update_status_message(state))
    return ConnectedMessage(status=status, timestamp=_now_ms()).model_dump(exclude_none=True)


def server_shutdown_message(
    *,
    expected_downtime_s: float,
    retry_interval_ms: int,
    max_attempts: int,
) -> dict[str, Any]:
    msg = ServerShutdownMessage(
        expectedDowntime=int(expected_downtime_s * 1000),
        reconnectInstructions=ReconnectInstructions(
            message=RECONNECT_MESSAGE,
            healthEndpoint=HEALTH_ENDPOINT,
            statusEndpoint=STATUS_ENDPOINT,
            retryIntervalMs=retry_interval_ms,
            maxAttempts=max_attempts,
        ),
        timestamp=_now_ms(),
    )
    return msg.model_dump()
