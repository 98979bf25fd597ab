"""Tests for the live-update wire messages."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from spectrabox.update.models import UpdateState, UpdateStatus
from spectrabox.ws_models import (
    HEALTH_ENDPOINT,
    STATUS_ENDPOINT,
    UpdateStatusMessage,
    connected_message,
    server_shutdown_message,
    update_status_message,
)


def test_update_status_message_omits_absent_error() -> None:
    state = UpdateState(status=UpdateStatus.updating, message="Installing", progress=50,
                        timestamp=123)
    msg = update_status_message(state)
    assert msg == {
        "type": "updateStatus",
        "status": "updating",
        "message": "Installing",
        "progress": 50,
        "timestamp": 123,
    }


def test_update_status_message_carries_error_and_troubleshooting() -> None:
    state = UpdateState(
        status=UpdateStatus.error,
        message="Update failed",
        progress=25,
        timestamp=5,
        error="disk space",
        troubleshooting={"canRetry": True, "suggestedActions": ["Free space"]},
    )
    msg = update_status_message(state)
    assert msg["error"] == "disk space"
    assert msg["troubleshooting"] == {"canRetry": True, "suggestedActions": ["Free space"]}


def test_progress_out_of_range_rejected() -> None:
    with pytest.raises(ValidationError):
        UpdateStatusMessage(status="updating", message="x", progress=101, timestamp=1)


def test_server_shutdown_message() -> None:
    msg = server_shutdown_message(expected_downtime_s=30, retry_interval_ms=2000, max_attempts=10)
    assert msg["type"] == "serverShutdown"
    assert msg["expectedDowntime"] == 30_000
    instructions = msg["reconnectInstructions"]
    assert instructions["healthEndpoint"] == HEALTH_ENDPOINT
    assert instructions["statusEndpoint"] == STATUS_ENDPOINT
    assert instructions["retryIntervalMs"] == 2000
    assert instructions["maxAttempts"] == 10
    assert instructions["message"]
    assert isinstance(msg["timestamp"], int)


def test_connected_message_embeds_current_status() -> None:
    msg = connected_message(UpdateState(timestamp=9))
    assert msg["type"] == "connected"
    assert msg["status"]["type"] == "updateStatus"
    assert msg["status"]["status"] == "idle"
    assert msg["status"]["timestamp"] == 9


def test_update_status_message_mirrors_status_payload() -> None:
    state = UpdateState(
        status=UpdateStatus.error,
        message="Update timed out",
        progress=40,
        timestamp=77,
        started_at=1700000000.5,
        error="Update timed out",
        error_code="UPDATE_TIMEOUT",
        troubleshooting={"canRetry": True, "suggestedActions": ["Retry"]},
    )
    msg = update_status_message(state)
    expected = {k: v for k, v in state.to_dict().items() if v is not None}
    assert {k: v for k, v in msg.items() if k != "type"} == expected
    assert msg["startedAt"] == 1700000000.5
    assert msg["errorCode"] == "UPDATE_TIMEOUT"
