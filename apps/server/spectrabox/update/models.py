"""Data models for the update subsystem."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class UpdateStatus(enum.StrEnum):
    idle = "idle"
    checking = "checking"
    updating = "updating"
    success = "success"
    error = "error"


TERMINAL_STATUSES: frozenset[UpdateStatus] = frozenset({UpdateStatus.success, UpdateStatus.error})


@dataclass
class UpdateState:
    status: UpdateStatus = UpdateStatus.idle
    message: str = "No update in progress"
    progress: int = 0
    started_at: float | None = None
    timestamp: int = 0
    error: str | None = None
    error_code: str | None = None
    troubleshooting: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "status": self.status.value,
            "message": self.message,
            "progress": self.progress,
            "timestamp": self.timestamp,
            "startedAt": self.started_at,
        }
        if self.error is not None:
            out["error"] = self.error
        if self.error_code is not None:
            out["errorCode"] = self.error_code
        if self.troubleshooting is not None:
            out["troubleshooting"] = self.troubleshooting
        return out


# ---------------------------------------------------------------------------
# Supervisor event stream
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OutputEvent:
    """A chunk of standard output; *progress* is ``None`` when no phrase matched."""

    message: str
    progress: int | None = None


@dataclass(frozen=True, slots=True)
class ErrorOutputEvent:
    """A chunk of standard error (accumulated, reported on failure)."""

    text: str


@dataclass(frozen=True, slots=True)
class ExitEvent:
    returncode: int


@dataclass(frozen=True, slots=True)
class TimeoutEvent:
    kind: str
    message: str


@dataclass(frozen=True, slots=True)
class StreamErrorEvent:
    message: str


SupervisorEvent = OutputEvent | ErrorOutputEvent | ExitEvent | TimeoutEvent | StreamErrorEvent


@dataclass
class ExecuteResult:
    current_version: str
    latest_version: str
    update_info: dict[str, Any] = field(default_factory=dict)
