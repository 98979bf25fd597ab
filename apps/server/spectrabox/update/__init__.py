"""Update subsystem: state tracking, script supervision and error taxonomy."""

from .errors import (
    InitiationError,
    NetworkError,
    NotFound,
    NoUpdateAvailable,
    RateLimited,
    RequestFailed,
    RequestTimeout,
    ScriptFailed,
    ScriptMissing,
    ScriptTimedOut,
    UpdateError,
    UpdateInProgress,
    UpstreamError,
)
from .models import ExecuteResult, UpdateState, UpdateStatus
from .runner import UpdateScriptSupervisor
from .tracker import UpdateStatusTracker

__all__ = [
    "InitiationError",
    "ExecuteResult",
    "NetworkError",
    "NoUpdateAvailable",
    "NotFound",
    "RateLimited",
    "RequestFailed",
    "RequestTimeout",
    "ScriptFailed",
    "ScriptMissing",
    "ScriptTimedOut",
    "UpdateError",
    "UpdateInProgress",
    "UpdateScriptSupervisor",
    "UpdateState",
    "UpdateStatus",
    "UpdateStatusTracker",
    "UpstreamError",
]
