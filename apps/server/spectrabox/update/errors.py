"""Error taxonomy for the update subsystem.

Every error carries a machine-readable ``error_code``, the HTTP status the API
layer maps it to, and a plain user-facing ``message``.  The raw upstream or OS
text that caused it is kept in ``details``.  Services raise these; only
:mod:`spectrabox.routes` turns them into responses.
"""

from __future__ import annotations

from typing import Any


class UpdateError(Exception):
    """Base class for recoverable update-subsystem failures."""

    error_code: str = "UPDATE_ERROR"
    status_code: int = 500
    default_message: str = "Update operation failed"

    def __init__(self, message: str | None = None, *, details: str = "") -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(details or self.message)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class NoUpdateAvailable(UpdateError):
    """Normal no-op: the current version is already the latest."""

    error_code = "NO_UPDATE_AVAILABLE"
    status_code = 400
    default_message = "No update is available. Current version is up to date."

    def __init__(self, current_version: str, latest_version: str) -> None:
        super().__init__()
        self.current_version = current_version
        self.latest_version = latest_version


class UpdateInProgress(UpdateError):
    error_code = "UPDATE_IN_PROGRESS"
    status_code = 409
    default_message = "An update is already in progress. Please wait for it to complete."


# -- upstream (release comparator) -------------------------------------------


class UpstreamError(UpdateError):
    """Base for failures talking to the release API."""


class NotFound(UpstreamError):
    error_code = "REPOSITORY_NOT_FOUND"
    status_code = 404
    default_message = "Repository not found or not accessible"


class RateLimited(UpstreamError):
    error_code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "GitHub API rate limit exceeded. Please try again later."


class RequestTimeout(UpstreamError):
    error_code = "REQUEST_TIMEOUT"
    status_code = 408
    default_message = "Request to GitHub timed out. Please check your internet connection."


class NetworkError(UpstreamError):
    error_code = "NETWORK_ERROR"
    status_code = 503
    default_message = "Network error connecting to GitHub. Please check your internet connection."


class RequestFailed(UpstreamError):
    error_code = "UPDATE_CHECK_ERROR"
    status_code = 500
    default_message = "Failed to check for updates"


# -- update script (process supervisor) --------------------------------------


class ScriptMissing(UpdateError):
    """The update script is absent or not executable; raised before launch."""

    error_code = "UPDATE_SCRIPT_MISSING"
    status_code = 500
    default_message = "Update script not found or not executable"


class ScriptFailed(UpdateError):
    error_code = "UPDATE_SCRIPT_FAILED"
    default_message = "Update script failed"


class ScriptTimedOut(UpdateError):
    error_code = "UPDATE_TIMEOUT"
    default_message = "Update timed out"


class InitiationError(UpdateError):
    """Unexpected failure while starting an update."""

    error_code = "UPDATE_INITIATION_ERROR"
    default_message = "Failed to start the update process"
