"""Derive user-facing troubleshooting hints from diagnostic text."""

from __future__ import annotations

from typing import Any

# (markers, can_retry, suggested actions); first matching rule wins.
_RULES: tuple[tuple[tuple[str, ...], bool, tuple[str, ...]], ...] = (
    (
        ("disk space", "no space left", "enospc"),
        True,
        (
            "Free up disk space on the device (remove old logs or recordings)",
            "Check available space with 'df -h'",
            "Retry the update once space has been freed",
        ),
    ),
    (
        ("permission denied", "eacces", "not permitted", "sudo:"),
        False,
        (
            "Ensure the service user may run the update script with sudo",
            "Check ownership and permissions of the installation directory",
            "Run the update manually from a terminal to see the full error",
        ),
    ),
    (
        ("rate limit",),
        True,
        (
            "Wait for the GitHub rate limit to reset before retrying",
            "Configure a GitHub token to raise the rate limit",
        ),
    ),
    (
        ("could not resolve", "temporary failure in name resolution", "network", "enotfound"),
        True,
        (
            "Check the device's internet connection",
            "Verify DNS settings and that github.com is reachable",
            "Retry the update when the connection is stable",
        ),
    ),
    (
        ("timed out", "timeout", "stalled"),
        True,
        (
            "Check the device's internet connection speed",
            "Retry the update; large downloads may need a faster connection",
            "Inspect the update log for the step that stopped responding",
        ),
    ),
    (
        ("could not get lock", "dpkg was interrupted", "lock held"),
        True,
        (
            "Wait for other package operations to finish",
            "Run 'sudo dpkg --configure -a' if a previous install was interrupted",
        ),
    ),
    (
        ("not found", "not executable"),
        False,
        (
            "Reinstall SpectraBox so the update script is present",
            "Verify the configured update script path",
        ),
    ),
)

_DEFAULT_ACTIONS: tuple[str, ...] = (
    "Try the update again",
    "Check the server logs for details",
    "Restart the device if the problem persists",
)


def build_troubleshooting(text: str | None, *, can_retry: bool | None = None) -> dict[str, Any]:
    """Return ``{canRetry, suggestedActions}`` for *text*.

    *can_retry* overrides the rule's retry verdict when given.
    """
    lowered = (text or "").lower()
    for markers, rule_retry, actions in _RULES:
        if any(marker in lowered for marker in markers):
            return {
                "canRetry": rule_retry if can_retry is None else can_retry,
                "suggestedActions": list(actions),
            }
    return {
        "canRetry": True if can_retry is None else can_retry,
        "suggestedActions": list(_DEFAULT_ACTIONS),
    }


def troubleshooting_for_code(error_code: str, details: str = "") -> dict[str, Any]:
    """Troubleshooting block for a synchronous API error."""
    if error_code == "NO_UPDATE_AVAILABLE":
        return {
            "canRetry": False,
            "suggestedActions": [
                "Your system is already running the latest version",
                "Check for updates again later",
            ],
        }
    if error_code == "UPDATE_IN_PROGRESS":
        return {
            "canRetry": False,
            "suggestedActions": [
                "Wait for the current update to complete",
                "Follow progress in the update status panel",
            ],
        }
    if error_code == "RATE_LIMIT_EXCEEDED":
        return build_troubleshooting("rate limit", can_retry=True)
    if error_code in ("NETWORK_ERROR", "REQUEST_TIMEOUT"):
        return build_troubleshooting(details or "network", can_retry=True)
    if error_code == "UPDATE_SCRIPT_MISSING":
        return build_troubleshooting(details or "not found", can_retry=False)
    return build_troubleshooting(details)
