"""Pydantic response models for the SpectraBox HTTP API.

Field names are camelCase to match the browser client.  Error bodies are built
in :mod:`spectrabox.routes._helpers` and bypass these models.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

# ---------------------------------------------------------------------------
# Shared blocks
# ---------------------------------------------------------------------------


class RateLimitInfo(BaseModel):
    remaining: int | None = None
    resetTime: str | None = None


class RemoteInfo(BaseModel):
    version: str
    name: str = ""
    publishedAt: str = ""
    url: str = ""


class UpdateInfo(BaseModel):
    comparisonMethod: str
    repositoryUrl: str
    lastChecked: str
    remoteInfo: RemoteInfo | None = None


class Troubleshooting(BaseModel):
    canRetry: bool
    suggestedActions: list[str]


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    success: bool = False
    error: str
    message: str
    details: str | None = None
    troubleshooting: Troubleshooting | None = None


# ---------------------------------------------------------------------------
# Endpoint responses
# ---------------------------------------------------------------------------


class VersionFileInfo(BaseModel):
    available: bool
    path: str


class VersionResponse(BaseModel):
    success: bool
    version: str
    versionFile: VersionFileInfo
    timestamp: str


class UpdateCheckResponse(BaseModel):
    success: bool
    updateAvailable: bool
    currentVersion: str
    latestVersion: str
    updateInfo: UpdateInfo
    rateLimitInfo: RateLimitInfo
    message: str | None = None


class UpdateExecuteResponse(BaseModel):
    success: bool
    message: str
    currentVersion: str
    latestVersion: str
    updateInfo: UpdateInfo


class UpdateStatusResponse(BaseModel):
    success: bool
    status: str
    message: str
    progress: int
    timestamp: int
    startedAt: float | None = None
    error: str | None = None
    errorCode: str | None = None
    troubleshooting: Troubleshooting | None = None


class HealthResponse(BaseModel):
    status: str
    message: str
    performance: dict[str, Any]
    timestamp: str
