from __future__ import annotations

import logging
import os
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

SERVER_DIR = Path(__file__).resolve().parents[1]
"""Root of the ``apps/server/`` package tree."""

LOGGER = logging.getLogger(__name__)

PRODUCTION_PROFILE = "production"
VALID_PROFILES: set[str] = {"production", "development", "test"}

DEFAULT_CONFIG: dict[str, Any] = {
    "server": {"host": "0.0.0.0", "port": 3000},
    "version": {
        "file_path": "Version.txt",
        "max_length": 50,
        "cache_seconds": 60,
    },
    "github": {
        "owner": "mattstegner",
        "repository": "SpectraBox",
        "api_url": "https://api.github.com",
        "token": "",
        "cache_ttl_s": 300,
        "request_timeout_s": 10,
    },
    "update": {
        "profile": PRODUCTION_PROFILE,
        "script_path": "scripts/spectrabox-kiosk-install.sh",
        "use_sudo": True,
        "overall_timeout_s": 15 * 60,
        "stall_timeout_s": 5 * 60,
        "expected_downtime_s": 60,
        "success_reset_s": 60,
        "sandbox_delay_s": 2.0,
    },
    "websocket": {
        "send_timeout_s": 0.5,
        "queue_size": 64,
        "reconnect_interval_ms": 2000,
        "reconnect_max_attempts": 10,
    },
}


def documented_default_config() -> dict[str, Any]:
    """Return runtime defaults in the shape documented by config.example.yaml."""
    return deepcopy(DEFAULT_CONFIG)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _resolve_config_path(path_text: str, config_path: Path) -> Path:
    path = Path(path_text)
    if path.is_absolute():
        return path
    return config_path.resolve().parent / path


@dataclass(slots=True)
class ServerConfig:
    host: str
    port: int

    def __post_init__(self) -> None:
        if not isinstance(self.port, int) or not (1 <= self.port <= 65535):
            raise ValueError(f"ServerConfig.port must be 1-65535, got {self.port!r}")


@dataclass(slots=True)
class VersionConfig:
    file_path: Path
    max_length: int
    cache_seconds: float

    def __post_init__(self) -> None:
        if not isinstance(self.max_length, int) or self.max_length < 1:
            LOGGER.warning("version.max_length=%s is invalid; using 50", self.max_length)
            object.__setattr__(self, "max_length", 50)
        if self.cache_seconds < 0:
            object.__setattr__(self, "cache_seconds", 0.0)


@dataclass(slots=True)
class GitHubConfig:
    owner: str
    repository: str
    api_url: str
    token: str
    cache_ttl_s: float
    request_timeout_s: float

    def __post_init__(self) -> None:
        if not self.owner or not self.repository:
            raise ValueError("github.owner and github.repository must be non-empty")
        parsed = urlparse(self.api_url)
        if parsed.scheme != "https" or not parsed.hostname:
            raise ValueError(f"github.api_url must be an https URL, got {self.api_url!r}")
        if self.cache_ttl_s < 0:
            LOGGER.warning("github.cache_ttl_s=%s is negative; clamped to 0", self.cache_ttl_s)
            object.__setattr__(self, "cache_ttl_s", 0.0)
        if self.request_timeout_s <= 0:
            LOGGER.warning(
                "github.request_timeout_s=%s is not positive; using 10", self.request_timeout_s
            )
            object.__setattr__(self, "request_timeout_s", 10.0)

    @property
    def api_host(self) -> str:
        return urlparse(self.api_url).hostname or ""

    @property
    def repository_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repository}"


@dataclass(slots=True)
class UpdateConfig:
    profile: str
    script_path: Path
    use_sudo: bool
    overall_timeout_s: float
    stall_timeout_s: float
    expected_downtime_s: int
    success_reset_s: float
    sandbox_delay_s: float

    def __post_init__(self) -> None:
        if self.profile not in VALID_PROFILES:
            raise ValueError(
                f"update.profile must be one of {sorted(VALID_PROFILES)}, got {self.profile!r}"
            )
        _POS_FIELDS = ("overall_timeout_s", "stall_timeout_s")
        for field_name in _POS_FIELDS:
            val = getattr(self, field_name)
            if val <= 0:
                raise ValueError(f"update.{field_name} must be positive, got {val!r}")
        if self.stall_timeout_s > self.overall_timeout_s:
            LOGGER.warning(
                "update.stall_timeout_s=%s exceeds overall_timeout_s=%s; stall detection "
                "will never fire",
                self.stall_timeout_s,
                self.overall_timeout_s,
            )
        if self.expected_downtime_s < 0:
            object.__setattr__(self, "expected_downtime_s", 0)
        if self.sandbox_delay_s < 0:
            object.__setattr__(self, "sandbox_delay_s", 0.0)

    @property
    def sandboxed(self) -> bool:
        return self.profile != PRODUCTION_PROFILE


@dataclass(slots=True)
class WebSocketConfig:
    send_timeout_s: float
    queue_size: int
    reconnect_interval_ms: int
    reconnect_max_attempts: int

    def __post_init__(self) -> None:
        if not isinstance(self.queue_size, int) or self.queue_size < 1:
            object.__setattr__(self, "queue_size", max(1, int(self.queue_size or 1)))
        if self.send_timeout_s <= 0:
            object.__setattr__(self, "send_timeout_s", 0.5)
        if self.reconnect_max_attempts < 1:
            object.__setattr__(self, "reconnect_max_attempts", 1)


@dataclass(slots=True)
class AppConfig:
    server: ServerConfig
    version: VersionConfig
    github: GitHubConfig
    update: UpdateConfig
    websocket: WebSocketConfig
    config_path: Path


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a YAML object at the top level.")
        return data


def _env_overrides() -> dict[str, Any]:
    override: dict[str, Any] = {}
    profile = os.environ.get("SPECTRABOX_ENV")
    if profile:
        override.setdefault("update", {})["profile"] = profile.strip().lower()
    script = os.environ.get("SPECTRABOX_UPDATE_SCRIPT")
    if script:
        override.setdefault("update", {})["script_path"] = script
    version_file = os.environ.get("SPECTRABOX_VERSION_FILE")
    if version_file:
        override.setdefault("version", {})["file_path"] = version_file
    token = os.environ.get("GITHUB_TOKEN")
    if token:
        override.setdefault("github", {})["token"] = token
    return override


def load_config(config_path: Path | None = None) -> AppConfig:
    path = config_path or (SERVER_DIR / "config.yaml")
    path = path.resolve()
    override = _read_config_file(path)
    merged = _deep_merge(DEFAULT_CONFIG, override)
    merged = _deep_merge(merged, _env_overrides())

    server_port = int(merged["server"]["port"])
    if not 1 <= server_port <= 65535:
        raise ValueError(f"server.port must be 1-65535, got {server_port}")

    version_cfg = merged["version"]
    github_cfg = merged["github"]
    update_cfg = merged["update"]
    ws_cfg = merged["websocket"]
    app_config = AppConfig(
        server=ServerConfig(
            host=str(merged["server"]["host"]),
            port=server_port,
        ),
        version=VersionConfig(
            file_path=_resolve_config_path(str(version_cfg["file_path"]), path),
            max_length=int(version_cfg.get("max_length", 50)),
            cache_seconds=float(version_cfg.get("cache_seconds", 60)),
        ),
        github=GitHubConfig(
            owner=str(github_cfg["owner"]).strip(),
            repository=str(github_cfg["repository"]).strip(),
            api_url=str(github_cfg["api_url"]).rstrip("/"),
            token=str(github_cfg.get("token") or ""),
            cache_ttl_s=float(github_cfg.get("cache_ttl_s", 300)),
            request_timeout_s=float(github_cfg.get("request_timeout_s", 10)),
        ),
        update=UpdateConfig(
            profile=str(update_cfg["profile"]).strip().lower(),
            script_path=_resolve_config_path(str(update_cfg["script_path"]), path),
            use_sudo=bool(update_cfg.get("use_sudo", True)),
            overall_timeout_s=float(update_cfg["overall_timeout_s"]),
            stall_timeout_s=float(update_cfg["stall_timeout_s"]),
            expected_downtime_s=int(update_cfg.get("expected_downtime_s", 60)),
            success_reset_s=float(update_cfg.get("success_reset_s", 60)),
            sandbox_delay_s=float(update_cfg.get("sandbox_delay_s", 2.0)),
        ),
        websocket=WebSocketConfig(
            send_timeout_s=float(ws_cfg.get("send_timeout_s", 0.5)),
            queue_size=int(ws_cfg.get("queue_size", 64)),
            reconnect_interval_ms=int(ws_cfg.get("reconnect_interval_ms", 2000)),
            reconnect_max_attempts=int(ws_cfg.get("reconnect_max_attempts", 10)),
        ),
        config_path=path,
    )
    LOGGER.info(
        "Loaded config=%s profile=%s version_file=%s update_script=%s repo=%s/%s",
        app_config.config_path,
        app_config.update.profile,
        app_config.version.file_path,
        app_config.update.script_path,
        app_config.github.owner,
        app_config.github.repository,
    )
    return app_config
