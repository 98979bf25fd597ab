"""Release comparator: ask GitHub whether a newer SpectraBox build exists.

Lookup order for a check:

1. ``/repos/{owner}/{repo}/releases/latest``
2. if the repository has no releases: ``/commits/HEAD`` when the local version is
   a commit hash, otherwise ``/tags`` (first tag wins)
3. if there are no tags either, report "no-releases" without an update.

Responses are cached per repository and query kind for ``cache_ttl_s``.  Every
live response (including error responses) refreshes the process-wide
rate-limit counters.  Failures surface as the typed errors in
:mod:`spectrabox.update.errors`.
"""

from __future__ import annotations

import enum
import json
import logging
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from .config import GitHubConfig
from .update.errors import (
    NetworkError,
    NotFound,
    RateLimited,
    RequestFailed,
    RequestTimeout,
)

LOGGER = logging.getLogger(__name__)

USER_AGENT = "SpectraBox-Update-Checker/1.0"
MAX_RESPONSE_BYTES = 1024 * 1024
MAX_PATH_LENGTH = 500
UNKNOWN_VERSION = "unknown"
NO_RELEASES_VERSION = "no-releases"

_NUMERIC_VERSION_RE = re.compile(r"^\d+\.\d+(\.\d+)?(-[a-zA-Z0-9.-]+)?$")
_SEMVER_SHAPE_RE = re.compile(r"^\d+\.\d+(\.\d+)?(-[\w.]+)?$")
_COMMIT_RE = re.compile(r"^[0-9a-f]{7,40}$")
_DANGEROUS_CHARS_RE = re.compile(r"[<>\"'&;|`$(){}\[\]\\]")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")


# ---------------------------------------------------------------------------
# Version comparison
# ---------------------------------------------------------------------------


class VersionKind(enum.StrEnum):
    semver = "semver"
    commit = "commit"
    unknown = "unknown"


def classify_version(version: str) -> VersionKind:
    """Classify *version* by shape.  ``"v1.0.0"`` is neither semver nor commit."""
    if _SEMVER_SHAPE_RE.match(version):
        return VersionKind.semver
    if "." not in version and _COMMIT_RE.match(version):
        return VersionKind.commit
    return VersionKind.unknown


def _is_dotted_numeric(version: str) -> bool:
    return bool(_NUMERIC_VERSION_RE.match(version))


def _numeric_parts(version: str) -> list[int]:
    return [int(part) for part in version.split("-", 1)[0].split(".")]


def compare_versions(local: str, remote: str) -> bool:
    """Return True when *remote* should be treated as newer than *local*."""
    if local == UNKNOWN_VERSION:
        return True
    clean_local = local.removeprefix("v")
    clean_remote = remote.removeprefix("v")
    if clean_local == clean_remote:
        return False
    if _is_dotted_numeric(clean_local) and _is_dotted_numeric(clean_remote):
        local_parts = _numeric_parts(clean_local)
        remote_parts = _numeric_parts(clean_remote)
        for i in range(max(len(local_parts), len(remote_parts))):
            lp = local_parts[i] if i < len(local_parts) else 0
            rp = remote_parts[i] if i < len(remote_parts) else 0
            if rp != lp:
                return rp > lp
        return False
    return clean_local != clean_remote


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RateLimitState:
    remaining: int | None = None
    reset_time: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"remaining": self.remaining, "resetTime": self.reset_time}


@dataclass(frozen=True, slots=True)
class RemoteInfo:
    version: str
    name: str = ""
    published_at: str = ""
    url: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "version": self.version,
            "name": self.name,
            "publishedAt": self.published_at,
            "url": self.url,
        }


@dataclass(frozen=True, slots=True)
class ReleaseInfo:
    """Outcome of one update check."""

    update_available: bool
    local_version: str
    remote_version: str
    comparison_method: str
    repository_url: str
    last_checked: str
    remote_info: RemoteInfo | None = None
    rate_limit: RateLimitState = field(default_factory=RateLimitState)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "updateAvailable": self.update_available,
            "localVersion": self.local_version,
            "remoteVersion": self.remote_version,
            "comparisonMethod": self.comparison_method,
            "repositoryUrl": self.repository_url,
            "lastChecked": self.last_checked,
            "remoteInfo": self.remote_info.to_dict() if self.remote_info else None,
            "rateLimitInfo": self.rate_limit.to_dict(),
        }
        if self.message:
            out["message"] = self.message
        return out

    def update_info(self) -> dict[str, Any]:
        """The ``updateInfo`` block of the check/execute responses."""
        return {
            "comparisonMethod": self.comparison_method,
            "repositoryUrl": self.repository_url,
            "lastChecked": self.last_checked,
            "remoteInfo": self.remote_info.to_dict() if self.remote_info else None,
        }


# ---------------------------------------------------------------------------
# Response cache
# ---------------------------------------------------------------------------


class ResponseCache:
    """TTL cache of parsed upstream responses; stale entries read as absent."""

    def __init__(self, ttl_s: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_s = ttl_s
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        data, timestamp = entry
        if self._clock() - timestamp >= self._ttl_s:
            return None
        return data

    def set(self, key: str, data: Any) -> None:
        with self._lock:
            self._entries[key] = (data, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Sanitisation
# ---------------------------------------------------------------------------


def sanitize_string(value: Any, max_length: int = 100) -> str:
    if not isinstance(value, str):
        return ""
    cleaned = _CONTROL_CHARS_RE.sub("", _DANGEROUS_CHARS_RE.sub("", value)).strip()
    return cleaned[:max_length]


def sanitize_url(value: Any) -> str:
    """Keep only HTTPS URLs on a github.com host."""
    if not isinstance(value, str):
        return ""
    try:
        parsed = urlparse(value)
    except ValueError:
        return ""
    host = parsed.hostname or ""
    if parsed.scheme != "https" or not (host == "github.com" or host.endswith(".github.com")):
        return ""
    return value


def validate_api_path(path: str) -> None:
    if not path or not isinstance(path, str):
        raise RequestFailed(details="Invalid API path provided")
    if not path.startswith("/") or ".." in path or "\\" in path:
        raise RequestFailed(details=f"Invalid API path format: {path[:100]}")
    if len(path) > MAX_PATH_LENGTH:
        raise RequestFailed(details="API path too long")


def _parse_reset_header(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), UTC).isoformat()
    except (ValueError, OverflowError, OSError):
        return None


def _parse_remaining_header(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# GitHub client
# ---------------------------------------------------------------------------


class GitHubReleaseClient:
    """Blocking GitHub client; call from a worker thread inside the event loop."""

    def __init__(
        self,
        config: GitHubConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._cache = ResponseCache(config.cache_ttl_s, clock=clock)
        self._rate_limit = RateLimitState()
        self._rate_lock = threading.Lock()

    @property
    def repository_url(self) -> str:
        return self._config.repository_url

    def rate_limit_info(self) -> dict[str, Any]:
        return self._rate_limit.to_dict()

    def clear_cache(self) -> None:
        self._cache.clear()
        LOGGER.debug("GitHub response cache cleared")

    # -- HTTP ----------------------------------------------------------------

    def _api_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        }
        if self._config.token:
            headers["Authorization"] = f"Bearer {self._config.token}"
        return headers

    def _record_rate_limit(self, headers: Any) -> None:
        if headers is None:
            return
        state = RateLimitState(
            remaining=_parse_remaining_header(headers.get("X-RateLimit-Remaining")),
            reset_time=_parse_reset_header(headers.get("X-RateLimit-Reset")),
        )
        with self._rate_lock:
            self._rate_limit = state

    def _api_get(self, path: str) -> Any:
        validate_api_path(path)
        url = f"{self._config.api_url}{path}"
        parsed = urlparse(url)
        if parsed.scheme != "https" or parsed.hostname != self._config.api_host:
            raise RequestFailed(details=f"Refusing request to unexpected host: {url}")

        req = Request(url, headers=self._api_headers())
        try:
            with urlopen(req, timeout=self._config.request_timeout_s) as resp:  # noqa: S310
                self._record_rate_limit(resp.headers)
                raw = resp.read(MAX_RESPONSE_BYTES + 1)
        except HTTPError as exc:
            self._record_rate_limit(exc.headers)
            raise self._classify_http_error(exc, path) from exc
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise RequestTimeout(details="GitHub API request timed out") from exc
            raise NetworkError(details=f"GitHub API request failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise RequestTimeout(details="GitHub API request timed out") from exc
        except OSError as exc:
            raise NetworkError(details=f"GitHub API request failed: {exc}") from exc

        if len(raw) > MAX_RESPONSE_BYTES:
            raise RequestFailed(details="GitHub API response too large")
        if not raw:
            raise RequestFailed(details="Empty response from GitHub API")
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RequestFailed(details=f"Failed to parse GitHub API response: {exc}") from exc
        if not isinstance(data, (dict, list)):
            raise RequestFailed(details="Invalid response format from GitHub API")
        return data

    def _classify_http_error(self, exc: HTTPError, path: str) -> Exception:
        try:
            body = exc.read(2048).decode("utf-8", errors="replace")
        except Exception:
            body = ""
        code = exc.code
        if code == 404:
            return NotFound(details=f"Repository or resource not found: {path}")
        remaining = self._rate_limit.remaining
        if code == 429 or (code == 403 and (remaining == 0 or "rate limit" in body.lower())):
            return RateLimited(details="GitHub API rate limit exceeded")
        if code == 403:
            return RequestFailed(details="GitHub API access forbidden")
        return RequestFailed(
            details=f"GitHub API request failed with status {code}: {body[:200]}"
        )

    def _cached_get(self, kind: str, path: str, parse: Callable[[Any], Any]) -> Any:
        key = f"{kind}:{self._config.owner}/{self._config.repository}"
        cached = self._cache.get(key)
        if cached is not None:
            LOGGER.debug("Returning cached %s data", kind)
            return cached
        result = parse(self._api_get(path))
        self._cache.set(key, result)
        return result

    # -- queries -------------------------------------------------------------

    def _repo_path(self, suffix: str) -> str:
        return f"/repos/{self._config.owner}/{self._config.repository}/{suffix}"

    def get_latest_release(self) -> RemoteInfo:
        def _parse(data: Any) -> RemoteInfo:
            if not isinstance(data, dict) or not data.get("tag_name"):
                raise RequestFailed(details="Unexpected GitHub release response format")
            return RemoteInfo(
                version=sanitize_string(data.get("tag_name"), 50),
                name=sanitize_string(data.get("name"), 100),
                published_at=sanitize_string(data.get("published_at"), 30),
                url=sanitize_url(data.get("html_url")),
            )

        info = self._cached_get("latest-release", self._repo_path("releases/latest"), _parse)
        LOGGER.info("Latest release: %s (published %s)", info.version, info.published_at)
        return info

    def get_latest_commit(self) -> dict[str, str]:
        def _parse(data: Any) -> dict[str, str]:
            if not isinstance(data, dict) or not isinstance(data.get("sha"), str):
                raise RequestFailed(details="Unexpected GitHub commit response format")
            sha = sanitize_string(data["sha"], 40)
            commit = data.get("commit") or {}
            author = commit.get("author") or {}
            message = commit.get("message")
            subject = message.splitlines()[0] if isinstance(message, str) and message else ""
            return {
                "sha": sha,
                "shortSha": sha[:7],
                "message": sanitize_string(subject, 200),
                "date": sanitize_string(author.get("date"), 30),
                "url": sanitize_url(data.get("html_url")),
            }

        return self._cached_get("latest-commit", self._repo_path("commits/HEAD"), _parse)

    def get_latest_tag(self) -> str | None:
        def _parse(data: Any) -> dict[str, str]:
            if not isinstance(data, list):
                raise RequestFailed(details="Unexpected GitHub tags response format")
            for entry in data:
                if isinstance(entry, dict):
                    name = sanitize_string(entry.get("name"), 50)
                    if name:
                        return {"name": name}
            return {"name": ""}

        tag = self._cached_get("tags", self._repo_path("tags?per_page=10"), _parse)
        return tag["name"] or None

    def check_for_updates(self, local_version: str) -> ReleaseInfo:
        """Compare *local_version* with upstream.  Raises typed upstream errors."""
        LOGGER.info("Checking for updates (local=%s)", local_version)
        try:
            release = self.get_latest_release()
        except NotFound:
            LOGGER.info("No GitHub releases found for %s", self.repository_url)
            return self._check_without_release(local_version)
        result = self._result(
            local_version,
            remote_version=release.version,
            method="release",
            update_available=compare_versions(local_version, release.version),
            remote_info=release,
        )
        self._log_result(result)
        return result

    def _check_without_release(self, local_version: str) -> ReleaseInfo:
        if classify_version(local_version) is VersionKind.commit:
            commit = self.get_latest_commit()
            available = local_version not in (commit["sha"], commit["shortSha"])
            result = self._result(
                local_version,
                remote_version=commit["shortSha"],
                method="commit",
                update_available=available,
                remote_info=RemoteInfo(
                    version=commit["shortSha"],
                    name=commit["message"],
                    published_at=commit["date"],
                    url=commit["url"],
                ),
            )
            self._log_result(result)
            return result

        tag = self.get_latest_tag()
        if tag is None:
            return self._result(
                local_version,
                remote_version=NO_RELEASES_VERSION,
                method="none",
                update_available=False,
                message="No GitHub releases found. Update checks require tagged releases.",
            )
        result = self._result(
            local_version,
            remote_version=tag,
            method="tag",
            update_available=compare_versions(local_version, tag),
            remote_info=RemoteInfo(version=tag, url=f"{self.repository_url}/releases/tag/{tag}"),
        )
        self._log_result(result)
        return result

    def _result(
        self,
        local_version: str,
        *,
        remote_version: str,
        method: str,
        update_available: bool,
        remote_info: RemoteInfo | None = None,
        message: str = "",
    ) -> ReleaseInfo:
        return ReleaseInfo(
            update_available=update_available,
            local_version=local_version,
            remote_version=remote_version,
            comparison_method=method,
            repository_url=self.repository_url,
            last_checked=datetime.now(UTC).isoformat(),
            remote_info=remote_info,
            rate_limit=self._rate_limit,
            message=message,
        )

    @staticmethod
    def _log_result(result: ReleaseInfo) -> None:
        LOGGER.info(
            "Update check completed: available=%s local=%s remote=%s method=%s",
            result.update_available,
            result.local_version,
            result.remote_version,
            result.comparison_method,
        )
