"""Read and write the installed-version marker file.

The marker is a single line (e.g. ``1.2.3``, ``v1.2``, a commit hash or a
``YYYY.MM.DD`` date).  Anything that fails validation reads as ``"unknown"``,
which the release comparator always treats as outdated.  Writes are atomic
(write-to-temp + ``os.replace``) and keep a ``.backup`` of the previous value.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

LOGGER = logging.getLogger(__name__)

UNKNOWN_VERSION = "unknown"
MAX_FILE_BYTES = 1024
DEFAULT_MAX_LENGTH = 50
DEFAULT_CACHE_SECONDS = 60.0

_VERSION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.-]+)?$"),
    re.compile(r"^v?\d+\.\d+(\.\d+)?$"),
    re.compile(r"^[a-f0-9]{7,40}$"),
    re.compile(r"^\d{4}\.\d{2}\.\d{2}$"),
    re.compile(r"^[a-zA-Z0-9.-]+$"),
)
_DANGEROUS_CHARS_RE = re.compile(r"[<>\"'&;|`$(){}\[\]\\]")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def is_valid_version(value: object, max_length: int = DEFAULT_MAX_LENGTH) -> bool:
    if not isinstance(value, str):
        return False
    version = value.strip()
    if not version or len(version) > max_length:
        return False
    if _DANGEROUS_CHARS_RE.search(version) or _CONTROL_CHARS_RE.search(version):
        return False
    if ".." in version or "/" in version:
        return False
    return any(pattern.match(version) for pattern in _VERSION_PATTERNS)


class VersionStore:
    """Cached accessor for the version marker at *path*."""

    def __init__(
        self,
        path: str | Path,
        *,
        max_length: int = DEFAULT_MAX_LENGTH,
        cache_seconds: float = DEFAULT_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._path = Path(path)
        self._max_length = max_length
        self._cache_seconds = cache_seconds
        self._clock = clock
        self._cached: str | None = None
        self._cached_at = 0.0

    @property
    def path(self) -> Path:
        return self._path

    def is_available(self) -> bool:
        return self._path.is_file() and os.access(self._path, os.R_OK)

    def clear_cache(self) -> None:
        self._cached = None
        self._cached_at = 0.0

    def current_version(self) -> str:
        if self._cached is not None and self._clock() - self._cached_at < self._cache_seconds:
            return self._cached
        version = self._read()
        self._cached = version
        self._cached_at = self._clock()
        return version

    def _read(self) -> str:
        try:
            if self._path.stat().st_size > MAX_FILE_BYTES:
                LOGGER.warning("Version file %s is too large; ignoring", self._path)
                return UNKNOWN_VERSION
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            LOGGER.warning("Version file not found: %s", self._path)
            return UNKNOWN_VERSION
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.warning("Cannot read version file %s: %s", self._path, exc)
            return UNKNOWN_VERSION

        version = raw.strip()
        if not version:
            LOGGER.warning("Version file %s is empty", self._path)
            return UNKNOWN_VERSION
        if not is_valid_version(version, self._max_length):
            LOGGER.warning("Invalid version format in %s: %r", self._path, version[:100])
            return UNKNOWN_VERSION
        LOGGER.debug("Read version %s from %s", version, self._path)
        return version

    def write_version(self, value: str) -> bool:
        """Validate and persist *value*.  Returns False instead of raising."""
        if not is_valid_version(value, self._max_length):
            LOGGER.error("Refusing to write invalid version %r", str(value)[:100])
            return False
        version = value.strip()
        tmp: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            if self._path.is_file():
                shutil.copy2(self._path, self._path.with_name(self._path.name + ".backup"))
            fd, tmp = tempfile.mkstemp(
                dir=str(self._path.parent),
                prefix=f".{self._path.name}_",
                suffix=".tmp",
            )
            try:
                os.write(fd, f"{version}\n".encode())
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(tmp, str(self._path))
        except OSError as exc:
            LOGGER.error("Failed to write version file %s: %s", self._path, exc)
            if tmp is not None:
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
            return False
        self._cached = version
        self._cached_at = self._clock()
        LOGGER.info("Version file %s updated to %s", self._path, version)
        return True
