"""Process uptime and memory snapshot for the health endpoint."""

from __future__ import annotations

import os
import resource
import sys
import time
from pathlib import Path
from typing import Any

_STATM_PATH = Path("/proc/self/statm")


def _current_rss_bytes() -> int | None:
    try:
        fields = _STATM_PATH.read_text(encoding="ascii").split()
        return int(fields[1]) * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError):
        return None


def _peak_rss_bytes() -> int:
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is KiB on Linux, bytes on macOS.
    return peak if sys.platform == "darwin" else peak * 1024


class PerformanceMonitor:
    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._started = clock()

    def uptime_s(self) -> float:
        return round(self._clock() - self._started, 3)

    def snapshot(self) -> dict[str, Any]:
        return {
            "uptime": self.uptime_s(),
            "memory": {
                "rss": _current_rss_bytes(),
                "maxRss": _peak_rss_bytes(),
            },
        }
