"""JSON helpers shared by the notification hub and the API layer."""

from __future__ import annotations

import json
import math
from typing import Any

__all__ = ["dumps_compact", "sanitize_for_json"]


def sanitize_for_json(obj: Any) -> tuple[Any, bool]:
    """Recursively replace non-finite floats (NaN, Inf, -Inf) with ``None``.

    Returns the sanitised object and whether any non-finite value was found.
    """
    found_non_finite = False

    def _walk(v: Any) -> Any:
        nonlocal found_non_finite
        if isinstance(v, float):
            if math.isfinite(v):
                return v
            found_non_finite = True
            return None
        if isinstance(v, dict):
            return {k: _walk(val) for k, val in v.items()}
        if isinstance(v, (list, tuple)):
            return [_walk(item) for item in v]
        return v

    return _walk(obj), found_non_finite


def dumps_compact(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), allow_nan=False)
