from __future__ import annotations

import math
import re
from typing import Any

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def coerce_bool(value: Any, *, default: bool = False) -> bool:
    """Coerce a loosely-typed value into a boolean.

    This is used for user-authored config (YAML/env) where values may arrive as
    strings like "false"/"0". We treat unknown strings as the provided default
    to avoid the common pitfall where bool("false") == True.
    """
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, float):
        if math.isnan(value):
            return bool(default)
        return value != 0.0
    if isinstance(value, str):
        s = value.strip().lower()
        if not s:
            return bool(default)
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
        try:
            return int(s) != 0
        except Exception:
            return bool(default)
    return bool(value)


def coerce_int(value: Any, *, default: int, min_value: int = 0, max_value: int = 1 << 31) -> int:
    try:
        n = int(value)
    except Exception:
        n = int(default)
    if n < min_value:
        n = min_value
    if n > max_value:
        n = max_value
    return n


def coerce_seconds(value: Any, *, default: float) -> float:
    """Parse a duration given as seconds (30, 2.5) or with a unit suffix (500ms, 30s, 1m, 2h)."""
    if value is None or isinstance(value, bool):
        return float(default)
    if isinstance(value, (int, float)):
        v = float(value)
        return v if v > 0 and not math.isnan(v) else float(default)
    m = _DURATION_RE.match(str(value))
    if not m:
        return float(default)
    unit = (m.group(2) or "s").lower()
    v = float(m.group(1)) * _DURATION_UNITS[unit]
    return v if v > 0 else float(default)
