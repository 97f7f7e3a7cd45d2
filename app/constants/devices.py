"""
Device limit bounds.

The Panel enforces the limit via the client's limitIp field; locally the value
is always kept inside [MIN_DEVICE_LIMIT, MAX_DEVICE_LIMIT], whatever any
external system reports.
"""
import math
from typing import Any

MIN_DEVICE_LIMIT = 1
MAX_DEVICE_LIMIT = 6


def clamp_device_limit(value: Any) -> int:
    """Floor to an integer and clamp into range; garbage clamps to the minimum."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return MIN_DEVICE_LIMIT
    if not math.isfinite(number):
        return MIN_DEVICE_LIMIT
    return max(MIN_DEVICE_LIMIT, min(MAX_DEVICE_LIMIT, math.floor(number)))
