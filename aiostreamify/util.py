"""Utility functions for aiostreamify."""

from __future__ import annotations

import math
from typing import Any


def to_float(value: Any) -> float | None:
    """
    Coerce a filter value to a float.

    Numeric strings are accepted. Returns None for None, booleans, NaN and anything
    that does not parse as a number.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result):
        return None
    return result


def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp value to the closed range [lower, upper]."""
    return max(lower, min(upper, value))


def format_number(value: float) -> str:
    """Format a number for an ffmpeg filter argument (2.0 -> '2', 0.125 -> '0.125')."""
    return format(value, "g")


def is_enabled(value: Any) -> bool:
    """Return True for boolean toggles set to True or to the string 'true'."""
    return value is True or value == "true"
