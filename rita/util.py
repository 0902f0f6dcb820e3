"""General helpers: file checks, integer arithmetic and sorting."""

from __future__ import annotations

import math
import os
import stat
from collections.abc import Iterable

TIME_FORMAT = "%Y-%m-%d-T%H:%M:%S%z"
DAY_FORMAT = "%Y-%m-%d"

_INT64_SPAN = 1 << 64
_INT64_MIN = -(1 << 63)


def _wrap_int64(value: int) -> int:
    return ((value - _INT64_MIN) % _INT64_SPAN) + _INT64_MIN


def exists(path: str | os.PathLike) -> bool:
    """Return True unless the path is known not to exist."""
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return True


def is_dir(path: str | os.PathLike) -> bool:
    """Return True if the path is an existing directory."""
    try:
        info = os.stat(path)
    except OSError:
        return False
    return stat.S_ISDIR(info.st_mode)


def sort_by_string_length(strings: Iterable[str]) -> list[str]:
    """Return the strings ordered from shortest to longest."""
    return sorted(strings, key=len)


def abs_int64(value: int) -> int:
    """Two's complement 64-bit absolute value (the minimum maps to itself)."""
    value = _wrap_int64(value)
    mask = value >> 63
    return _wrap_int64((value ^ mask) - mask)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves going up."""
    return int(math.floor(value + 0.5))