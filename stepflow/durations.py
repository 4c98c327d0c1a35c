"""Duration parsing for sleep steps and hook timeouts."""

from __future__ import annotations

import re
from typing import Union

from .errors import InvalidDuration

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")

_UNIT_MS = {
    "ms": 1,
    "msec": 1,
    "millisecond": 1,
    "milliseconds": 1,
    "s": 1000,
    "sec": 1000,
    "secs": 1000,
    "second": 1000,
    "seconds": 1000,
    "m": 60_000,
    "min": 60_000,
    "mins": 60_000,
    "minute": 60_000,
    "minutes": 60_000,
    "h": 3_600_000,
    "hr": 3_600_000,
    "hrs": 3_600_000,
    "hour": 3_600_000,
    "hours": 3_600_000,
    "d": 86_400_000,
    "day": 86_400_000,
    "days": 86_400_000,
    "w": 604_800_000,
    "week": 604_800_000,
    "weeks": 604_800_000,
}

Duration = Union[str, int, float]


def parse_duration_ms(duration: Duration) -> float:
    """Convert ``duration`` to milliseconds.

    Numbers are taken as milliseconds. Strings are a number followed by an
    optional unit, e.g. ``"30s"``, ``"1 min"``, ``"7d"``. A bare numeric
    string is read as milliseconds.
    """
    if isinstance(duration, bool):
        raise InvalidDuration(f"Invalid duration: {duration!r}")
    if isinstance(duration, (int, float)):
        if duration < 0:
            raise InvalidDuration(f"Duration must not be negative: {duration}")
        return float(duration)
    if not isinstance(duration, str):
        raise InvalidDuration(f"Invalid duration: {duration!r}")

    match = _DURATION_RE.match(duration)
    if not match:
        raise InvalidDuration(f"Invalid duration format: {duration!r}")
    value, unit = match.groups()
    unit = unit.lower() or "ms"
    if unit not in _UNIT_MS:
        raise InvalidDuration(f"Unknown duration unit {unit!r} in {duration!r}")
    return float(value) * _UNIT_MS[unit]


def parse_duration_seconds(duration: Duration) -> float:
    return parse_duration_ms(duration) / 1000.0
