"""Parsing of human duration expressions such as ``10s``, ``1h`` or ``2 days``."""

from __future__ import annotations

import re
from datetime import timedelta


class InvalidDuration(RuntimeError):
    """Raised when a duration expression is malformed or not positive."""


_DURATION_RE = re.compile(
    r"^(?P<value>-?(?:\d+)?\.?\d+)\s*(?P<unit>[a-z]*)$", re.IGNORECASE
)

_UNIT_MILLISECONDS = {
    "": 1,
    "ms": 1,
    "msec": 1,
    "msecs": 1,
    "millisecond": 1,
    "milliseconds": 1,
    "s": 1_000,
    "sec": 1_000,
    "secs": 1_000,
    "second": 1_000,
    "seconds": 1_000,
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
    "y": 31_557_600_000,
    "yr": 31_557_600_000,
    "yrs": 31_557_600_000,
    "year": 31_557_600_000,
    "years": 31_557_600_000,
}

# Longest accepted duration: 100 years.
MAX_MILLISECONDS = 100 * _UNIT_MILLISECONDS["y"]


def parse_milliseconds(expression: str | None) -> int:
    """Return the positive number of milliseconds described by ``expression``.

    A bare number is read as milliseconds. Years are 365.25 days. Anything
    longer than ``MAX_MILLISECONDS`` is rejected.
    """
    if expression is None:
        raise InvalidDuration("Duration is required.")
    text = expression.strip()
    if not text or len(text) > 100:
        raise InvalidDuration(f"Invalid duration: {expression!r}")
    match = _DURATION_RE.match(text)
    if not match:
        raise InvalidDuration(f"Invalid duration: {expression!r}")
    multiplier = _UNIT_MILLISECONDS.get(match.group("unit").lower())
    if multiplier is None:
        raise InvalidDuration(f"Unknown duration unit in {expression!r}")
    try:
        milliseconds = round(float(match.group("value")) * multiplier)
    except OverflowError as exc:
        raise InvalidDuration(f"Duration is too long: {expression!r}") from exc
    if milliseconds <= 0:
        raise InvalidDuration(f"Duration must be positive: {expression!r}")
    if milliseconds > MAX_MILLISECONDS:
        raise InvalidDuration(f"Duration is too long: {expression!r}")
    return milliseconds


def parse_duration(expression: str | None) -> timedelta:
    return timedelta(milliseconds=parse_milliseconds(expression))
