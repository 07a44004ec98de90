"""Parsing helpers for wire values."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from dateutil import parser

DIGITS = re.compile(r"^-?[0-9]+$")
NANOS_PER_SECOND = 1_000_000_000


def parse_int(value: object) -> Optional[int]:
    """Parse an integer given as ``int`` or decimal string.

    Floats and booleans are rejected: token quantities never travel as
    floating point.
    """

    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        cleaned = value.strip().replace("_", "")
        if DIGITS.match(cleaned):
            return int(cleaned)
    raise ValueError(f"Expected an integer or decimal string, got {value!r}")


def parse_timestamp(value: object) -> Optional[int]:
    """Parse a timestamp into nanoseconds since the epoch.

    Integers and digit strings are taken as nanoseconds already. Anything else
    is handed to dateutil; naive datetimes are treated as UTC.
    """

    if value is None:
        return None
    try:
        return parse_int(value)
    except ValueError:
        if not isinstance(value, str):
            raise
    parsed = parser.parse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return to_nanos(parsed)


def to_nanos(moment: datetime) -> int:
    delta = moment - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * NANOS_PER_SECOND + delta.microseconds * 1_000


__all__ = ["parse_int", "parse_timestamp", "to_nanos", "NANOS_PER_SECOND"]
