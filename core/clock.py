"""
core/clock.py -- Time source and timestamp helpers.

Every component that reads the current time takes a Clock in its constructor
instead of calling datetime.now() directly, so tests can drive expiry and
creation ordering deterministically.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision. datetime.isoformat() drops the fractional part when it is zero,
which would break lexicographic ordering in SQL comparisons; to_iso() never
does.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

# Must return timezone-aware datetimes; to_iso() rejects naive ones.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default Clock: timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialize a timezone-aware datetime as a fixed-precision UTC string.

    Raises ValueError for naive datetimes: astimezone() would read them as
    local time and the stored strings would no longer sort by instant. A
    Clock must return aware values.
    """
    if moment.tzinfo is None or moment.utcoffset() is None:
        raise ValueError("naive datetime passed to to_iso(); Clock must return timezone-aware values")
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")

