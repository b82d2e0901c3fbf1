"""Naive-UTC datetime helpers.

The database stores naive UTC datetimes. Upstream APIs hand back ISO
strings with ``Z`` suffixes, epoch seconds, or epoch milliseconds; these
helpers fold all of them into the same naive UTC representation.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcfromtimestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp (seconds) to a naive UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def utcfromtimestamp_ms(ts_ms: Union[int, float, str]) -> datetime:
    """Convert epoch milliseconds to a naive UTC datetime."""
    return utcfromtimestamp(float(ts_ms) / 1000.0)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an aware or naive datetime to naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into naive UTC."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def isoformat_z(value: Optional[datetime]) -> Optional[str]:
    """Render a naive UTC datetime as ISO-8601 with a ``Z`` suffix."""
    if value is None:
        return None
    return to_naive_utc(value).isoformat() + "Z"
