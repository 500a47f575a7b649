"""Time helpers."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import TypeAdapter, ValidationError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

LOG_TIMESTAMP_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[ T](\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,6}))?$"
)
EPOCH_RE = re.compile(r"^-?\d+$")
LEADING_TIMESTAMP_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2}(?:\.\d{1,6})?)")

# Integer epochs above this are read as milliseconds (year 5138 in seconds).
_EPOCH_MS_THRESHOLD = 100_000_000_000

_DATETIME_ADAPTER = TypeAdapter(datetime)


def utc_now() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(tz=timezone.utc)


def resolve_zone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def from_epoch(value: int | float) -> datetime | None:
    """Interpret a bare epoch number as seconds or milliseconds; ``None`` if out of range."""
    try:
        if abs(value) >= _EPOCH_MS_THRESHOLD:
            return EPOCH + timedelta(milliseconds=value)
        return EPOCH + timedelta(seconds=value)
    except (OverflowError, ValueError):
        return None


def parse_timestamp(value: Any, default_zone: tzinfo = timezone.utc) -> datetime | None:
    """Parse log timestamps leniently; return ``None`` when nothing fits.

    Accepts ``YYYY-MM-DD[ T]HH:mm:ss[.SSS]``, integer epochs (seconds or
    milliseconds) and anything pydantic's datetime parser understands. Naive
    results are placed in ``default_zone``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        return None
    elif isinstance(value, (int, float)):
        parsed = from_epoch(value)
        if parsed is None:
            return None
    else:
        text = str(value).strip()
        if not text:
            return None
        parsed = _parse_text(text)
        if parsed is None:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_zone)
    return parsed


def _parse_text(text: str) -> datetime | None:
    match = LOG_TIMESTAMP_RE.match(text)
    if match:
        year, month, day, hour, minute, second, fraction = match.groups()
        micros = int((fraction or "0").ljust(6, "0"))
        try:
            return datetime(
                int(year), int(month), int(day), int(hour), int(minute), int(second), micros
            )
        except ValueError:
            return None
    if EPOCH_RE.match(text):
        return from_epoch(int(text))
    try:
        return _DATETIME_ADAPTER.validate_python(text)
    except ValidationError:
        return None


def leading_timestamp(line: str, default_zone: tzinfo = timezone.utc) -> datetime | None:
    """Parse the timestamp a log line starts with, if any."""
    match = LEADING_TIMESTAMP_RE.match(line)
    if not match:
        return None
    return parse_timestamp(match.group(1), default_zone)


def to_epoch(value: datetime, precision: str) -> int:
    """Integer epoch of ``value`` in ``ns``, ``ms`` or ``s``."""
    delta = value - EPOCH
    if precision == "ns":
        return (delta // timedelta(microseconds=1)) * 1000
    if precision == "ms":
        return delta // timedelta(milliseconds=1)
    if precision == "s":
        return delta // timedelta(seconds=1)
    raise ValueError(f"Unsupported precision: {precision}")


__all__ = [
    "EPOCH",
    "utc_now",
    "resolve_zone",
    "from_epoch",
    "parse_timestamp",
    "leading_timestamp",
    "to_epoch",
]
