"""InfluxDB line protocol encoding."""

from __future__ import annotations

from typing import Iterable

from log_forwarder.models.entities import FieldValue, Point
from log_forwarder.utils.time import to_epoch

_MEASUREMENT_ESCAPES = str.maketrans({",": r"\,", " ": r"\ ", "\n": r"\n"})
_KEY_ESCAPES = str.maketrans({",": r"\,", "=": r"\=", " ": r"\ ", "\n": r"\n"})


def escape_measurement(value: str) -> str:
    return value.translate(_MEASUREMENT_ESCAPES)


def escape_key(value: str) -> str:
    """Escape a tag key, tag value or field key."""
    return value.translate(_KEY_ESCAPES)


def format_field_value(value: FieldValue) -> str:
    # bool is a subclass of int, so it has to be checked first.
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"{value}i"
    if isinstance(value, float):
        return repr(value)
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def encode_point(measurement: str, point: Point, precision: str = "ns") -> str:
    if not point.fields:
        raise ValueError("a point needs at least one field")
    series = escape_measurement(measurement)
    tags = ",".join(
        f"{escape_key(key)}={escape_key(value)}" for key, value in point.tags.items() if value != ""
    )
    if tags:
        series = f"{series},{tags}"
    fields = ",".join(f"{escape_key(key)}={format_field_value(value)}" for key, value in point.fields.items())
    return f"{series} {fields} {to_epoch(point.timestamp, precision)}"


def encode_batch(measurement: str, points: Iterable[Point], precision: str = "ns") -> str:
    return "\n".join(encode_point(measurement, point, precision) for point in points)


__all__ = ["escape_measurement", "escape_key", "format_field_value", "encode_point", "encode_batch"]
