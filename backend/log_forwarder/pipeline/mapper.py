"""Map extracted documents onto tagged, typed points."""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone, tzinfo
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Callable, Sequence

import orjson
from jsonpath_ng import JSONPath
from jsonpath_ng.ext import parse as parse_jsonpath

from log_forwarder.core.logging import get_logger
from log_forwarder.models.entities import ExtractedDocument, FieldValue, LogRecord, Point
from log_forwarder.utils.time import parse_timestamp, utc_now

if TYPE_CHECKING:
    from log_forwarder.models.definitions import MappingRule

logger = get_logger(__name__)

DEFAULT_FIELD = "value"

_INT_PREFIX_RE = re.compile(r"^\s*([+-]?\d+)")
_FLOAT_PREFIX_RE = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_FALSE_STRINGS = frozenset({"", "false", "0", "no", "off"})
_MISSING = object()


@lru_cache(maxsize=512)
def compile_path(expression: str) -> JSONPath:
    return parse_jsonpath(expression)


class FieldMapper:
    """Apply an ordered rule list to an extracted document."""

    def __init__(
        self,
        rules: Sequence[MappingRule],
        default_zone: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.rules = list(rules)
        self.default_zone = default_zone
        self.clock = clock
        self._paths = {
            rule.json_path: compile_path(rule.json_path)
            for rule in self.rules
            if not rule.is_static and rule.json_path
        }
        self._transforms = {
            rule.transform_pattern: re.compile(rule.transform_pattern)
            for rule in self.rules
            if rule.transform_pattern
        }

    def map(self, record: LogRecord, document: ExtractedDocument) -> Point:
        tags: dict[str, str] = {}
        fields: dict[str, FieldValue] = {}

        for rule in self.rules:
            raw = rule.static_value if rule.is_static else self._lookup(rule, document.data)
            if raw is _MISSING or raw is None:
                continue
            if rule.transform_pattern:
                raw = self._transforms[rule.transform_pattern].sub("", stringify(raw))
            value = coerce(raw, rule.data_type)
            if value is None:
                continue
            if rule.role == "field":
                fields[rule.target_name] = value
            else:
                tags[rule.target_name] = stringify(value)

        if not fields:
            fields[DEFAULT_FIELD] = 1

        return Point(tags=tags, fields=fields, timestamp=self._timestamp(record, document))

    def _lookup(self, rule: MappingRule, data: Any) -> Any:
        matches = self._paths[rule.json_path].find(data)
        if not matches:
            return _MISSING
        return matches[0].value

    def _timestamp(self, record: LogRecord, document: ExtractedDocument) -> datetime:
        if document.timestamp:
            parsed = parse_timestamp(document.timestamp, self.default_zone)
            if parsed is not None:
                return parsed
            logger.debug("Unparseable extracted timestamp %r, using record time", document.timestamp)
        if record.timestamp is not None:
            return record.timestamp
        return self.clock()


def stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return orjson.dumps(value).decode("utf-8")
    return str(value)


def coerce(value: Any, data_type: str) -> FieldValue | None:
    """Convert ``value`` to ``data_type``; ``None`` means the value is unusable."""
    if data_type == "integer":
        return _to_int(value)
    if data_type == "float":
        return _to_float(value)
    if data_type == "boolean":
        return _to_bool(value)
    text = stringify(value)
    return text if text else None


def _to_int(value: Any) -> int | None:
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return int(value)
    match = _INT_PREFIX_RE.match(stringify(value))
    return int(match.group(1)) if match else None


def _to_float(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        result = float(value)
    else:
        match = _FLOAT_PREFIX_RE.match(stringify(value))
        if not match:
            return None
        result = float(match.group(1))
    return result if math.isfinite(result) else None


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    return bool(value)


__all__ = ["FieldMapper", "DEFAULT_FIELD", "coerce", "stringify", "compile_path"]
