"""Regex-driven JSON extraction from raw log messages."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any

import orjson

from log_forwarder.core.logging import get_logger
from log_forwarder.models.entities import ExtractedDocument

logger = get_logger(__name__)

# JavaScript-style named groups, (?<name>...), excluding lookbehinds.
_JS_NAMED_GROUP_RE = re.compile(r"\(\?<(?![=!])")

NO_MATCH = "pattern did not match"
NO_PAYLOAD = "payload group was empty"
INVALID_JSON = "payload is not valid JSON after unescaping"


@lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a configured extraction pattern, accepting ``(?<name>...)`` groups."""
    return re.compile(_JS_NAMED_GROUP_RE.sub("(?P<", pattern))


def balanced_json_end(text: str, start: int) -> int | None:
    """Return the index just past the brace that balances the one at ``start``.

    Quote state is tracked so braces inside strings are ignored; a backslash
    escapes the following character wherever it appears.
    """
    depth_open = depth_close = 0
    in_string = escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth_open += 1
        elif char == "}":
            depth_close += 1
            if depth_open == depth_close:
                return index + 1
    return None


def parse_json_payload(payload: str) -> Any | None:
    """Parse JSON escaped zero, one or two times; ``None`` if all attempts fail.

    Three or more levels of escaping are not recovered.
    """
    for unescape in (_as_is, _unescape_quotes, _unescape_twice):
        try:
            return orjson.loads(unescape(payload))
        except orjson.JSONDecodeError:
            continue
    return None


_ESCAPED_CHAR_RE = re.compile(r'\\([\\"])')


def _as_is(payload: str) -> str:
    return payload


def _unescape_quotes(payload: str) -> str:
    return payload.replace('\\"', '"')


def _unescape_twice(payload: str) -> str:
    # Doubled backslashes collapse first, then the quotes they guarded.
    return _unescape_quotes(_ESCAPED_CHAR_RE.sub(r"\1", payload))


class Extractor:
    """Apply one source pattern to raw messages and parse the captured JSON.

    With two or more groups, group 1 is a timestamp and group 2 the payload;
    with one group that group is the payload; otherwise the whole match is.
    """

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        self.regex = compile_pattern(pattern)

    def extract(self, message: str | None) -> ExtractedDocument | None:
        document, _reason = self.try_extract(message)
        return document

    def try_extract(self, message: str | None) -> tuple[ExtractedDocument | None, str | None]:
        """Like :meth:`extract` but also report why extraction failed."""
        if not message:
            return None, NO_MATCH
        match = self.regex.search(message)
        if match is None:
            return None, NO_MATCH

        timestamp: str | None = None
        groups = self.regex.groups
        if groups >= 2:
            timestamp = match.group(1)
            payload_group = 2
        elif groups == 1:
            payload_group = 1
        else:
            payload_group = 0

        payload = match.group(payload_group)
        if not payload:
            return None, NO_PAYLOAD
        payload = self._balance(message, payload, match.start(payload_group))

        data = parse_json_payload(payload)
        if data is None:
            logger.debug("JSON parse failed after all unescape attempts", extra={"ctx_pattern": self.pattern})
            return None, INVALID_JSON
        return ExtractedDocument(data=data, timestamp=timestamp), None

    @staticmethod
    def _balance(message: str, payload: str, offset: int) -> str:
        # Lazy captures such as \{[\s\S]*?\} stop at the first closing brace.
        if payload.startswith("{"):
            brace = offset
        elif payload.startswith("\\{"):
            brace = offset + 1
        else:
            return payload
        end = balanced_json_end(message, brace)
        if end is None:
            return payload
        return message[brace:end]


__all__ = [
    "Extractor",
    "compile_pattern",
    "balanced_json_end",
    "parse_json_payload",
    "NO_MATCH",
    "NO_PAYLOAD",
    "INVALID_JSON",
]
