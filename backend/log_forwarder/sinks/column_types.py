"""Translate configured tag column type names into SQLAlchemy types."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable

from sqlalchemy import JSON, BigInteger, Boolean, Date, DateTime, Float, Integer, Numeric, SmallInteger, String, Text
from sqlalchemy.dialects.postgresql import DOUBLE_PRECISION, JSONB
from sqlalchemy.types import TypeEngine

from log_forwarder.pipeline.mapper import coerce, stringify
from log_forwarder.utils.time import parse_timestamp

_TYPE_RE = re.compile(r"^\s*([A-Za-z][A-Za-z ]*?)\s*(?:\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\))?\s*$")


@dataclass(frozen=True, slots=True)
class ColumnType:
    sql_type: TypeEngine
    convert: Callable[[Any], Any]


def _as_text(value: Any) -> str | None:
    return None if value is None else stringify(value)


def _as_timestamp(value: Any) -> datetime | None:
    return parse_timestamp(value)


def _as_date(value: Any) -> date | None:
    parsed = parse_timestamp(value)
    return parsed.date() if parsed is not None else None


def _as_json(value: Any) -> Any:
    return value


def _numeric(precision: int | None, scale: int | None) -> TypeEngine:
    return Numeric(precision=precision, scale=scale, asdecimal=False)


_FACTORIES: dict[str, tuple[Callable[[int | None, int | None], TypeEngine], Callable[[Any], Any]]] = {
    "TEXT": (lambda n, s: Text(), _as_text),
    "VARCHAR": (lambda n, s: String(n), _as_text),
    "CHARACTER VARYING": (lambda n, s: String(n), _as_text),
    "CHAR": (lambda n, s: String(n), _as_text),
    "SMALLINT": (lambda n, s: SmallInteger(), lambda v: coerce(v, "integer")),
    "INTEGER": (lambda n, s: Integer(), lambda v: coerce(v, "integer")),
    "INT": (lambda n, s: Integer(), lambda v: coerce(v, "integer")),
    "BIGINT": (lambda n, s: BigInteger(), lambda v: coerce(v, "integer")),
    "REAL": (lambda n, s: Float(), lambda v: coerce(v, "float")),
    "FLOAT": (lambda n, s: Float(), lambda v: coerce(v, "float")),
    "DOUBLE PRECISION": (lambda n, s: Float().with_variant(DOUBLE_PRECISION(), "postgresql"), lambda v: coerce(v, "float")),
    "NUMERIC": (_numeric, lambda v: coerce(v, "float")),
    "DECIMAL": (_numeric, lambda v: coerce(v, "float")),
    "BOOLEAN": (lambda n, s: Boolean(), lambda v: coerce(v, "boolean")),
    "BOOL": (lambda n, s: Boolean(), lambda v: coerce(v, "boolean")),
    "TIMESTAMP": (lambda n, s: DateTime(), _as_timestamp),
    "TIMESTAMPTZ": (lambda n, s: DateTime(timezone=True), _as_timestamp),
    "TIMESTAMP WITH TIME ZONE": (lambda n, s: DateTime(timezone=True), _as_timestamp),
    "DATE": (lambda n, s: Date(), _as_date),
    "JSONB": (lambda n, s: JSON().with_variant(JSONB(), "postgresql"), _as_json),
    "JSON": (lambda n, s: JSON(), _as_json),
}


def resolve_column_type(name: str) -> ColumnType:
    """Resolve e.g. ``"VARCHAR(64)"`` or ``"timestamptz"``; raise ``ValueError`` for unknown types."""
    match = _TYPE_RE.match(name or "")
    if not match:
        raise ValueError(f"unsupported column type: {name!r}")
    base = " ".join(match.group(1).upper().split())
    if base not in _FACTORIES:
        raise ValueError(f"unsupported column type: {name!r}")
    length = int(match.group(2)) if match.group(2) else None
    scale = int(match.group(3)) if match.group(3) else None
    factory, convert = _FACTORIES[base]
    return ColumnType(sql_type=factory(length, scale), convert=convert)


__all__ = ["ColumnType", "resolve_column_type"]
