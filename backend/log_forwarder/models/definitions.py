"""Pydantic models for pipeline definitions (sources, destinations, jobs)."""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Union

from apscheduler.triggers.cron import CronTrigger
from jsonpath_ng.exceptions import JSONPathError
from jsonpath_ng.ext import parse as parse_jsonpath
from pydantic import BaseModel, Field, field_validator, model_validator

from log_forwarder.pipeline.extractor import compile_pattern
from log_forwarder.sinks.column_types import resolve_column_type

DataType = Literal["string", "integer", "float", "boolean"]
Precision = Literal["ns", "ms", "s"]
DestinationType = Literal["influxdb", "postgresql"]

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
RESERVED_COLUMNS = frozenset({"id", "fields", "inserted_at"})


class ProxySettings(BaseModel):
    url: str
    username: str | None = None
    password: str | None = None

    def as_requests_proxies(self) -> dict[str, str]:
        """Return a ``requests`` proxies mapping with credentials embedded."""
        url = self.url
        if self.username and self.password and "://" in url:
            scheme, rest = url.split("://", 1)
            url = f"{scheme}://{self.username}:{self.password}@{rest}"
        return {"http": url, "https": url}


class MappingRule(BaseModel):
    """How one value is pulled from an extracted document (or supplied as a constant)."""

    target_name: str
    json_path: str | None = None
    static_value: Any = None
    is_static: bool = False
    role: Literal["tag", "field"] = "tag"
    data_type: DataType = "string"
    transform_pattern: str | None = None

    @model_validator(mode="after")
    def _check_source(self) -> "MappingRule":
        if self.json_path is None and self.static_value is not None:
            self.is_static = True
        if self.is_static and self.static_value is None:
            raise ValueError(f"static mapping '{self.target_name}' needs static_value")
        if not self.is_static and not self.json_path:
            raise ValueError(f"mapping '{self.target_name}' needs json_path or static_value")
        return self

    @field_validator("json_path")
    @classmethod
    def _parse_path(cls, value: str | None) -> str | None:
        if value:
            try:
                parse_jsonpath(value)
            except JSONPathError as exc:
                raise ValueError(f"invalid JSONPath {value!r}: {exc}") from exc
        return value or None

    @field_validator("transform_pattern")
    @classmethod
    def _compile_transform(cls, value: str | None) -> str | None:
        if value:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"invalid transform pattern {value!r}: {exc}") from exc
        return value or None


class _SourceBase(BaseModel):
    id: str
    name: str | None = None
    enabled: bool = True
    pattern: str | None = None
    mappings: list[MappingRule] = Field(default_factory=list)
    proxy: ProxySettings | None = None

    @field_validator("pattern")
    @classmethod
    def _compile_pattern(cls, value: str | None) -> str | None:
        if value:
            try:
                compile_pattern(value)
            except re.error as exc:
                raise ValueError(f"invalid pattern {value!r}: {exc}") from exc
        return value or None

    @property
    def query_filter(self) -> str:
        return ""


class DynatraceSource(_SourceBase):
    source_type: Literal["dynatrace"] = "dynatrace"
    url: str
    token: str
    query: str = ""
    limit: int = 1000

    @property
    def query_filter(self) -> str:
        return self.query


class SplunkSource(_SourceBase):
    source_type: Literal["splunk"] = "splunk"
    url: str
    token: str
    search_query: str = ""
    index: str | None = None
    max_count: int = 1000
    verify_tls: bool = False

    @property
    def query_filter(self) -> str:
        if self.index:
            return f"search index={self.index} {self.search_query}".strip()
        return f"search {self.search_query}".strip()


class FileSource(_SourceBase):
    source_type: Literal["file"] = "file"
    file_path: str
    search_query: str = ""
    max_lines: int = 10_000

    @property
    def query_filter(self) -> str:
        return self.search_query


SourceDefinition = Annotated[
    Union[DynatraceSource, SplunkSource, FileSource],
    Field(discriminator="source_type"),
]


class _DestinationBase(BaseModel):
    id: str
    name: str | None = None
    enabled: bool = True
    batch_size: int = Field(default=100, ge=1)
    batch_interval_seconds: float = Field(default=10.0, gt=0)


class InfluxDestination(_DestinationBase):
    url: str
    database: str
    measurement: str
    username: str | None = None
    password: str | None = None
    precision: Precision = "ns"
    proxy: ProxySettings | None = None


class TagColumn(BaseModel):
    name: str
    type: str = "TEXT"
    required: bool = False
    indexed: bool = False

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _IDENTIFIER_RE.match(value):
            raise ValueError(f"invalid column name: {value!r}")
        if value.lower() in RESERVED_COLUMNS:
            raise ValueError(f"column name {value!r} is reserved")
        return value

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        resolve_column_type(value)
        return value


class PostgresDestination(_DestinationBase):
    host: str = "localhost"
    port: int = 5432
    database: str
    username: str | None = None
    password: str | None = None
    schema_name: str | None = "public"
    table_name: str
    dedup_keys: list[str] = Field(default_factory=lambda: ["timestamp"])
    tag_columns: list[TagColumn] = Field(default_factory=list)
    auto_create_table: bool = True
    pool_size: int = 10
    dsn: str | None = None

    @field_validator("dedup_keys", mode="before")
    @classmethod
    def _split_keys(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [key.strip() for key in value.split(",") if key.strip()]
        return value

    @field_validator("table_name")
    @classmethod
    def _check_table(cls, value: str) -> str:
        if not _IDENTIFIER_RE.match(value):
            raise ValueError(f"invalid table name: {value!r}")
        return value

    @model_validator(mode="after")
    def _check_dedup_keys(self) -> "PostgresDestination":
        known = {column.name for column in self.tag_columns} | {"timestamp"}
        unknown = [key for key in self.dedup_keys if key not in known]
        if unknown:
            raise ValueError(f"dedup keys {unknown} are not tag columns or 'timestamp'")
        return self


class Destinations(BaseModel):
    influxdb: list[InfluxDestination] = Field(default_factory=list)
    postgresql: list[PostgresDestination] = Field(default_factory=list)


class JobDefinition(BaseModel):
    id: str
    source_id: str
    destination_type: DestinationType = "influxdb"
    destination_id: str
    schedule: str = "*/5 * * * *"
    lookback_minutes: int = Field(default=5, ge=0)
    max_lookback_minutes: int = Field(default=1440, ge=1)
    enabled: bool = True

    @field_validator("schedule")
    @classmethod
    def _check_schedule(cls, value: str) -> str:
        if len(value.split()) != 5:
            raise ValueError(f"cron schedule must have 5 fields: {value!r}")
        CronTrigger.from_crontab(value)
        return value

    @model_validator(mode="after")
    def _check_lookback(self) -> "JobDefinition":
        if self.max_lookback_minutes < self.lookback_minutes:
            raise ValueError("max_lookback_minutes must be >= lookback_minutes")
        return self


class PipelineDefinition(BaseModel):
    sources: list[SourceDefinition] = Field(default_factory=list)
    destinations: Destinations = Field(default_factory=Destinations)
    jobs: list[JobDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "PipelineDefinition":
        for label, items in (
            ("source", self.sources),
            ("influxdb destination", self.destinations.influxdb),
            ("postgresql destination", self.destinations.postgresql),
            ("job", self.jobs),
        ):
            seen: set[str] = set()
            for item in items:
                if item.id in seen:
                    raise ValueError(f"duplicate {label} id: {item.id}")
                seen.add(item.id)
        return self


__all__ = [
    "DataType",
    "Precision",
    "DestinationType",
    "ProxySettings",
    "MappingRule",
    "DynatraceSource",
    "SplunkSource",
    "FileSource",
    "SourceDefinition",
    "InfluxDestination",
    "TagColumn",
    "PostgresDestination",
    "Destinations",
    "JobDefinition",
    "PipelineDefinition",
]
