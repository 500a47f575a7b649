"""Source adapters and their factory."""

from __future__ import annotations

from datetime import timezone, tzinfo

from log_forwarder.models.definitions import DynatraceSource, FileSource, SourceDefinition, SplunkSource
from log_forwarder.sources.base import QueryApiAdapter, SourceAdapter
from log_forwarder.sources.file import FileAdapter
from log_forwarder.sources.query_api import DynatraceAdapter, SplunkAdapter


def create_adapter(
    source: SourceDefinition,
    timeout: float = 60.0,
    default_zone: tzinfo = timezone.utc,
) -> SourceAdapter:
    """Build the adapter matching the source's ``source_type``."""
    if isinstance(source, DynatraceSource):
        return DynatraceAdapter(source, timeout=timeout, default_zone=default_zone)
    if isinstance(source, SplunkSource):
        return SplunkAdapter(source, timeout=timeout, default_zone=default_zone)
    if isinstance(source, FileSource):
        return FileAdapter(source, default_zone=default_zone)
    raise ValueError(f"Unsupported source type: {getattr(source, 'source_type', source)!r}")


__all__ = [
    "SourceAdapter",
    "QueryApiAdapter",
    "DynatraceAdapter",
    "SplunkAdapter",
    "FileAdapter",
    "create_adapter",
]
