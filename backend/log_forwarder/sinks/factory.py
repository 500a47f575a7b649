"""Build sink writers for a job's destination."""

from __future__ import annotations

from log_forwarder.core.config import Settings
from log_forwarder.models.definitions import InfluxDestination, PostgresDestination
from log_forwarder.sinks.base import BatchWriter
from log_forwarder.sinks.influx import InfluxWriter
from log_forwarder.sinks.postgres import EngineRegistry, PostgresWriter

DestinationDefinition = InfluxDestination | PostgresDestination


def create_writer(
    destination: DestinationDefinition,
    settings: Settings,
    engines: EngineRegistry,
) -> BatchWriter:
    if isinstance(destination, InfluxDestination):
        return InfluxWriter(destination, timeout=settings.write_timeout_seconds)
    if isinstance(destination, PostgresDestination):
        return PostgresWriter(
            destination,
            engines.get(destination),
            dedup_cache_size=settings.dedup_cache_size,
            ddl_timeout=settings.ddl_timeout_seconds,
        )
    raise ValueError(f"Unsupported destination: {destination!r}")


__all__ = ["DestinationDefinition", "create_writer"]
