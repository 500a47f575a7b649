"""Time-series sink writing line protocol over the InfluxDB 1.x HTTP API."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

import requests

from log_forwarder.core.errors import SinkWriteError, classify_error
from log_forwarder.core.logging import get_logger
from log_forwarder.models.definitions import InfluxDestination
from log_forwarder.models.entities import FlushResult, Point
from log_forwarder.sinks.base import BatchWriter
from log_forwarder.sinks.line_protocol import encode_batch

logger = get_logger(__name__)


class InfluxWriter(BatchWriter):
    """Batching line-protocol writer.

    The buffer is handed off before each write, so a failed batch is dropped
    rather than retried. The failure is logged and re-raised to whoever
    awaited the flush.
    """

    sink = "influxdb"

    def __init__(
        self,
        destination: InfluxDestination,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(destination.id, destination.batch_size, destination.batch_interval_seconds)
        self.url = destination.url.rstrip("/")
        self.database = destination.database
        self.measurement = destination.measurement
        self.precision = destination.precision
        self.timeout = timeout
        self.session = session or requests.Session()
        if destination.username:
            self.session.auth = (destination.username, destination.password or "")
        if destination.proxy is not None:
            self.session.proxies.update(destination.proxy.as_requests_proxies())

    def _begin_flush(self) -> Coroutine[Any, Any, FlushResult]:
        batch, self._buffer = self._buffer, []
        return self._write(batch)

    def _after_background_errors(self, errors: list[Exception]) -> None:
        if errors:
            first = errors[0]
            raise SinkWriteError(
                f"{len(errors)} earlier batch(es) were not written: {first}",
                kind=classify_error(first),
            )

    async def _write(self, batch: list[Point]) -> FlushResult:
        if not batch:
            return FlushResult()
        try:
            body = encode_batch(self.measurement, batch, self.precision)
            await asyncio.to_thread(self._post, body)
        except (requests.RequestException, ValueError) as exc:
            kind = classify_error(exc)
            logger.error(
                "Error writing %s points to InfluxDB: %s",
                len(batch),
                exc,
                extra={"ctx_destination": self.destination_id, "ctx_kind": kind},
            )
            raise SinkWriteError(f"InfluxDB write failed: {exc}", kind=kind, batch_size=len(batch)) from exc

        self._record_written(len(batch))
        logger.info("Flushed %s points to InfluxDB", len(batch), extra={"ctx_destination": self.destination_id})
        return FlushResult(written=len(batch))

    def _post(self, body: str) -> None:
        response = self.session.post(
            f"{self.url}/write",
            params={"db": self.database, "precision": self.precision},
            data=body.encode("utf-8"),
            headers={"Content-Type": "text/plain; charset=utf-8"},
            timeout=self.timeout,
        )
        response.raise_for_status()

    async def stop(self) -> None:
        try:
            await super().stop()
        finally:
            self.session.close()


__all__ = ["InfluxWriter"]
