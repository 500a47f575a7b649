"""Batching behaviour shared by sink writers."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Coroutine

from log_forwarder.core.logging import get_logger
from log_forwarder.core.metrics import FLUSH_LATENCY, POINTS_WRITTEN
from log_forwarder.models.entities import FlushResult, Point

logger = get_logger(__name__)


class BatchWriter:
    """Buffer points and flush them on a size threshold or a recurring timer.

    Subclasses implement :meth:`_begin_flush`, which is called synchronously
    (so any buffer hand-off happens before the next ``add``) and returns the
    coroutine performing the write.
    """

    sink = "base"

    def __init__(self, destination_id: str, batch_size: int, batch_interval_seconds: float) -> None:
        self.destination_id = destination_id
        self.batch_size = batch_size
        self.batch_interval_seconds = batch_interval_seconds
        self._buffer: list[Point] = []
        self._timer: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._background_errors: list[Exception] = []
        self._size_flush: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        """Start the interval timer on the running event loop."""
        if not self.running:
            self._timer = asyncio.get_running_loop().create_task(self._tick())

    def add(self, point: Point) -> None:
        if not self._accept(point):
            return
        self._buffer.append(point)
        if len(self._buffer) >= self.batch_size and self._size_flush_allowed():
            logger.debug("Batch size reached (%s), triggering flush", len(self._buffer))
            self._size_flush = self._spawn_flush("size")

    async def flush(self) -> FlushResult:
        """Wait for in-flight background flushes, then write what is buffered."""
        errors = await self.drain()
        started = time.perf_counter()
        result = await self._begin_flush()
        FLUSH_LATENCY.labels(sink=self.sink).observe(time.perf_counter() - started)
        self._after_background_errors(errors)
        return result

    async def drain(self) -> list[Exception]:
        """Await background flushes and return the errors they recorded."""
        while self._background:
            await asyncio.gather(*list(self._background))
        errors, self._background_errors = self._background_errors, []
        return errors

    async def stop(self) -> None:
        """Cancel the timer and flush whatever is still buffered."""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        await self.flush()

    # Hooks -------------------------------------------------------------

    def _accept(self, point: Point) -> bool:
        return True

    def _begin_flush(self) -> Coroutine[Any, Any, FlushResult]:  # pragma: no cover - interface
        raise NotImplementedError

    def _size_flush_allowed(self) -> bool:
        return True

    def _size_flush_pending(self) -> bool:
        return self._size_flush is not None and not self._size_flush.done()

    def _after_background_errors(self, errors: list[Exception]) -> None:
        return None

    def _record_written(self, count: int) -> None:
        if count:
            POINTS_WRITTEN.labels(sink=self.sink, destination=self.destination_id).inc(count)

    # Internal helpers -------------------------------------------------

    def _spawn_flush(self, trigger: str) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(self._guarded(self._begin_flush(), trigger))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _guarded(self, flush: Coroutine[Any, Any, FlushResult], trigger: str) -> None:
        try:
            await flush
        except Exception as exc:
            logger.error(
                "%s %s-triggered flush failed: %s",
                self.sink,
                trigger,
                exc,
                extra={"ctx_destination": self.destination_id},
            )
            self._background_errors.append(exc)

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.batch_interval_seconds)
            if self._buffer:
                logger.debug("Timer triggered flush (%s points pending)", len(self._buffer))
                await self._guarded(self._begin_flush(), "interval")


__all__ = ["BatchWriter"]
