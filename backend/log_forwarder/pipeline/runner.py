"""Single job execution: window, fetch, extract, map, write, flush, bookkeeping."""

from __future__ import annotations

import asyncio
import traceback
from datetime import datetime, timedelta
from typing import Callable

from log_forwarder.core.config import Settings
from log_forwarder.core.errors import classify_error
from log_forwarder.core.logging import get_logger
from log_forwarder.core.metrics import JOB_RUNS, RECORDS_FAILED, RECORDS_PROCESSED
from log_forwarder.models.definitions import JobDefinition
from log_forwarder.models.entities import ExecutionResult, FailureSample, LogRecord, TimeWindow
from log_forwarder.pipeline.extractor import Extractor
from log_forwarder.pipeline.mapper import FieldMapper
from log_forwarder.sinks.base import BatchWriter
from log_forwarder.sinks.factory import DestinationDefinition, create_writer
from log_forwarder.sinks.postgres import EngineRegistry
from log_forwarder.sources import SourceAdapter, create_adapter
from log_forwarder.store.activity import ActivityLog
from log_forwarder.store.config_store import ConfigStore
from log_forwarder.utils.text import truncate
from log_forwarder.utils.time import resolve_zone, utc_now

logger = get_logger(__name__)

SAMPLE_MESSAGE_LIMIT = 200


def compute_window(
    now: datetime,
    last_run_at: datetime | None,
    lookback_minutes: int,
    max_lookback_minutes: int | None = None,
) -> TimeWindow:
    """Half-open fetch window ``[start, now)``.

    The window re-reads ``lookback_minutes`` before the previous run to pick up
    late-arriving records, and never reaches further back than
    ``max_lookback_minutes``.
    """
    lookback = timedelta(minutes=lookback_minutes)
    start = last_run_at - lookback if last_run_at is not None else now - lookback
    if max_lookback_minutes is not None:
        start = max(start, now - timedelta(minutes=max_lookback_minutes))
    if start >= now:
        start = now - lookback
    return TimeWindow(start=start, end=now)


class JobRunner:
    """Executes jobs against the configured sources and sinks.

    Writers are kept per job between runs so the relational dedup cache and
    any retained batch survive; a writer is rebuilt when its destination
    definition changes.
    """

    def __init__(
        self,
        store: ConfigStore,
        activity: ActivityLog,
        settings: Settings,
        adapter_factory: Callable[..., SourceAdapter] = create_adapter,
        writer_factory: Callable[..., BatchWriter] = create_writer,
        engines: EngineRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.activity = activity
        self.settings = settings
        self.adapter_factory = adapter_factory
        self.writer_factory = writer_factory
        self.engines = engines or EngineRegistry()
        self.clock = clock
        self.zone = resolve_zone(settings.timezone)
        self._writers: dict[str, tuple[DestinationDefinition, BatchWriter]] = {}

    async def run_by_id(self, job_id: str) -> ExecutionResult:
        job = self.store.get_job(job_id)
        if job is None:
            return self._skip(job_id, f"Job {job_id} not found")
        return await self.run(job)

    async def run(self, job: JobDefinition) -> ExecutionResult:
        """Run one execution; failures are reported in the result, never raised."""
        now = self.clock()

        source = self.store.get_source(job.source_id)
        if source is None or not source.enabled:
            return self._skip(job.id, f"Source {job.source_id} not found or disabled")
        destination = self.store.get_destination(job.destination_type, job.destination_id)
        if destination is None or not destination.enabled:
            return self._skip(
                job.id, f"Destination {job.destination_type}/{job.destination_id} not found or disabled"
            )
        pattern = self.store.get_pattern(source.id)
        if not pattern:
            return self._skip(job.id, f"Source {source.id} has no extraction pattern")
        rules = self.store.get_mapping_rules(source.id)
        if not rules:
            return self._skip(job.id, f"Source {source.id} has no mapping rules")

        state = self.store.get_state(job.id)
        window = compute_window(now, state.last_run_at, job.lookback_minutes, job.max_lookback_minutes)
        result = ExecutionResult(job_id=job.id, window=window)
        extractor = Extractor(pattern)
        mapper = FieldMapper(rules, default_zone=self.zone, clock=self.clock)
        adapter = self.adapter_factory(
            source, timeout=self.settings.fetch_timeout_seconds, default_zone=self.zone
        )
        logger.info(
            "Running job %s over %s to %s",
            job.id,
            window.start.isoformat(),
            window.end.isoformat(),
            extra={"ctx_job": job.id, "ctx_source": source.id, "ctx_destination": destination.id},
        )

        success = False
        try:
            writer = await self._writer_for(job.id, destination)
            records = await asyncio.wait_for(
                adapter.fetch(source.query_filter, window.start, window.end),
                timeout=self.settings.fetch_timeout_seconds,
            )
            result.fetched = len(records)
            for record in records:
                self._process(record, extractor, mapper, writer, result)
            await asyncio.wait_for(writer.flush(), timeout=self.settings.write_timeout_seconds)
            success = True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(job, destination, result, exc)
        finally:
            await adapter.close()
            self.store.update_last_run(job.id, now, success)

        if success:
            self.activity.record(
                job.id,
                "info",
                f"Processed {result.processed} records ({result.failed} failed)",
                processed=result.processed,
                failed=result.failed,
                details={
                    "window": result.to_dict()["window"],
                    "fetched": result.fetched,
                    "failure_samples": [sample.to_dict() for sample in result.failure_samples],
                },
            )
        JOB_RUNS.labels(job=job.id, status=result.status).inc()
        RECORDS_PROCESSED.labels(job=job.id).inc(result.processed)
        RECORDS_FAILED.labels(job=job.id).inc(result.failed)
        return result

    def _process(
        self,
        record: LogRecord,
        extractor: Extractor,
        mapper: FieldMapper,
        writer: BatchWriter,
        result: ExecutionResult,
    ) -> None:
        document, reason = extractor.try_extract(record.message)
        if document is None:
            self._record_failure(record, reason or "extraction failed", result)
            return
        try:
            point = mapper.map(record, document)
        except Exception as exc:
            self._record_failure(record, f"mapping failed: {exc}", result)
            return
        writer.add(point)
        result.processed += 1

    def _record_failure(self, record: LogRecord, reason: str, result: ExecutionResult) -> None:
        result.failed += 1
        if len(result.failure_samples) < self.settings.max_failure_samples:
            result.failure_samples.append(
                FailureSample(
                    message=truncate(record.message or "", SAMPLE_MESSAGE_LIMIT),
                    timestamp=record.timestamp.isoformat() if record.timestamp else None,
                    reason=reason,
                )
            )

    def _fail(
        self,
        job: JobDefinition,
        destination: DestinationDefinition,
        result: ExecutionResult,
        exc: Exception,
    ) -> None:
        kind = classify_error(exc)
        result.status = "failed"
        result.error = str(exc) or type(exc).__name__
        logger.error(
            "Job %s failed: %s",
            job.id,
            result.error,
            extra={"ctx_job": job.id, "ctx_kind": kind},
        )
        self.activity.record(
            job.id,
            "error",
            f"Job {job.id} failed: {result.error}",
            processed=result.processed,
            failed=result.failed,
            details={
                "error_type": type(exc).__name__,
                "error_kind": kind,
                "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                "job_id": job.id,
                "source_id": job.source_id,
                "destination_type": job.destination_type,
                "destination_id": destination.id,
            },
        )

    def _skip(self, job_id: str, reason: str) -> ExecutionResult:
        logger.warning("Skipping job %s: %s", job_id, reason, extra={"ctx_job": job_id})
        self.activity.record(job_id, "warning", reason)
        JOB_RUNS.labels(job=job_id, status="skipped").inc()
        return ExecutionResult(job_id=job_id, status="skipped", error=reason)

    async def _writer_for(self, job_id: str, destination: DestinationDefinition) -> BatchWriter:
        cached = self._writers.get(job_id)
        if cached is not None:
            definition, writer = cached
            if definition == destination:
                return writer
            del self._writers[job_id]
            await self._stop_writer(job_id, writer)
        writer = self.writer_factory(destination, self.settings, self.engines)
        writer.start()
        self._writers[job_id] = (destination, writer)
        return writer

    async def _stop_writer(self, job_id: str, writer: BatchWriter) -> None:
        try:
            await writer.stop()
        except Exception as exc:
            logger.error("Final flush for job %s failed: %s", job_id, exc, extra={"ctx_job": job_id})

    async def release(self, job_ids: list[str]) -> None:
        """Stop and forget the writers of jobs that are no longer scheduled."""
        for job_id in job_ids:
            cached = self._writers.pop(job_id, None)
            if cached is not None:
                await self._stop_writer(job_id, cached[1])

    async def close(self) -> None:
        """Stop all writers (flushing what they hold) and dispose connection pools."""
        writers, self._writers = self._writers, {}
        for job_id, (_, writer) in writers.items():
            await self._stop_writer(job_id, writer)
        await self.engines.dispose_all()


__all__ = ["JobRunner", "compute_window"]
