"""Job runner tests with in-memory sources and sinks."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Coroutine

import pytest

from log_forwarder.core.config import Settings
from log_forwarder.core.errors import SinkWriteError, SourceFetchError
from log_forwarder.db.sqlite import MEMORY, SQLiteDatabase
from log_forwarder.models.definitions import JobDefinition, PipelineDefinition
from log_forwarder.models.entities import ConnectionCheck, FlushResult, LogRecord, Point
from log_forwarder.pipeline.runner import JobRunner, compute_window
from log_forwarder.sinks.base import BatchWriter
from log_forwarder.sources.base import SourceAdapter
from log_forwarder.store.activity import ActivityLog
from log_forwarder.store.config_store import ConfigStore

NOW = datetime(2024, 10, 15, 12, 0, tzinfo=timezone.utc)


class FakeAdapter(SourceAdapter):
    def __init__(self, records: list[LogRecord], error: Exception | None = None) -> None:
        super().__init__("fake")
        self.records = records
        self.error = error
        self.calls: list[tuple[str, datetime, datetime]] = []
        self.closed = False

    async def fetch(self, query_filter: str, start: datetime, end: datetime) -> list[LogRecord]:
        self.calls.append((query_filter, start, end))
        if self.error is not None:
            raise self.error
        return list(self.records)

    async def test_connection(self) -> ConnectionCheck:
        return ConnectionCheck(ok=True, detail="fake")

    async def close(self) -> None:
        self.closed = True


class RecordingWriter(BatchWriter):
    sink = "recording"

    def __init__(self, error: Exception | None = None) -> None:
        super().__init__("recording", batch_size=1000, batch_interval_seconds=60)
        self.written: list[Point] = []
        self.error = error

    def _begin_flush(self) -> Coroutine[Any, Any, FlushResult]:
        batch, self._buffer = self._buffer, []
        return self._store(batch)

    async def _store(self, batch: list[Point]) -> FlushResult:
        if self.error is not None:
            raise self.error
        self.written.extend(batch)
        return FlushResult(written=len(batch))


def _pipeline(**job_overrides) -> PipelineDefinition:
    job = {
        "id": "rides",
        "source_id": "dt",
        "destination_type": "influxdb",
        "destination_id": "influx",
        "lookback_minutes": 5,
        "max_lookback_minutes": 60,
    }
    job.update(job_overrides)
    return PipelineDefinition.model_validate(
        {
            "sources": [
                {
                    "id": "dt",
                    "source_type": "dynatrace",
                    "url": "https://dt.example",
                    "token": "t0ken",
                    "query": "RIDE_DASHBOARD_RESPONSE",
                    "pattern": r"(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\.\d{3}).*?(\{[\s\S]*?\})",
                    "mappings": [
                        {"target_name": "user", "json_path": "$.userId"},
                        {"target_name": "depth", "json_path": "$.nested.a", "role": "field", "data_type": "integer"},
                    ],
                }
            ],
            "destinations": {
                "influxdb": [{"id": "influx", "url": "http://influx", "database": "logs", "measurement": "rides"}]
            },
            "jobs": [job],
        }
    )


@pytest.fixture
def store() -> ConfigStore:
    return ConfigStore(None, SQLiteDatabase(MEMORY), pipeline=_pipeline())


@pytest.fixture
def activity(store: ConfigStore) -> ActivityLog:
    return ActivityLog(store.db, clock=lambda: NOW)


def _runner(store: ConfigStore, activity: ActivityLog, adapter: FakeAdapter, writer: RecordingWriter) -> JobRunner:
    return JobRunner(
        store,
        activity,
        Settings(max_failure_samples=5),
        adapter_factory=lambda source, **kwargs: adapter,
        writer_factory=lambda destination, settings, engines: writer,
        clock=lambda: NOW,
    )


def _records(ride_message: str, bad: int = 0) -> list[LogRecord]:
    good = [LogRecord(timestamp=None, message=ride_message)]
    return good + [LogRecord(timestamp=NOW, message=f"garbage line {index}") for index in range(bad)]


def test_window_without_last_run_is_lookback_before_now() -> None:
    window = compute_window(NOW, None, 5, 1440)
    assert window.start == NOW - timedelta(minutes=5)
    assert window.end == NOW


def test_window_with_last_run_starts_lookback_before_it() -> None:
    last_run = NOW - timedelta(minutes=30)
    window = compute_window(NOW, last_run, 5, 1440)
    assert window.start == last_run - timedelta(minutes=5)
    assert window.end == NOW


def test_window_is_clamped_to_max_lookback() -> None:
    window = compute_window(NOW, NOW - timedelta(days=3), 5, 60)
    assert window.start == NOW - timedelta(minutes=60)


def test_window_with_future_last_run_falls_back_to_lookback() -> None:
    window = compute_window(NOW, NOW + timedelta(minutes=30), 5, 60)
    assert window.start == NOW - timedelta(minutes=5)


@pytest.mark.asyncio
async def test_successful_run(store: ConfigStore, activity: ActivityLog, ride_message: str) -> None:
    adapter = FakeAdapter(_records(ride_message, bad=7))
    writer = RecordingWriter()
    runner = _runner(store, activity, adapter, writer)
    try:
        result = await runner.run(store.get_job("rides"))
    finally:
        await runner.close()

    assert result.status == "completed"
    assert (result.processed, result.failed, result.fetched) == (1, 7, 8)
    assert len(result.failure_samples) == 5
    assert result.failure_samples[0].message == "garbage line 0"
    assert adapter.calls == [("RIDE_DASHBOARD_RESPONSE", NOW - timedelta(minutes=5), NOW)]
    assert adapter.closed

    point = writer.written[0]
    assert point.tags == {"user": "123"}
    assert point.fields == {"depth": 1}
    assert point.timestamp == datetime(2024, 10, 15, 10, 30, 45, 123000, tzinfo=timezone.utc)

    state = store.get_state("rides")
    assert state.last_run_at == NOW
    assert state.last_success_at == NOW
    events = activity.list(job_id="rides")
    assert [event.level for event in events] == ["info"]
    assert events[0].processed == 1 and events[0].failed == 7


@pytest.mark.asyncio
async def test_window_uses_persisted_last_run(store: ConfigStore, activity: ActivityLog) -> None:
    last_run = NOW - timedelta(minutes=20)
    store.update_last_run("rides", last_run, True)
    adapter = FakeAdapter([])
    runner = _runner(store, activity, adapter, RecordingWriter())
    try:
        await runner.run(store.get_job("rides"))
    finally:
        await runner.close()
    assert adapter.calls[0][1] == last_run - timedelta(minutes=5)


@pytest.mark.asyncio
async def test_rerun_is_idempotent(store: ConfigStore, activity: ActivityLog, ride_message: str) -> None:
    adapter = FakeAdapter(_records(ride_message, bad=2))
    runner = _runner(store, activity, adapter, RecordingWriter())
    try:
        first = await runner.run(store.get_job("rides"))
        second = await runner.run(store.get_job("rides"))
    finally:
        await runner.close()
    assert (first.processed, first.failed) == (second.processed, second.failed) == (1, 2)
    assert adapter.calls[0] == adapter.calls[1]


@pytest.mark.asyncio
async def test_release_stops_cached_writer(store: ConfigStore, activity: ActivityLog, ride_message: str) -> None:
    writer = RecordingWriter()
    runner = _runner(store, activity, FakeAdapter(_records(ride_message)), writer)
    try:
        await runner.run(store.get_job("rides"))
        assert writer.running

        await runner.release(["rides", "unknown"])
        assert not writer.running
        assert len(writer.written) == 1
    finally:
        await runner.close()


@pytest.mark.asyncio
async def test_fetch_error_records_error_event(store: ConfigStore, activity: ActivityLog) -> None:
    adapter = FakeAdapter([], error=SourceFetchError("Dynatrace API error: timed out", kind="timeout"))
    runner = _runner(store, activity, adapter, RecordingWriter())
    try:
        result = await runner.run(store.get_job("rides"))
    finally:
        await runner.close()

    assert result.status == "failed"
    state = store.get_state("rides")
    assert state.last_run_at == NOW
    assert state.last_success_at is None
    event = activity.list(job_id="rides")[0]
    assert event.level == "error"
    assert event.details["error_type"] == "SourceFetchError"
    assert event.details["error_kind"] == "timeout"
    assert event.details["source_id"] == "dt"
    assert event.details["destination_id"] == "influx"
    assert "Traceback" in event.details["traceback"]


@pytest.mark.asyncio
async def test_flush_error_fails_the_run(store: ConfigStore, activity: ActivityLog, ride_message: str) -> None:
    writer = RecordingWriter(error=SinkWriteError("InfluxDB write failed", kind="connection_refused"))
    runner = _runner(store, activity, FakeAdapter(_records(ride_message)), writer)
    try:
        result = await runner.run(store.get_job("rides"))
    finally:
        await runner.close()
    assert result.status == "failed"
    assert result.processed == 1
    assert activity.list(job_id="rides")[0].details["error_kind"] == "connection_refused"


@pytest.mark.asyncio
async def test_missing_destination_is_a_warning_skip(activity: ActivityLog, store: ConfigStore) -> None:
    store.replace(_pipeline(destination_id="nowhere"))
    adapter = FakeAdapter([])
    runner = _runner(store, activity, adapter, RecordingWriter())
    result = await runner.run(store.get_job("rides"))

    assert result.status == "skipped"
    assert adapter.calls == []
    assert store.get_state("rides").last_run_at is None
    assert activity.list(job_id="rides")[0].level == "warning"


@pytest.mark.asyncio
async def test_unknown_job_id_is_skipped(store: ConfigStore, activity: ActivityLog) -> None:
    runner = _runner(store, activity, FakeAdapter([]), RecordingWriter())
    result = await runner.run_by_id("nope")
    assert result.status == "skipped"
