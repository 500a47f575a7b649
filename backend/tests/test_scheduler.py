"""Scheduler registry tests."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from log_forwarder.core.errors import ConfigError
from log_forwarder.db.sqlite import MEMORY, SQLiteDatabase
from log_forwarder.models.entities import ExecutionResult
from log_forwarder.pipeline.scheduler import JobScheduler
from log_forwarder.store.config_store import ConfigStore


class StubRunner:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.released: list[str] = []

    async def run_by_id(self, job_id: str) -> ExecutionResult:
        self.calls.append(job_id)
        return ExecutionResult(job_id=job_id)

    async def release(self, job_ids: list[str]) -> None:
        self.released.extend(job_ids)


def _write_pipeline(path: Path, jobs: list[dict]) -> None:
    path.write_text(
        yaml.safe_dump(
            {
                "sources": [{"id": "logs", "source_type": "file", "file_path": "/var/log/app.log"}],
                "destinations": {
                    "influxdb": [{"id": "influx", "url": "http://influx", "database": "logs", "measurement": "m"}]
                },
                "jobs": jobs,
            }
        ),
        encoding="utf-8",
    )


def _job(job_id: str, schedule: str = "*/5 * * * *", enabled: bool = True) -> dict:
    return {
        "id": job_id,
        "source_id": "logs",
        "destination_type": "influxdb",
        "destination_id": "influx",
        "schedule": schedule,
        "enabled": enabled,
    }


@pytest.fixture
def pipeline_file(tmp_path: Path) -> Path:
    path = tmp_path / "pipeline.yaml"
    _write_pipeline(path, [_job("a"), _job("b"), _job("off", enabled=False)])
    return path


@pytest.mark.asyncio
async def test_start_registers_enabled_jobs(pipeline_file: Path) -> None:
    aps = AsyncIOScheduler(timezone="UTC")
    scheduler = JobScheduler(ConfigStore(pipeline_file, SQLiteDatabase(MEMORY)), StubRunner(), scheduler=aps)
    scheduler.start()
    try:
        assert set(scheduler.scheduled_jobs()) == {"a", "b"}
        assert all(next_run is not None for next_run in scheduler.scheduled_jobs().values())
        assert {job.id for job in aps.get_jobs()} == {"a", "b"}
    finally:
        await scheduler.shutdown()


@pytest.mark.asyncio
async def test_reregistering_replaces_the_trigger(pipeline_file: Path) -> None:
    aps = AsyncIOScheduler(timezone="UTC")
    store = ConfigStore(pipeline_file, SQLiteDatabase(MEMORY))
    scheduler = JobScheduler(store, StubRunner(), scheduler=aps)
    scheduler.start()
    try:
        job = store.get_job("a")
        scheduler.register(job)
        scheduler.register(job)
        assert [item.id for item in aps.get_jobs()].count("a") == 1
    finally:
        await scheduler.shutdown()


@pytest.mark.asyncio
async def test_reload_reconciles_registry(pipeline_file: Path) -> None:
    aps = AsyncIOScheduler(timezone="UTC")
    scheduler = JobScheduler(ConfigStore(pipeline_file, SQLiteDatabase(MEMORY)), StubRunner(), scheduler=aps)
    scheduler.start()
    try:
        _write_pipeline(pipeline_file, [_job("a"), _job("b", schedule="0 * * * *"), _job("c")])
        summary = scheduler.reload()
        assert summary.unchanged == ["a"]
        assert sorted(summary.scheduled) == ["b", "c"]
        assert summary.removed == []
        assert set(scheduler.scheduled_jobs()) == {"a", "b", "c"}

        _write_pipeline(pipeline_file, [_job("c")])
        summary = scheduler.reload()
        assert sorted(summary.removed) == ["a", "b"]
        assert {job.id for job in aps.get_jobs()} == {"c"}
    finally:
        await scheduler.shutdown()


@pytest.mark.asyncio
async def test_reload_releases_writers_of_removed_jobs(pipeline_file: Path) -> None:
    runner = StubRunner()
    scheduler = JobScheduler(ConfigStore(pipeline_file, SQLiteDatabase(MEMORY)), runner)
    scheduler.start()
    try:
        _write_pipeline(pipeline_file, [_job("a"), _job("b", enabled=False)])
        scheduler.reload()
        await asyncio.sleep(0)
        assert runner.released == ["b"]

        scheduler.reload()
        await asyncio.sleep(0)
        assert runner.released == ["b"]
    finally:
        await scheduler.shutdown()


@pytest.mark.asyncio
async def test_invalid_reload_keeps_schedule(pipeline_file: Path) -> None:
    scheduler = JobScheduler(ConfigStore(pipeline_file, SQLiteDatabase(MEMORY)), StubRunner())
    scheduler.start()
    try:
        pipeline_file.write_text("jobs: [{id: broken}]", encoding="utf-8")
        with pytest.raises(ConfigError):
            scheduler.reload()
        assert set(scheduler.scheduled_jobs()) == {"a", "b"}
    finally:
        await scheduler.shutdown()


@pytest.mark.asyncio
async def test_run_now_is_detached_and_leaves_registry(pipeline_file: Path) -> None:
    runner = StubRunner()
    scheduler = JobScheduler(ConfigStore(pipeline_file, SQLiteDatabase(MEMORY)), runner)
    scheduler.start()
    try:
        before = scheduler.scheduled_jobs()
        task = scheduler.run_now("a")
        assert isinstance(task, asyncio.Task)
        await task
        assert runner.calls == ["a"]
        assert scheduler.scheduled_jobs().keys() == before.keys()
    finally:
        await scheduler.shutdown()
