"""Relational writer tests against an aiosqlite-backed SQLAlchemy engine."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import func, inspect, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from log_forwarder.core.errors import SinkWriteError
from log_forwarder.models.definitions import PostgresDestination, TagColumn
from log_forwarder.models.entities import Point
from log_forwarder.sinks.dedupe import SeenHashCache, dedup_hash
from log_forwarder.sinks.postgres import PostgresWriter, build_table

TS = datetime(2024, 10, 15, 10, 30, 45, 123000, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncEngine:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sink.db'}")
    yield engine
    await engine.dispose()


def _destination(**overrides) -> PostgresDestination:
    values = dict(
        id="pg",
        database="logs",
        schema_name=None,
        table_name="ride_events",
        dedup_keys="user_id,timestamp",
        tag_columns=[
            TagColumn(name="user_id", type="VARCHAR(64)", required=True, indexed=True),
            TagColumn(name="status_code", type="INTEGER"),
        ],
    )
    values.update(overrides)
    return PostgresDestination(**values)


def _point(user: str = "u-1", status: str = "200", timestamp: datetime = TS) -> Point:
    return Point(tags={"user_id": user, "status_code": status}, fields={"latency": 1.5}, timestamp=timestamp)


async def _count(engine: AsyncEngine, writer: PostgresWriter) -> int:
    async with engine.connect() as conn:
        return (await conn.execute(select(func.count()).select_from(writer.table))).scalar_one()


def test_build_table_layout() -> None:
    table = build_table(_destination())
    assert [column.name for column in table.columns] == [
        "id",
        "user_id",
        "status_code",
        "timestamp",
        "fields",
        "inserted_at",
    ]
    assert {index.name for index in table.indexes} == {
        "idx_ride_events_timestamp",
        "idx_ride_events_fields",
        "idx_ride_events_user_id",
    }
    constraint_names = {constraint.name for constraint in table.constraints}
    assert "uq_ride_events_dedup" in constraint_names


def test_unknown_column_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        TagColumn(name="weird", type="GEOGRAPHY")


@pytest.mark.asyncio
async def test_ensure_schema_is_idempotent(engine: AsyncEngine) -> None:
    writer = PostgresWriter(_destination(), engine)
    await writer.ensure_schema()
    await writer.ensure_schema()

    async with engine.connect() as conn:
        tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        indexes = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_indexes("ride_events"))
    assert "ride_events" in tables
    assert {"idx_ride_events_timestamp", "idx_ride_events_user_id"} <= {index["name"] for index in indexes}


@pytest.mark.asyncio
async def test_memory_cache_drops_duplicates_before_buffering(engine: AsyncEngine) -> None:
    writer = PostgresWriter(_destination(), engine)
    writer.add(_point())
    writer.add(_point())
    assert writer.pending == 1

    result = await writer.flush()
    assert result.written == 1
    assert result.duplicates == 0
    assert await _count(engine, writer) == 1


@pytest.mark.asyncio
async def test_conflict_clause_drops_duplicates_without_cache(engine: AsyncEngine) -> None:
    writer = PostgresWriter(_destination(), engine, use_memory_dedup=False)
    writer.add(_point())
    writer.add(_point())
    writer.add(_point(user="u-2"))
    assert writer.pending == 3

    result = await writer.flush()
    assert result.written == 2
    assert result.duplicates == 1
    assert await _count(engine, writer) == 2


@pytest.mark.asyncio
async def test_conflict_clause_catches_repeats_across_writers(engine: AsyncEngine) -> None:
    first = PostgresWriter(_destination(), engine)
    first.add(_point())
    await first.flush()

    second = PostgresWriter(_destination(), engine)
    second.add(_point())
    result = await second.flush()
    assert result.written == 0
    assert result.duplicates == 1
    assert await _count(engine, second) == 1


@pytest.mark.asyncio
async def test_tag_values_are_coerced_to_column_types(engine: AsyncEngine) -> None:
    writer = PostgresWriter(_destination(), engine)
    writer.add(_point(status="503"))
    await writer.flush()

    async with engine.connect() as conn:
        row = (await conn.execute(select(writer.table))).mappings().one()
    assert row["user_id"] == "u-1"
    assert row["status_code"] == 503
    assert row["fields"] == {"latency": 1.5}


@pytest.mark.asyncio
async def test_failed_flush_keeps_batch_for_retry(engine: AsyncEngine) -> None:
    writer = PostgresWriter(_destination(auto_create_table=False), engine)
    writer.add(_point())
    writer.add(_point(user="u-2"))

    with pytest.raises(SinkWriteError) as info:
        await writer.flush()
    assert info.value.batch_size == 2
    assert writer.pending == 2

    await writer.ensure_schema()
    result = await writer.flush()
    assert result.written == 2
    assert writer.pending == 0


@pytest.mark.asyncio
async def test_size_trigger_inserts_in_background(engine: AsyncEngine) -> None:
    writer = PostgresWriter(_destination(batch_size=2), engine)
    writer.add(_point(user="a"))
    writer.add(_point(user="b"))
    await writer.drain()
    assert writer.pending == 0
    assert await _count(engine, writer) == 2


@pytest.mark.asyncio
async def test_size_trigger_flushes_once_per_full_batch(engine: AsyncEngine) -> None:
    writer = PostgresWriter(_destination(batch_size=2), engine)
    for user in ("a", "b", "c"):
        writer.add(_point(user=user))
    assert len(writer._background) == 1

    assert await writer.drain() == []
    assert writer.pending == 1
    assert await _count(engine, writer) == 2


@pytest.mark.asyncio
async def test_failing_size_flush_is_not_repeated_per_add(engine: AsyncEngine) -> None:
    writer = PostgresWriter(_destination(batch_size=10, auto_create_table=False), engine)
    for index in range(50):
        writer.add(_point(user=f"u-{index}"))
    assert len(writer._background) == 1

    errors = await writer.drain()
    assert len(errors) == 1
    assert isinstance(errors[0], SinkWriteError)
    assert errors[0].batch_size == 10
    assert writer.pending == 50


def test_seen_cache_evicts_oldest_half() -> None:
    cache = SeenHashCache(capacity=4)
    for key in "abcd":
        assert cache.add(key)
    assert not cache.add("a")
    assert cache.add("e")
    assert len(cache) == 3
    assert "a" not in cache and "b" not in cache
    assert all(key in cache for key in "cde")


def test_dedup_hash_uses_timestamp_and_tags() -> None:
    same = dedup_hash(_point(), ["user_id", "timestamp"])
    assert same == dedup_hash(_point(status="500"), ["user_id", "timestamp"])
    assert same != dedup_hash(_point(user="u-9"), ["user_id", "timestamp"])
    later = datetime(2024, 10, 15, 10, 30, 46, tzinfo=timezone.utc)
    assert same != dedup_hash(_point(timestamp=later), ["user_id", "timestamp"])


@pytest.mark.asyncio
async def test_flush_reports_earlier_background_failures(
    engine: AsyncEngine, caplog: pytest.LogCaptureFixture
) -> None:
    writer = PostgresWriter(_destination(batch_size=2, auto_create_table=False), engine)
    writer.add(_point(user="a"))
    writer.add(_point(user="b"))
    await writer._size_flush
    await writer.ensure_schema()

    with caplog.at_level(logging.INFO, logger="log_forwarder.sinks.postgres"):
        result = await writer.flush()

    assert result.written == 2
    assert "1 earlier background flush(es) failed" in caplog.text
    assert "retried" not in caplog.text
