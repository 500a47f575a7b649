"""Relational sink: deduplicating batched inserts through SQLAlchemy's async engine."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Iterator

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Table,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.schema import CreateIndex, CreateSchema, CreateTable

from log_forwarder.core.errors import SinkWriteError, classify_error
from log_forwarder.core.logging import get_logger
from log_forwarder.models.definitions import PostgresDestination
from log_forwarder.models.entities import FlushResult, Point
from log_forwarder.sinks.base import BatchWriter
from log_forwarder.sinks.column_types import ColumnType, resolve_column_type
from log_forwarder.sinks.dedupe import SeenHashCache, dedup_hash

logger = get_logger(__name__)

INSERT_CHUNK_SIZE = 1000

_INSERTS = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


def build_table(destination: PostgresDestination, metadata: MetaData | None = None) -> Table:
    """Describe the destination table: id, tag columns, timestamp, fields JSON, inserted_at."""
    metadata = metadata or MetaData()
    name = destination.table_name
    columns: list[Any] = [
        Column("id", BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True)
    ]
    tag_names = set()
    for tag in destination.tag_columns:
        tag_names.add(tag.name)
        columns.append(Column(tag.name, resolve_column_type(tag.type).sql_type, nullable=not tag.required))
    if "timestamp" not in tag_names:
        columns.append(Column("timestamp", DateTime(timezone=True), nullable=False))
    columns.append(Column("fields", JSON().with_variant(JSONB(), "postgresql"), nullable=False))
    columns.append(Column("inserted_at", DateTime(timezone=True), server_default=func.now()))
    if destination.dedup_keys:
        columns.append(UniqueConstraint(*destination.dedup_keys, name=f"uq_{name}_dedup"))

    table = Table(name, metadata, *columns, schema=destination.schema_name)

    Index(f"idx_{name}_timestamp", table.c.timestamp)
    Index(f"idx_{name}_fields", table.c.fields, postgresql_using="gin")
    for tag in destination.tag_columns:
        if not tag.indexed:
            continue
        column = table.c[tag.name]
        where = None if tag.required else column.isnot(None)
        Index(f"idx_{name}_{tag.name}", column, postgresql_where=where)
    return table


def _chunks(rows: list[dict[str, Any]], size: int) -> Iterator[list[dict[str, Any]]]:
    for offset in range(0, len(rows), size):
        yield rows[offset : offset + size]


class PostgresWriter(BatchWriter):
    """Batching writer with two layers of deduplication.

    A bounded in-memory hash cache drops repeats before they are buffered and
    a unique constraint plus ``ON CONFLICT DO NOTHING`` catches the rest. A
    failed batch stays buffered and is retried by the next flush.
    """

    sink = "postgresql"

    def __init__(
        self,
        destination: PostgresDestination,
        engine: AsyncEngine,
        dedup_cache_size: int = 10_000,
        use_memory_dedup: bool = True,
        ddl_timeout: float = 30.0,
    ) -> None:
        super().__init__(destination.id, destination.batch_size, destination.batch_interval_seconds)
        self.destination = destination
        self.engine = engine
        self.table = build_table(destination)
        self.dedup_keys = list(destination.dedup_keys)
        self.use_memory_dedup = use_memory_dedup and bool(self.dedup_keys)
        self.seen = SeenHashCache(dedup_cache_size)
        self.ddl_timeout = ddl_timeout
        self._column_types: dict[str, ColumnType] = {
            tag.name: resolve_column_type(tag.type) for tag in destination.tag_columns
        }
        self._schema_ready = not destination.auto_create_table
        self._lock = asyncio.Lock()

    @property
    def qualified_name(self) -> str:
        return self.table.fullname

    async def ensure_schema(self) -> None:
        """Create the schema objects if missing; safe to call repeatedly."""
        async with self.engine.begin() as conn:
            schema = self.table.schema
            if schema and conn.dialect.name == "postgresql":
                await asyncio.wait_for(conn.execute(CreateSchema(schema, if_not_exists=True)), self.ddl_timeout)
            await asyncio.wait_for(conn.execute(CreateTable(self.table, if_not_exists=True)), self.ddl_timeout)
            for index in sorted(self.table.indexes, key=lambda idx: idx.name or ""):
                await asyncio.wait_for(conn.execute(CreateIndex(index, if_not_exists=True)), self.ddl_timeout)
        self._schema_ready = True
        logger.info("Ensured table %s", self.qualified_name, extra={"ctx_destination": self.destination_id})

    def _accept(self, point: Point) -> bool:
        if not self.use_memory_dedup:
            return True
        if self.seen.add(dedup_hash(point, self.dedup_keys)):
            return True
        logger.debug("Skipping duplicate point", extra={"ctx_destination": self.destination_id})
        return False

    def _begin_flush(self) -> Coroutine[Any, Any, FlushResult]:
        return self._insert_pending(len(self._buffer))

    def _size_flush_allowed(self) -> bool:
        # Rows stay buffered until committed, so at most one size flush runs at a time.
        return not self._size_flush_pending()

    def _after_background_errors(self, errors: list[Exception]) -> None:
        if errors:
            logger.info(
                "%s earlier background flush(es) failed; their rows stayed buffered",
                len(errors),
                extra={"ctx_destination": self.destination_id},
            )

    async def _insert_pending(self, limit: int) -> FlushResult:
        """Insert at most ``limit`` rows from the head of the buffer."""
        async with self._lock:
            batch = self._buffer[:limit]
            if not batch:
                return FlushResult()
            try:
                if not self._schema_ready:
                    await self.ensure_schema()
                rows = [self._row(point) for point in batch]
                inserted = 0
                async with self.engine.begin() as conn:
                    for chunk in _chunks(rows, INSERT_CHUNK_SIZE):
                        result = await conn.execute(self._insert_statement(conn.dialect.name, chunk))
                        inserted += len(result.all())
            except (SQLAlchemyError, OSError, asyncio.TimeoutError, ValueError) as exc:
                kind = classify_error(exc)
                logger.error(
                    "Error writing %s rows to %s, keeping them for retry: %s",
                    len(batch),
                    self.qualified_name,
                    exc,
                    extra={"ctx_destination": self.destination_id, "ctx_kind": kind},
                )
                raise SinkWriteError(f"PostgreSQL write failed: {exc}", kind=kind, batch_size=len(batch)) from exc

            del self._buffer[: len(batch)]
            duplicates = len(batch) - inserted
            self._record_written(inserted)
            logger.info(
                "Flushed %s rows to %s (%s duplicates skipped)",
                inserted,
                self.qualified_name,
                duplicates,
                extra={"ctx_destination": self.destination_id},
            )
            return FlushResult(written=inserted, duplicates=duplicates)

    def _insert_statement(self, dialect: str, rows: list[dict[str, Any]]):
        insert = _INSERTS.get(dialect)
        if insert is None:
            raise ValueError(f"Unsupported SQL dialect: {dialect}")
        statement = insert(self.table).values(rows)
        if self.dedup_keys:
            statement = statement.on_conflict_do_nothing(index_elements=self.dedup_keys)
        return statement.returning(self.table.c.id)

    def _row(self, point: Point) -> dict[str, Any]:
        row: dict[str, Any] = {}
        for name, column_type in self._column_types.items():
            value = point.timestamp if name == "timestamp" else point.tags.get(name)
            row[name] = column_type.convert(value) if value is not None else None
        if "timestamp" not in self._column_types:
            row["timestamp"] = point.timestamp
        row["fields"] = dict(point.fields)
        return row


def destination_url(destination: PostgresDestination) -> str | URL:
    if destination.dsn:
        return destination.dsn
    return URL.create(
        "postgresql+asyncpg",
        username=destination.username,
        password=destination.password,
        host=destination.host,
        port=destination.port,
        database=destination.database,
    )


class EngineRegistry:
    """One async engine (and connection pool) per relational destination."""

    def __init__(self) -> None:
        self._engines: dict[str, tuple[str, AsyncEngine]] = {}
        self._stale: list[AsyncEngine] = []

    def get(self, destination: PostgresDestination) -> AsyncEngine:
        url = destination_url(destination)
        key = url.render_as_string(hide_password=False) if isinstance(url, URL) else url
        cached = self._engines.get(destination.id)
        if cached is not None and cached[0] == key:
            return cached[1]
        if cached is not None:
            # Connection details changed; the old engine is disposed by the next dispose_all.
            self._stale.append(cached[1])
        options: dict[str, Any] = {"pool_pre_ping": True}
        if key.startswith("postgresql"):
            options["pool_size"] = destination.pool_size
        engine = create_async_engine(url, **options)
        self._engines[destination.id] = (key, engine)
        return engine

    async def dispose_all(self) -> None:
        engines = [engine for _, engine in self._engines.values()] + self._stale
        self._engines.clear()
        self._stale.clear()
        for engine in engines:
            await engine.dispose()


__all__ = ["build_table", "PostgresWriter", "EngineRegistry", "destination_url", "INSERT_CHUNK_SIZE"]
