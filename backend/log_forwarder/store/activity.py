"""Activity log persisted in the state database."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Literal, Mapping

import orjson

from log_forwarder.core.logging import get_logger, redact
from log_forwarder.db.sqlite import SQLiteDatabase
from log_forwarder.utils.time import utc_now

logger = get_logger(__name__)

Level = Literal["info", "warning", "error"]


@dataclass(slots=True)
class ActivityEvent:
    id: int
    created_at: datetime
    level: str
    job_id: str | None
    message: str
    processed: int = 0
    failed: int = 0
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "level": self.level,
            "job_id": self.job_id,
            "message": self.message,
            "processed": self.processed,
            "failed": self.failed,
            "details": self.details,
        }


class ActivityLog:
    """Append-only event log; recording never raises into the caller."""

    def __init__(self, db: SQLiteDatabase, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self.clock = clock
        self.db.ensure_schema()

    def record(
        self,
        job_id: str | None,
        level: Level,
        message: str,
        processed: int = 0,
        failed: int = 0,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        payload = orjson.dumps(redact(details), default=str).decode("utf-8") if details else None
        try:
            self.db.execute(
                "INSERT INTO activity_logs (created_at, level, job_id, message, processed, failed, details)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                [self.clock().isoformat(), level, job_id, message, processed, failed, payload],
            )
        except sqlite3.Error:
            logger.exception("Failed to record activity event", extra={"ctx_job": job_id})

    def list(self, job_id: str | None = None, level: str | None = None, limit: int = 100) -> list[ActivityEvent]:
        clauses: list[str] = []
        params: list[Any] = []
        if job_id:
            clauses.append("job_id = ?")
            params.append(job_id)
        if level:
            clauses.append("level = ?")
            params.append(level)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.query(
            f"SELECT * FROM activity_logs {where} ORDER BY id DESC LIMIT ?",
            [*params, limit],
        )
        return [
            ActivityEvent(
                id=row["id"],
                created_at=datetime.fromisoformat(row["created_at"]),
                level=row["level"],
                job_id=row["job_id"],
                message=row["message"],
                processed=row["processed"],
                failed=row["failed"],
                details=orjson.loads(row["details"]) if row["details"] else None,
            )
            for row in rows
        ]

    def prune(self, older_than_days: int) -> int:
        cutoff = self.clock() - timedelta(days=older_than_days)
        removed = self.db.execute("DELETE FROM activity_logs WHERE created_at < ?", [cutoff.isoformat()])
        if removed:
            logger.info("Pruned %s activity events older than %s days", removed, older_than_days)
        return removed


__all__ = ["ActivityEvent", "ActivityLog", "Level"]
