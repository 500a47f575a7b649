"""Internal dataclasses passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

FieldValue = str | int | float | bool


@dataclass(frozen=True, slots=True)
class LogRecord:
    """One raw record returned by a source adapter."""

    timestamp: datetime | None
    message: str
    raw: Any = None


@dataclass(slots=True)
class ExtractedDocument:
    """Parsed JSON payload plus the optional side-channel timestamp string."""

    data: Any
    timestamp: str | None = None


@dataclass(slots=True)
class Point:
    tags: dict[str, str]
    fields: dict[str, FieldValue]
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class TimeWindow:
    start: datetime
    end: datetime

    @property
    def minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


@dataclass(slots=True)
class FailureSample:
    """Truncated diagnostic for a record that could not be processed."""

    message: str
    timestamp: str | None
    reason: str

    def to_dict(self) -> dict[str, str | None]:
        return {"message": self.message, "timestamp": self.timestamp, "reason": self.reason}


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one job execution."""

    job_id: str
    status: Literal["completed", "failed", "skipped"] = "completed"
    processed: int = 0
    failed: int = 0
    fetched: int = 0
    failure_samples: list[FailureSample] = field(default_factory=list)
    window: TimeWindow | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "processed": self.processed,
            "failed": self.failed,
            "fetched": self.fetched,
            "failure_samples": [sample.to_dict() for sample in self.failure_samples],
            "window": (
                {"start": self.window.start.isoformat(), "end": self.window.end.isoformat()}
                if self.window
                else None
            ),
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class ConnectionCheck:
    ok: bool
    detail: str


@dataclass(frozen=True, slots=True)
class FlushResult:
    written: int = 0
    duplicates: int = 0


__all__ = [
    "FieldValue",
    "LogRecord",
    "ExtractedDocument",
    "Point",
    "TimeWindow",
    "FailureSample",
    "ExecutionResult",
    "ConnectionCheck",
    "FlushResult",
]
