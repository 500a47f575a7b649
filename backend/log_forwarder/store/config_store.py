"""Pipeline definitions from YAML plus per-job run bookkeeping in SQLite."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import ValidationError

from log_forwarder.core.errors import ConfigError
from log_forwarder.core.logging import get_logger
from log_forwarder.db.sqlite import SQLiteDatabase
from log_forwarder.models.definitions import (
    DestinationType,
    InfluxDestination,
    JobDefinition,
    MappingRule,
    PipelineDefinition,
    PostgresDestination,
    SourceDefinition,
)
from log_forwarder.utils.time import utc_now

logger = get_logger(__name__)


@dataclass(slots=True)
class JobState:
    job_id: str
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    last_status: str | None = None
    run_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_status": self.last_status,
            "run_count": self.run_count,
        }


def load_pipeline(path: Path) -> PipelineDefinition:
    """Parse and validate a pipeline file, raising ``ConfigError`` on any problem."""
    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read pipeline file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Pipeline file {path} must contain a mapping")
    try:
        return PipelineDefinition.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid pipeline definition in {path}: {_describe(exc)}") from exc


def _describe(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        problems.append(f"{location}: {error['msg']}")
    return "; ".join(problems)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class ConfigStore:
    """Read-mostly view of the pipeline; ``reload`` swaps definitions atomically."""

    def __init__(
        self,
        pipeline_path: Path | None,
        db: SQLiteDatabase,
        pipeline: PipelineDefinition | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.pipeline_path = pipeline_path
        self.db = db
        self.clock = clock
        self.db.ensure_schema()
        self._pipeline = pipeline if pipeline is not None else self._read()

    @property
    def pipeline(self) -> PipelineDefinition:
        return self._pipeline

    def _read(self) -> PipelineDefinition:
        if self.pipeline_path is None:
            return PipelineDefinition()
        if not self.pipeline_path.exists():
            logger.warning("Pipeline file %s not found; starting with no jobs", self.pipeline_path)
            return PipelineDefinition()
        return load_pipeline(self.pipeline_path)

    def reload(self) -> PipelineDefinition:
        """Re-read the pipeline file; on error the previous definitions stay active."""
        self._pipeline = self._read()
        logger.info(
            "Loaded %s sources and %s jobs",
            len(self._pipeline.sources),
            len(self._pipeline.jobs),
            extra={"ctx_path": str(self.pipeline_path)},
        )
        return self._pipeline

    def replace(self, pipeline: PipelineDefinition) -> None:
        self._pipeline = pipeline

    # Definitions -------------------------------------------------------

    def get_source(self, source_id: str) -> SourceDefinition | None:
        return next((source for source in self._pipeline.sources if source.id == source_id), None)

    def get_destination(
        self, destination_type: DestinationType, destination_id: str
    ) -> InfluxDestination | PostgresDestination | None:
        if destination_type == "influxdb":
            candidates: list[Any] = self._pipeline.destinations.influxdb
        elif destination_type == "postgresql":
            candidates = self._pipeline.destinations.postgresql
        else:
            return None
        return next((item for item in candidates if item.id == destination_id), None)

    def get_mapping_rules(self, source_id: str) -> list[MappingRule]:
        source = self.get_source(source_id)
        return list(source.mappings) if source else []

    def get_pattern(self, source_id: str) -> str | None:
        source = self.get_source(source_id)
        return source.pattern if source else None

    def list_jobs(self) -> list[JobDefinition]:
        return list(self._pipeline.jobs)

    def get_job(self, job_id: str) -> JobDefinition | None:
        return next((job for job in self._pipeline.jobs if job.id == job_id), None)

    # Run bookkeeping ----------------------------------------------------

    def get_state(self, job_id: str) -> JobState:
        row = self.db.query_one(
            "SELECT job_id, last_run_at, last_success_at, last_status, run_count FROM job_state WHERE job_id = ?",
            [job_id],
        )
        if row is None:
            return JobState(job_id=job_id)
        return JobState(
            job_id=row["job_id"],
            last_run_at=_parse_dt(row["last_run_at"]),
            last_success_at=_parse_dt(row["last_success_at"]),
            last_status=row["last_status"],
            run_count=row["run_count"],
        )

    def update_last_run(self, job_id: str, timestamp: datetime, success: bool) -> None:
        """Advance ``last_run_at`` always and ``last_success_at`` only on success."""
        stamp = timestamp.isoformat()
        self.db.execute(
            """
            INSERT INTO job_state (job_id, last_run_at, last_success_at, last_status, run_count, updated_at)
            VALUES (?, ?, ?, ?, 1, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                last_run_at = excluded.last_run_at,
                last_success_at = COALESCE(excluded.last_success_at, job_state.last_success_at),
                last_status = excluded.last_status,
                run_count = job_state.run_count + 1,
                updated_at = excluded.updated_at
            """,
            [job_id, stamp, stamp if success else None, "success" if success else "failed", stamp],
        )

    def reset_last_run(self, job_id: str, minutes: int) -> datetime:
        """Rewind ``last_run_at`` so the next run starts ``minutes`` back (plus lookback)."""
        now = self.clock()
        rewound = now - timedelta(minutes=minutes)
        self.db.execute(
            """
            INSERT INTO job_state (job_id, last_run_at, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                last_run_at = excluded.last_run_at,
                updated_at = excluded.updated_at
            """,
            [job_id, rewound.isoformat(), now.isoformat()],
        )
        logger.info("Reset last run of %s to %s", job_id, rewound.isoformat(), extra={"ctx_job": job_id})
        return rewound


__all__ = ["ConfigStore", "JobState", "load_pipeline"]
