"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class JobResponse(BaseModel):
    id: str
    source_id: str
    destination_type: Literal["influxdb", "postgresql"]
    destination_id: str
    schedule: str
    lookback_minutes: int
    max_lookback_minutes: int
    enabled: bool
    scheduled: bool = False
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    last_status: str | None = None
    run_count: int = 0


class ReloadResponse(BaseModel):
    scheduled: list[str]
    removed: list[str]
    unchanged: list[str]


class RunResponse(BaseModel):
    status: Literal["started"] = "started"
    job_id: str


class ResetLastRunRequest(BaseModel):
    minutes: int = Field(default=60, ge=0, description="Rewind last_run_at this many minutes before now")


class ResetLastRunResponse(BaseModel):
    job_id: str
    last_run_at: datetime


class ConnectionTestResponse(BaseModel):
    source_id: str
    ok: bool
    detail: str


class ActivityResponse(BaseModel):
    id: int
    created_at: datetime
    level: str
    job_id: str | None = None
    message: str
    processed: int = 0
    failed: int = 0
    details: dict[str, Any] | None = None


__all__ = [
    "JobResponse",
    "ReloadResponse",
    "RunResponse",
    "ResetLastRunRequest",
    "ResetLastRunResponse",
    "ConnectionTestResponse",
    "ActivityResponse",
]
