"""Job control routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from log_forwarder.api.dependencies import get_app_settings, get_config_store, get_scheduler
from log_forwarder.core.config import Settings
from log_forwarder.core.errors import ConfigError
from log_forwarder.models.definitions import JobDefinition
from log_forwarder.models.dto import (
    ConnectionTestResponse,
    JobResponse,
    ReloadResponse,
    ResetLastRunRequest,
    ResetLastRunResponse,
    RunResponse,
)
from log_forwarder.pipeline.scheduler import JobScheduler
from log_forwarder.sources import create_adapter
from log_forwarder.store.config_store import ConfigStore
from log_forwarder.utils.time import resolve_zone

router = APIRouter()


@router.get("/jobs", response_model=list[JobResponse], summary="List jobs with schedule and run state")
async def list_jobs(
    store: ConfigStore = Depends(get_config_store),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> list[JobResponse]:
    scheduled = scheduler.scheduled_jobs()
    return [_to_response(job, store, scheduled) for job in store.list_jobs()]


@router.post("/jobs/reload", response_model=ReloadResponse, summary="Reload pipeline definitions")
async def reload_jobs(scheduler: JobScheduler = Depends(get_scheduler)) -> ReloadResponse:
    try:
        summary = scheduler.reload()
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ReloadResponse(**summary.to_dict())


@router.post(
    "/jobs/{job_id}/run",
    response_model=RunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a job execution now",
)
async def run_job(
    job_id: str,
    store: ConfigStore = Depends(get_config_store),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> RunResponse:
    if store.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    scheduler.run_now(job_id)
    return RunResponse(job_id=job_id)


@router.post(
    "/jobs/{job_id}/reset-last-run",
    response_model=ResetLastRunResponse,
    summary="Rewind a job's last run to backfill",
)
async def reset_last_run(
    job_id: str,
    request: ResetLastRunRequest,
    store: ConfigStore = Depends(get_config_store),
) -> ResetLastRunResponse:
    if store.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    rewound = store.reset_last_run(job_id, request.minutes)
    return ResetLastRunResponse(job_id=job_id, last_run_at=rewound)


@router.post("/sources/{source_id}/test", response_model=ConnectionTestResponse, summary="Test a source connection")
async def test_source(
    source_id: str,
    store: ConfigStore = Depends(get_config_store),
    settings: Settings = Depends(get_app_settings),
) -> ConnectionTestResponse:
    source = store.get_source(source_id)
    if source is None:
        raise HTTPException(status_code=404, detail="Source not found")
    adapter = create_adapter(source, timeout=settings.fetch_timeout_seconds, default_zone=resolve_zone(settings.timezone))
    try:
        check = await adapter.test_connection()
    finally:
        await adapter.close()
    return ConnectionTestResponse(source_id=source_id, ok=check.ok, detail=check.detail)


def _to_response(job: JobDefinition, store: ConfigStore, scheduled: dict) -> JobResponse:
    state = store.get_state(job.id)
    return JobResponse(
        **job.model_dump(),
        scheduled=job.id in scheduled,
        next_run_at=scheduled.get(job.id),
        last_run_at=state.last_run_at,
        last_success_at=state.last_success_at,
        last_status=state.last_status,
        run_count=state.run_count,
    )


__all__ = ["router"]
