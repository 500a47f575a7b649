"""Administrative routes: metrics and the activity log."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from log_forwarder.api.dependencies import get_activity_log
from log_forwarder.core.metrics import metrics_response
from log_forwarder.models.dto import ActivityResponse
from log_forwarder.store.activity import ActivityLog

router = APIRouter()


@router.get("/activity", response_model=list[ActivityResponse], summary="Recent activity events")
async def list_activity(
    job_id: str | None = Query(default=None),
    level: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    activity: ActivityLog = Depends(get_activity_log),
) -> list[ActivityResponse]:
    return [ActivityResponse(**event.to_dict()) for event in activity.list(job_id=job_id, level=level, limit=limit)]


@router.get("/metrics", summary="Prometheus metrics")
async def get_metrics():
    return metrics_response()


__all__ = ["router"]
