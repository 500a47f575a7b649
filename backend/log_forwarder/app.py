"""FastAPI application setup for the log forwarder."""

from __future__ import annotations

from fastapi import FastAPI

from log_forwarder.api.dependencies import (
    get_activity_log,
    get_app_settings,
    get_job_runner,
    get_scheduler,
    get_watcher,
)
from log_forwarder.api.routes_admin import router as admin_router
from log_forwarder.api.routes_jobs import router as jobs_router
from log_forwarder.core.logging import configure_logging, get_logger

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="Log Forwarder",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.include_router(jobs_router, prefix="", tags=["jobs"])
app.include_router(admin_router, prefix="", tags=["admin"])


@app.on_event("startup")
async def startup() -> None:
    """Prune old activity, start the scheduler and the pipeline watcher."""
    settings = get_app_settings()
    configure_logging(settings.log_level, use_json=settings.log_json)
    get_activity_log().prune(settings.activity_retention_days)
    get_scheduler().start()
    if settings.watch_pipeline and not get_watcher().start():
        logger.warning("Not watching %s: directory does not exist", settings.pipeline_path)


@app.on_event("shutdown")
async def shutdown() -> None:
    """Stop triggers first, then flush writers and release connection pools."""
    get_watcher().stop()
    await get_scheduler().shutdown()
    await get_job_runner().close()


@app.get("/health", tags=["admin"])
def health() -> dict[str, bool]:
    """Simple liveness check."""
    return {"ok": True}
