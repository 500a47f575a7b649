"""Cron scheduling of jobs on the asyncio event loop."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from apscheduler.job import Job as ScheduledJob
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from log_forwarder.core.errors import ConfigError
from log_forwarder.core.logging import get_logger
from log_forwarder.models.definitions import JobDefinition
from log_forwarder.pipeline.runner import JobRunner
from log_forwarder.store.config_store import ConfigStore
from log_forwarder.utils.time import resolve_zone

logger = get_logger(__name__)


@dataclass(slots=True)
class ReloadSummary:
    scheduled: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {"scheduled": self.scheduled, "removed": self.removed, "unchanged": self.unchanged}


class JobScheduler:
    """Owns the registry of job id -> cron trigger.

    Registering an id that is already present cancels the old trigger first.
    Manual runs go through the same runner as detached tasks and leave the
    registry untouched.
    """

    def __init__(
        self,
        store: ConfigStore,
        runner: JobRunner,
        timezone: str = "UTC",
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.zone = resolve_zone(timezone)
        self._scheduler = scheduler or AsyncIOScheduler(timezone=self.zone)
        self._registry: dict[str, tuple[JobDefinition, ScheduledJob]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending_reload: asyncio.TimerHandle | None = None

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start the scheduler on the running loop and register enabled jobs."""
        self._loop = asyncio.get_running_loop()
        if not self._scheduler.running:
            self._scheduler.start()
        for job in self.store.list_jobs():
            if job.enabled:
                self.register(job)
        logger.info("Scheduler started with %s jobs", len(self._registry))

    def register(self, job: JobDefinition) -> None:
        self.unregister(job.id)
        trigger = CronTrigger.from_crontab(job.schedule, timezone=self.zone)
        scheduled = self._scheduler.add_job(
            self._fire,
            trigger,
            args=[job.id],
            id=job.id,
            name=f"job:{job.id}",
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        self._registry[job.id] = (job, scheduled)
        logger.info("Scheduled job %s (%s)", job.id, job.schedule, extra={"ctx_job": job.id})

    def unregister(self, job_id: str) -> bool:
        entry = self._registry.pop(job_id, None)
        if entry is None:
            return False
        _, scheduled = entry
        scheduled.remove()
        logger.info("Unscheduled job %s", job_id, extra={"ctx_job": job_id})
        return True

    def reload(self) -> ReloadSummary:
        """Re-read definitions and reconcile the registry.

        Raises ``ConfigError`` when the pipeline file is invalid; the current
        schedule is left as it was in that case.
        """
        self.store.reload()
        desired = {job.id: job for job in self.store.list_jobs() if job.enabled}
        summary = ReloadSummary()
        for job_id in list(self._registry):
            if job_id not in desired:
                self.unregister(job_id)
                summary.removed.append(job_id)
        for job_id, job in desired.items():
            current = self._registry.get(job_id)
            if current is not None and current[0] == job:
                summary.unchanged.append(job_id)
                continue
            self.register(job)
            summary.scheduled.append(job_id)
        if summary.removed:
            release = self.runner.release(list(summary.removed))
            self._track(asyncio.get_running_loop().create_task(release, name="release-writers"))
        logger.info(
            "Reloaded jobs: %s scheduled, %s removed, %s unchanged",
            len(summary.scheduled),
            len(summary.removed),
            len(summary.unchanged),
        )
        return summary

    def request_reload(self, delay: float = 0.5) -> None:
        """Thread-safe, debounced reload used by the pipeline file watcher."""
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._debounce_reload, delay)

    def _debounce_reload(self, delay: float) -> None:
        if self._pending_reload is not None:
            self._pending_reload.cancel()
        self._pending_reload = asyncio.get_running_loop().call_later(delay, self._reload_logged)

    def _reload_logged(self) -> None:
        self._pending_reload = None
        try:
            self.reload()
        except ConfigError as exc:
            logger.error("Pipeline reload failed, keeping previous schedule: %s", exc)

    def run_now(self, job_id: str) -> asyncio.Task[Any]:
        """Start a detached execution; the outcome lands in the activity log."""
        task = asyncio.get_running_loop().create_task(self._run_detached(job_id), name=f"manual:{job_id}")
        self._track(task)
        logger.info("Manual run of %s started", job_id, extra={"ctx_job": job_id})
        return task

    def scheduled_jobs(self) -> dict[str, datetime | None]:
        return {
            job_id: getattr(scheduled, "next_run_time", None)
            for job_id, (_, scheduled) in self._registry.items()
        }

    async def shutdown(self) -> None:
        if self._pending_reload is not None:
            self._pending_reload.cancel()
            self._pending_reload = None
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._registry.clear()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fire(self, job_id: str) -> None:
        await self._run_detached(job_id)

    async def _run_detached(self, job_id: str) -> None:
        try:
            await self.runner.run_by_id(job_id)
        except Exception:
            logger.exception("Unhandled error while running job %s", job_id, extra={"ctx_job": job_id})


__all__ = ["JobScheduler", "ReloadSummary"]
