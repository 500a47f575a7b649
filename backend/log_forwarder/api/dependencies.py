"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from log_forwarder.core.config import Settings, get_settings
from log_forwarder.db.sqlite import SQLiteDatabase
from log_forwarder.pipeline.runner import JobRunner
from log_forwarder.pipeline.scheduler import JobScheduler
from log_forwarder.pipeline.watcher import PipelineWatcher
from log_forwarder.store.activity import ActivityLog
from log_forwarder.store.config_store import ConfigStore

_DB: SQLiteDatabase | None = None
_STORE: ConfigStore | None = None
_ACTIVITY: ActivityLog | None = None
_RUNNER: JobRunner | None = None
_SCHEDULER: JobScheduler | None = None
_WATCHER: PipelineWatcher | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


def get_database() -> SQLiteDatabase:
    global _DB
    if _DB is None:
        db = SQLiteDatabase(get_app_settings().state_db_path)
        db.ensure_schema()
        _DB = db
    return _DB


def get_config_store() -> ConfigStore:
    global _STORE
    if _STORE is None:
        _STORE = ConfigStore(get_app_settings().pipeline_path, get_database())
    return _STORE


def get_activity_log() -> ActivityLog:
    global _ACTIVITY
    if _ACTIVITY is None:
        _ACTIVITY = ActivityLog(get_database())
    return _ACTIVITY


def get_job_runner() -> JobRunner:
    global _RUNNER
    if _RUNNER is None:
        _RUNNER = JobRunner(get_config_store(), get_activity_log(), get_app_settings())
    return _RUNNER


def get_scheduler() -> JobScheduler:
    global _SCHEDULER
    if _SCHEDULER is None:
        _SCHEDULER = JobScheduler(get_config_store(), get_job_runner(), timezone=get_app_settings().timezone)
    return _SCHEDULER


def get_watcher() -> PipelineWatcher:
    global _WATCHER
    if _WATCHER is None:
        scheduler = get_scheduler()
        _WATCHER = PipelineWatcher(get_app_settings().pipeline_path, lambda _path: scheduler.request_reload())
    return _WATCHER


def reset_singletons() -> None:
    global _DB, _STORE, _ACTIVITY, _RUNNER, _SCHEDULER, _WATCHER
    if _DB is not None:
        _DB.close()
    get_app_settings.cache_clear()
    get_settings.cache_clear()
    _DB = None
    _STORE = None
    _ACTIVITY = None
    _RUNNER = None
    _SCHEDULER = None
    _WATCHER = None


__all__ = [
    "get_app_settings",
    "get_database",
    "get_config_store",
    "get_activity_log",
    "get_job_runner",
    "get_scheduler",
    "get_watcher",
    "reset_singletons",
]
