"""CLI entrypoint for the log forwarder."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Optional

import requests
import typer
import uvicorn

from log_forwarder.core.config import Settings, get_settings
from log_forwarder.core.errors import ConfigError
from log_forwarder.core.logging import configure_logging
from log_forwarder.db.sqlite import SQLiteDatabase
from log_forwarder.models.entities import ExecutionResult
from log_forwarder.pipeline.runner import JobRunner
from log_forwarder.store.activity import ActivityLog
from log_forwarder.store.config_store import ConfigStore, load_pipeline

app = typer.Typer(name="logfwd", help="Log forwarder command-line interface")

DEFAULT_HOST = "http://127.0.0.1:5180"


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip('/')
    env_host = os.environ.get("LOGFWD_HOST")
    if env_host:
        return env_host.rstrip('/')
    return DEFAULT_HOST


def _request(method: str, path: str, host: Optional[str] = None, **kwargs) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}{path}"
    try:
        resp = requests.request(method, url, timeout=60, **kwargs)
    except requests.ConnectionError as exc:
        typer.echo(f"Cannot reach {base}: {exc}", err=True)
        raise typer.Exit(code=1)
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def _echo(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _local_settings(config: Optional[Path]) -> Settings:
    settings = Settings.from_yaml(config) if config else get_settings()
    configure_logging(settings.log_level, use_json=settings.log_json)
    return settings


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (defaults to api.host)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (defaults to api.port)"),
) -> None:
    """Run the scheduler and control API."""
    settings = get_settings()
    uvicorn.run(
        "log_forwarder.app:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )


@app.command()
def run(
    job_id: str = typer.Argument(..., help="Job identifier"),
    config: Optional[Path] = typer.Option(None, "--config", help="Settings YAML file"),
) -> None:
    """Execute one job in this process and print the result."""
    settings = _local_settings(config)
    try:
        result = asyncio.run(_run_once(settings, job_id))
    except ConfigError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)
    _echo(result.to_dict())
    if result.status == "failed":
        raise typer.Exit(code=1)


async def _run_once(settings: Settings, job_id: str) -> ExecutionResult:
    db = SQLiteDatabase(settings.state_db_path)
    try:
        store = ConfigStore(settings.pipeline_path, db)
        runner = JobRunner(store, ActivityLog(db), settings)
        try:
            return await runner.run_by_id(job_id)
        finally:
            await runner.close()
    finally:
        db.close()


@app.command()
def validate(
    path: Optional[Path] = typer.Argument(None, help="Pipeline file (defaults to pipeline_path)"),
) -> None:
    """Check a pipeline file without running anything."""
    target = path or get_settings().pipeline_path
    try:
        pipeline = load_pipeline(target.expanduser())
    except ConfigError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    _echo(
        {
            "sources": [source.id for source in pipeline.sources],
            "influxdb": [item.id for item in pipeline.destinations.influxdb],
            "postgresql": [item.id for item in pipeline.destinations.postgresql],
            "jobs": [job.id for job in pipeline.jobs],
        }
    )


@app.command()
def jobs(
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """List jobs known to the running service."""
    resp = _request("GET", "/jobs", host=host)
    _echo(resp.json())


@app.command()
def trigger(
    job_id: str = typer.Argument(..., help="Job identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Ask the running service to start a job now."""
    resp = _request("POST", f"/jobs/{job_id}/run", host=host)
    _echo(resp.json())


@app.command()
def reload(
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Reload pipeline definitions in the running service."""
    resp = _request("POST", "/jobs/reload", host=host)
    _echo(resp.json())


@app.command("reset-last-run")
def reset_last_run(
    job_id: str = typer.Argument(..., help="Job identifier"),
    minutes: int = typer.Option(60, "--minutes", help="Rewind this many minutes before now"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Rewind a job's last run so the next execution backfills."""
    resp = _request("POST", f"/jobs/{job_id}/reset-last-run", host=host, json={"minutes": minutes})
    _echo(resp.json())


@app.command("test-source")
def test_source(
    source_id: str = typer.Argument(..., help="Source identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Check connectivity of a configured source."""
    resp = _request("POST", f"/sources/{source_id}/test", host=host)
    payload = resp.json()
    _echo(payload)
    if not payload.get("ok"):
        raise typer.Exit(code=1)


@app.command()
def activity(
    job_id: Optional[str] = typer.Option(None, "--job", help="Only events for this job"),
    level: Optional[str] = typer.Option(None, "--level", help="info, warning or error"),
    limit: int = typer.Option(20, "--limit", help="Number of events"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Show recent activity events."""
    params: dict[str, object] = {"limit": limit}
    if job_id:
        params["job_id"] = job_id
    if level:
        params["level"] = level
    resp = _request("GET", "/activity", host=host, params=params)
    _echo(resp.json())


if __name__ == "__main__":
    app()
