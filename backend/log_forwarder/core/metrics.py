"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

JOB_RUNS = Counter(
    "logfwd_job_runs_total",
    "Job executions by outcome",
    labelnames=("job", "status"),
    registry=REGISTRY,
)

RECORDS_PROCESSED = Counter(
    "logfwd_records_processed_total",
    "Log records mapped into points",
    labelnames=("job",),
    registry=REGISTRY,
)

RECORDS_FAILED = Counter(
    "logfwd_records_failed_total",
    "Log records that failed extraction or mapping",
    labelnames=("job",),
    registry=REGISTRY,
)

POINTS_WRITTEN = Counter(
    "logfwd_points_written_total",
    "Points accepted by a sink",
    labelnames=("sink", "destination"),
    registry=REGISTRY,
)

FLUSH_LATENCY = Histogram(
    "logfwd_flush_seconds",
    "Latency of sink flushes",
    labelnames=("sink",),
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "JOB_RUNS",
    "RECORDS_PROCESSED",
    "RECORDS_FAILED",
    "POINTS_WRITTEN",
    "FLUSH_LATENCY",
    "metrics_response",
]
