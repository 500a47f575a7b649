"""Test fixtures for the log forwarder."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

RIDE_MESSAGE = (
    '2024-10-15 10:30:45.123 INFO RIDE_DASHBOARD_RESPONSE : '
    '{\\"userId\\":123,\\"nested\\":{\\"a\\":1}}'
)
RIDE_PATTERN = r"(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\.\d{3}).*?(\{[\s\S]*?\})"


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("LOGFWD_STATE_DB_PATH", str(tmp_path / "state.db"))
    monkeypatch.setenv("LOGFWD_PIPELINE_PATH", str(tmp_path / "pipeline.yaml"))
    monkeypatch.setenv("LOGFWD_WATCH_PIPELINE", "false")
    monkeypatch.delenv("LOGFWD_CONFIG", raising=False)

    from log_forwarder.api import dependencies as deps

    deps.reset_singletons()
    yield
    deps.reset_singletons()


@pytest.fixture(scope="session")
def ride_message() -> str:
    return RIDE_MESSAGE


@pytest.fixture(scope="session")
def ride_pattern() -> str:
    return RIDE_PATTERN
