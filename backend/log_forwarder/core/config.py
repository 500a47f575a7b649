"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "LOGFWD_"
DEFAULT_CONFIG_PATH = Path("~/.config/log-forwarder/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "state_db_path"): "state_db_path",
    ("storage", "pipeline_path"): "pipeline_path",
    ("runtime", "timezone"): "timezone",
    ("runtime", "fetch_timeout_seconds"): "fetch_timeout_seconds",
    ("runtime", "write_timeout_seconds"): "write_timeout_seconds",
    ("runtime", "ddl_timeout_seconds"): "ddl_timeout_seconds",
    ("runtime", "max_failure_samples"): "max_failure_samples",
    ("runtime", "dedup_cache_size"): "dedup_cache_size",
    ("runtime", "watch_pipeline"): "watch_pipeline",
    ("activity", "retention_days"): "activity_retention_days",
    ("logging", "level"): "log_level",
    ("logging", "json"): "log_json",
    ("api", "host"): "api_host",
    ("api", "port"): "api_port",
}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    pipeline_path: Path = Field(default=Path("~/.config/log-forwarder/pipeline.yaml"))
    state_db_path: Path = Field(default=Path.home() / ".log-forwarder" / "state.db")
    timezone: str = "UTC"
    fetch_timeout_seconds: float = 60.0
    write_timeout_seconds: float = 30.0
    ddl_timeout_seconds: float = 30.0
    max_failure_samples: int = Field(default=5, ge=0)
    dedup_cache_size: int = Field(default=10_000, ge=2)
    activity_retention_days: int = 30
    watch_pipeline: bool = True
    log_level: str = "INFO"
    log_json: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = 5180

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("pipeline_path", "state_db_path", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("paths must be a path or string")

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with LOGFWD_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings"]
