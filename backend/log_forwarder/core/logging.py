"""Logging utilities for the log forwarder."""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Mapping
from urllib.parse import urlsplit, urlunsplit

import orjson

_DEFAULT_LEVEL = os.environ.get("LOGFWD_LOG_LEVEL", "INFO")

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "token",
        "api_token",
        "proxy_password",
        "auth",
        "authorization",
    }
)
REDACTED = "***REDACTED***"


class JsonFormatter(logging.Formatter):
    """Lightweight JSON log formatter."""

    default_fields = ("timestamp", "level", "name", "message")

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - thin wrapper
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = record.stack_info
        for key, value in record.__dict__.items():
            if key.startswith("ctx_"):
                payload[key] = value
        return orjson.dumps(payload, default=str).decode("utf-8")


def configure_logging(level: str | int = _DEFAULT_LEVEL, use_json: bool = True) -> None:
    """Configure root logger with optional JSON formatting."""
    logging.captureWarnings(True)
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    if use_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.handlers = [handler]


def get_logger(name: str = "log_forwarder") -> logging.Logger:
    """Return configured logger, configuring root on first call."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


def redact(data: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``data`` with credentials masked, recursing into mappings."""
    sanitized: dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() in SENSITIVE_KEYS:
            sanitized[key] = REDACTED if value else None
        elif isinstance(value, Mapping):
            sanitized[key] = redact(value)
        elif isinstance(value, str) and key.lower().endswith("url"):
            sanitized[key] = redact_url(value)
        else:
            sanitized[key] = value
    return sanitized


def redact_url(url: str) -> str:
    """Mask the password component of a URL, if any."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.password:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urlunsplit(parts._replace(netloc=netloc))


__all__ = ["configure_logging", "get_logger", "redact", "redact_url"]
