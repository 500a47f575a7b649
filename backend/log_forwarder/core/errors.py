"""Exception types and error classification."""

from __future__ import annotations

import asyncio

import requests


class ForwarderError(Exception):
    """Base class for errors raised by the forwarder."""


class ConfigError(ForwarderError):
    """Pipeline definitions are missing or invalid."""


class SourceFetchError(ForwarderError):
    """A source adapter failed to return records."""

    def __init__(self, message: str, kind: str = "other") -> None:
        super().__init__(message)
        self.kind = kind


class SinkWriteError(ForwarderError):
    """A sink writer failed to flush its batch."""

    def __init__(self, message: str, kind: str = "other", batch_size: int = 0) -> None:
        super().__init__(message)
        self.kind = kind
        self.batch_size = batch_size


CONNECTION_REFUSED = "connection_refused"
TIMEOUT = "timeout"
AUTH_FAILED = "auth_failed"
OTHER = "other"


def classify_error(exc: BaseException) -> str:
    """Bucket an exception into a coarse diagnostic category."""
    if isinstance(exc, (SourceFetchError, SinkWriteError)):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, requests.Timeout)):
        return TIMEOUT
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        if exc.response.status_code in (401, 403):
            return AUTH_FAILED
        return OTHER
    if isinstance(exc, (requests.ConnectionError, ConnectionRefusedError)):
        return CONNECTION_REFUSED
    text = str(exc).lower()
    if "password authentication failed" in text or "permission denied" in text:
        return AUTH_FAILED
    if "connection refused" in text or "connect call failed" in text:
        return CONNECTION_REFUSED
    return OTHER


__all__ = [
    "ForwarderError",
    "ConfigError",
    "SourceFetchError",
    "SinkWriteError",
    "CONNECTION_REFUSED",
    "TIMEOUT",
    "AUTH_FAILED",
    "OTHER",
    "classify_error",
]
