"""Source adapter interface."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable

import requests

from log_forwarder.core.errors import SourceFetchError, classify_error
from log_forwarder.models.definitions import ProxySettings
from log_forwarder.models.entities import ConnectionCheck, LogRecord


class SourceAdapter:
    """Common adapter interface: fetch records for a window, test connectivity."""

    source_type: str = "unknown"

    def __init__(self, source_id: str, default_zone: tzinfo = timezone.utc) -> None:
        self.source_id = source_id
        self.default_zone = default_zone

    async def fetch(self, query_filter: str, start: datetime, end: datetime) -> list[LogRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    async def test_connection(self) -> ConnectionCheck:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None


class QueryApiAdapter(SourceAdapter):
    """Base for HTTP log-search APIs; blocking ``requests`` calls run in a worker thread."""

    label = "Query API"

    def __init__(
        self,
        source_id: str,
        base_url: str,
        headers: dict[str, str],
        proxy: ProxySettings | None = None,
        timeout: float = 60.0,
        verify: bool = True,
        default_zone: tzinfo = timezone.utc,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(source_id, default_zone)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(headers)
        self.session.verify = verify
        if proxy is not None:
            self.session.proxies.update(proxy.as_requests_proxies())

    async def _call(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await asyncio.to_thread(self._send, method, url, **kwargs)
        except requests.RequestException as exc:
            raise SourceFetchError(f"{self.label} error: {exc}", kind=classify_error(exc)) from exc
        return response

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        response.raise_for_status()
        return response

    async def _probe(self, call: Callable[[], Any]) -> ConnectionCheck:
        try:
            detail = await call()
        except SourceFetchError as exc:
            return ConnectionCheck(ok=False, detail=str(exc))
        return ConnectionCheck(ok=True, detail=str(detail))

    async def close(self) -> None:
        self.session.close()


__all__ = ["SourceAdapter", "QueryApiAdapter"]
