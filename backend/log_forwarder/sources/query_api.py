"""Dynatrace and Splunk log-search adapters."""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Any

import orjson
import requests

from log_forwarder.core.logging import get_logger
from log_forwarder.models.definitions import DynatraceSource, SplunkSource
from log_forwarder.models.entities import ConnectionCheck, LogRecord
from log_forwarder.sources.base import QueryApiAdapter
from log_forwarder.utils.time import parse_timestamp

logger = get_logger(__name__)


class DynatraceAdapter(QueryApiAdapter):
    source_type = "dynatrace"
    label = "Dynatrace API"
    search_path = "/api/v2/logs/search"

    def __init__(
        self,
        source: DynatraceSource,
        timeout: float = 30.0,
        default_zone: tzinfo = timezone.utc,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(
            source.id,
            source.url,
            headers={
                "Authorization": f"Api-Token {source.token}",
                "Content-Type": "application/json",
            },
            proxy=source.proxy,
            timeout=timeout,
            default_zone=default_zone,
            session=session,
        )
        self.limit = source.limit

    async def fetch(self, query_filter: str, start: datetime, end: datetime) -> list[LogRecord]:
        response = await self._call(
            "POST",
            self.search_path,
            json={
                "query": query_filter or "",
                "from": start.isoformat(),
                "to": end.isoformat(),
                "limit": self.limit,
            },
        )
        results = response.json().get("results") or []
        records = [
            LogRecord(
                timestamp=parse_timestamp(item.get("timestamp"), self.default_zone),
                message=item.get("content") or item.get("message") or "",
                raw=item,
            )
            for item in results
        ]
        logger.info("Fetched %s records from Dynatrace", len(records), extra={"ctx_source": self.source_id})
        return records

    async def test_connection(self) -> ConnectionCheck:
        async def _ping() -> str:
            await self._call("GET", self.search_path, params={"limit": 1})
            return f"reached {self.base_url}"

        return await self._probe(_ping)


class SplunkAdapter(QueryApiAdapter):
    """Runs a blocking export search; the response is newline-delimited JSON."""

    source_type = "splunk"
    label = "Splunk API"
    export_path = "/services/search/jobs/export"

    def __init__(
        self,
        source: SplunkSource,
        timeout: float = 60.0,
        default_zone: tzinfo = timezone.utc,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(
            source.id,
            source.url,
            headers={
                "Authorization": f"Bearer {source.token}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            proxy=source.proxy,
            timeout=timeout,
            verify=source.verify_tls,
            default_zone=default_zone,
            session=session,
        )
        self.max_count = source.max_count

    async def fetch(self, query_filter: str, start: datetime, end: datetime) -> list[LogRecord]:
        response = await self._call(
            "POST",
            self.export_path,
            data={
                "search": query_filter or "search *",
                "earliest_time": int(start.timestamp()),
                "latest_time": int(end.timestamp()),
                "output_mode": "json",
                "max_count": self.max_count,
            },
        )
        records = [self._to_record(result) for result in _iter_results(response.text)]
        logger.info("Fetched %s records from Splunk", len(records), extra={"ctx_source": self.source_id})
        return records

    def _to_record(self, result: dict[str, Any]) -> LogRecord:
        message = result.get("_raw")
        if message is None:
            message = orjson.dumps(result).decode("utf-8")
        return LogRecord(
            timestamp=parse_timestamp(result.get("_time") or result.get("timestamp"), self.default_zone),
            message=message,
            raw=result,
        )

    async def test_connection(self) -> ConnectionCheck:
        async def _whoami() -> str:
            response = await self._call(
                "GET", "/services/authentication/current-context", params={"output_mode": "json"}
            )
            return f"authenticated against {self.base_url} ({response.status_code})"

        return await self._probe(_whoami)


def _iter_results(body: str):
    for line in body.splitlines():
        if not line.strip():
            continue
        try:
            item = orjson.loads(line)
        except orjson.JSONDecodeError:
            continue
        result = item.get("result") if isinstance(item, dict) else None
        if isinstance(result, dict):
            yield result


__all__ = ["DynatraceAdapter", "SplunkAdapter"]
