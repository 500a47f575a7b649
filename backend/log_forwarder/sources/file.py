"""Local log file adapter."""

from __future__ import annotations

import os
import re
from datetime import datetime, timezone, tzinfo
from pathlib import Path

import aiofiles

from log_forwarder.core.errors import SourceFetchError
from log_forwarder.core.logging import get_logger
from log_forwarder.models.definitions import FileSource
from log_forwarder.models.entities import ConnectionCheck, LogRecord
from log_forwarder.sources.base import SourceAdapter
from log_forwarder.utils.time import leading_timestamp

logger = get_logger(__name__)


class FileAdapter(SourceAdapter):
    """Read a log file line by line, keeping lines whose leading timestamp is in the window.

    ``query_filter`` is an optional case-insensitive regex; an invalid one is
    ignored. Reading stops after ``max_lines`` lines.
    """

    source_type = "file"

    def __init__(self, source: FileSource, default_zone: tzinfo = timezone.utc) -> None:
        super().__init__(source.id, default_zone)
        self.path = Path(source.file_path).expanduser()
        self.max_lines = source.max_lines

    async def fetch(self, query_filter: str, start: datetime, end: datetime) -> list[LogRecord]:
        search = _compile_search(query_filter)
        records: list[LogRecord] = []
        line_count = 0
        try:
            async with aiofiles.open(self.path, mode="r", encoding="utf-8", errors="replace") as fh:
                async for line in fh:
                    line_count += 1
                    if line_count > self.max_lines:
                        break
                    line = line.rstrip("\r\n")
                    timestamp = leading_timestamp(line, self.default_zone)
                    if timestamp is None or not start <= timestamp < end:
                        continue
                    if search is not None and not search.search(line):
                        continue
                    records.append(LogRecord(timestamp=timestamp, message=line, raw={"source": str(self.path)}))
        except OSError as exc:
            raise SourceFetchError(f"Cannot read {self.path}: {exc}") from exc

        logger.info(
            "Read %s lines from %s, %s within window",
            min(line_count, self.max_lines),
            self.path,
            len(records),
            extra={"ctx_source": self.source_id},
        )
        return records

    async def test_connection(self) -> ConnectionCheck:
        if self.path.is_file() and os.access(self.path, os.R_OK):
            return ConnectionCheck(ok=True, detail=f"{self.path} is readable")
        return ConnectionCheck(ok=False, detail=f"Cannot read file: {self.path}")


def _compile_search(query_filter: str | None) -> re.Pattern[str] | None:
    if not query_filter or not query_filter.strip():
        return None
    try:
        return re.compile(query_filter, re.IGNORECASE)
    except re.error:
        logger.warning("Ignoring invalid file search pattern %r", query_filter)
        return None


__all__ = ["FileAdapter"]
