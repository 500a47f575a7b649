"""Tests for line protocol encoding and the time-series writer."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from log_forwarder.core.errors import AUTH_FAILED, CONNECTION_REFUSED, SinkWriteError
from log_forwarder.models.definitions import InfluxDestination
from log_forwarder.models.entities import Point
from log_forwarder.sinks.influx import InfluxWriter
from log_forwarder.sinks.line_protocol import encode_point

TS = datetime(2024, 10, 15, 10, 30, 45, 123000, tzinfo=timezone.utc)
TS_SECONDS = 1728988245


def _point(index: int = 0) -> Point:
    return Point(tags={"host": f"h{index}"}, fields={"value": index}, timestamp=TS)


def _writer(batch_size: int = 100, precision: str = "ns", **overrides) -> tuple[InfluxWriter, MagicMock]:
    destination = InfluxDestination(
        id="influx",
        url="http://influx.local:8086/",
        database="logs",
        measurement="rides",
        batch_size=batch_size,
        precision=precision,
        **overrides,
    )
    session = MagicMock()
    return InfluxWriter(destination, timeout=5, session=session), session


def test_encode_point_escapes_and_types() -> None:
    point = Point(
        tags={"host name": "a,b=c", "empty": ""},
        fields={"msg": 'say "hi" \\ bye', "count": 3, "ok": True, "ratio": 0.5},
        timestamp=TS,
    )
    line = encode_point("my rides,v2", point, "s")
    assert line == (
        'my\\ rides\\,v2,host\\ name=a\\,b\\=c '
        'msg="say \\"hi\\" \\\\ bye",count=3i,ok=true,ratio=0.5 '
        f"{TS_SECONDS}"
    )


@pytest.mark.parametrize(
    ("precision", "expected"),
    [("s", TS_SECONDS), ("ms", TS_SECONDS * 1000 + 123), ("ns", (TS_SECONDS * 1000 + 123) * 1_000_000)],
)
def test_encode_point_precision(precision: str, expected: int) -> None:
    assert encode_point("m", _point(), precision).endswith(f" {expected}")


@pytest.mark.asyncio
async def test_batch_size_two_flushes_once_after_second_add() -> None:
    writer, session = _writer(batch_size=2)
    writer.add(_point(1))
    assert writer.pending == 1
    writer.add(_point(2))
    writer.add(_point(3))
    assert writer.pending == 1

    await writer.drain()
    assert session.post.call_count == 1
    body = session.post.call_args.kwargs["data"].decode("utf-8")
    assert body.splitlines() == [
        f"rides,host=h1 value=1i {(TS_SECONDS * 1000 + 123) * 1_000_000}",
        f"rides,host=h2 value=2i {(TS_SECONDS * 1000 + 123) * 1_000_000}",
    ]
    assert writer.pending == 1


@pytest.mark.asyncio
async def test_flush_posts_to_write_endpoint_with_precision() -> None:
    writer, session = _writer(precision="ms", username="svc", password="secret")
    writer.add(_point(7))
    result = await writer.flush()

    assert result.written == 1
    args, kwargs = session.post.call_args
    assert args[0] == "http://influx.local:8086/write"
    assert kwargs["params"] == {"db": "logs", "precision": "ms"}
    assert kwargs["data"].decode("utf-8").endswith(f" {TS_SECONDS * 1000 + 123}")
    assert session.auth == ("svc", "secret")


@pytest.mark.asyncio
async def test_failed_batch_is_discarded_and_error_propagates() -> None:
    writer, session = _writer()
    session.post.side_effect = requests.ConnectionError("Connection refused")
    writer.add(_point(1))
    writer.add(_point(2))

    with pytest.raises(SinkWriteError) as info:
        await writer.flush()
    assert info.value.kind == CONNECTION_REFUSED
    assert info.value.batch_size == 2
    assert writer.pending == 0


@pytest.mark.asyncio
async def test_auth_failure_is_classified() -> None:
    writer, session = _writer()
    response = MagicMock(status_code=401)
    session.post.return_value.raise_for_status.side_effect = requests.HTTPError("401", response=response)
    writer.add(_point(1))

    with pytest.raises(SinkWriteError) as info:
        await writer.flush()
    assert info.value.kind == AUTH_FAILED


@pytest.mark.asyncio
async def test_background_failure_surfaces_on_next_flush() -> None:
    writer, session = _writer(batch_size=1)
    session.post.side_effect = requests.Timeout("timed out")
    writer.add(_point(1))

    with pytest.raises(SinkWriteError, match="earlier batch"):
        await writer.flush()
    assert writer.pending == 0


@pytest.mark.asyncio
async def test_stop_flushes_remaining_points() -> None:
    writer, session = _writer()
    writer.start()
    writer.add(_point(1))
    await writer.stop()
    assert session.post.call_count == 1
    assert not writer.running
    session.close.assert_called_once()
