from __future__ import annotations

import asyncio
import contextlib
import json
import os
import signal
from collections.abc import AsyncIterator
from datetime import date
from decimal import Decimal

import pytest

from nolatransit._parquet import decode_fragment
from nolatransit._transport import SseEvent
from nolatransit.cli import main
from nolatransit.models.rollup import HourlySegmentPerformance, RoutePerformance, SegmentPerformance
from nolatransit.models.segment import SegmentType
from nolatransit.service import MaintenanceRunner
from nolatransit.storage import LocalObjectStore
from nolatransit.summary import SummaryStore


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("TRANSIT_"):
            monkeypatch.delenv(name)


@pytest.fixture
def local_env(monkeypatch, tmp_path):
    monkeypatch.setenv("TRANSIT_OBJECT_STORE", "local")
    monkeypatch.setenv("TRANSIT_LOCAL_STORE_DIR", str(tmp_path / "store"))
    monkeypatch.setenv("TRANSIT_SUMMARY_STORE", str(tmp_path / "summary.duckdb"))
    return tmp_path


def test_maintain_once_on_empty_store(local_env) -> None:
    assert main(["maintain", "--once"]) == 0


def test_missing_credentials_is_a_config_error(monkeypatch, tmp_path, capsys) -> None:
    monkeypatch.setenv("TRANSIT_SUMMARY_STORE", str(tmp_path / "summary.duckdb"))

    assert main(["maintain", "--once"]) == 1

    err = capsys.readouterr().err
    assert "Configuration error" in err
    assert "TRANSIT_S3_ACCESS_KEY_ID" in err


def test_aggregate_requires_summary_store(monkeypatch, tmp_path, capsys) -> None:
    monkeypatch.setenv("TRANSIT_OBJECT_STORE", "local")
    monkeypatch.setenv("TRANSIT_LOCAL_STORE_DIR", str(tmp_path))

    assert main(["aggregate"]) == 1
    assert "TRANSIT_SUMMARY_STORE" in capsys.readouterr().err


def test_aggregate_on_empty_store(local_env, capsys) -> None:
    assert main(["aggregate"]) == 0
    assert "No data to aggregate" in capsys.readouterr().out


def test_compact_with_row_sink_is_a_no_op(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("TRANSIT_SINK", "row")
    monkeypatch.setenv("TRANSIT_ROW_STORE", str(tmp_path / "raw.duckdb"))

    assert main(["compact"]) == 0


def test_compact_reports_counts(local_env, capsys) -> None:
    assert main(["compact"]) == 0
    assert "Consolidated 0 dates" in capsys.readouterr().out


def test_report_prints_comparison(local_env, capsys) -> None:
    day = date(2024, 1, 15)
    with SummaryStore(str(local_env / "summary.duckdb")) as summary:
        summary.upsert(
            SegmentPerformance,
            [
                SegmentPerformance.from_counts(
                    date=day, segment_type=SegmentType.MIXED_TRAFFIC, readings=4, delayed=3, speed_sum=Decimal("12")
                ),
                SegmentPerformance.from_counts(
                    date=day, segment_type=SegmentType.DEDICATED_ROW, readings=4, delayed=1, speed_sum=Decimal("40")
                ),
            ],
        )
        summary.upsert(
            HourlySegmentPerformance,
            [
                HourlySegmentPerformance.from_counts(
                    hour=8, segment_type=SegmentType.MIXED_TRAFFIC, readings=4, delayed=3, speed_sum=Decimal("12")
                ),
            ],
        )
        summary.upsert(
            RoutePerformance,
            [RoutePerformance.from_counts(date=day, route="12", readings=8, delayed=4, speed_sum=Decimal("52"))],
        )

    assert main(["report"]) == 0

    out = capsys.readouterr().out
    assert "NOLA STREETCAR DELAY ANALYSIS" in out
    assert "Finding: streetcars in mixed traffic are delayed 50.00% more often" in out
    hourly = next(line for line in out.splitlines() if line.startswith("08:00"))
    assert "75.00%" in hourly
    assert hourly.endswith("n/a")
    assert "route 12" in out
    assert "No data yet." in out


def test_report_requires_summary_store(capsys) -> None:
    assert main(["report"]) == 1
    assert "TRANSIT_SUMMARY_STORE" in capsys.readouterr().err


def test_scheduled_maintain_rejects_local_row_store(monkeypatch, tmp_path, capsys) -> None:
    monkeypatch.setenv("TRANSIT_SINK", "row")
    monkeypatch.setenv("TRANSIT_ROW_STORE", str(tmp_path / "raw.duckdb"))
    monkeypatch.setenv("TRANSIT_SUMMARY_STORE", str(tmp_path / "summary.duckdb"))

    assert main(["maintain"]) == 1
    assert "MotherDuck" in capsys.readouterr().err


class _TerminatingFeed:
    """Streams one message of three vehicles, then sends SIGTERM to this process."""

    def __init__(self, url: str) -> None:
        self.url = url

    async def __aenter__(self) -> _TerminatingFeed:
        return self

    async def __aexit__(self, *exc) -> None:
        return None

    @contextlib.asynccontextmanager
    async def open(self) -> AsyncIterator[AsyncIterator[SseEvent]]:
        yield self._stream()

    async def _stream(self) -> AsyncIterator[SseEvent]:
        vehicles = [
            {"vid": vid, "tmstmp": "20240115 10:30", "lat": "29.93", "lon": "-90.12", "rt": "12"}
            for vid in ("1", "2", "3")
        ]
        yield SseEvent(data=json.dumps(vehicles))
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.Event().wait()


def test_ingest_flushes_once_on_sigterm(local_env, monkeypatch) -> None:
    monkeypatch.setattr("nolatransit.service.SseTransport", _TerminatingFeed)

    assert main(["ingest"]) == 0

    store = LocalObjectStore(local_env / "store")
    (key,) = store.list_keys()
    assert decode_fragment(store.get(key), key=key).column("vid").to_pylist() == ["1", "2", "3"]


def test_scheduled_maintain_stops_on_sigterm(local_env, monkeypatch) -> None:
    runs: list[bool] = []
    run_once = MaintenanceRunner.run_once

    async def run_then_terminate(self: MaintenanceRunner) -> bool:
        result = await run_once(self)
        runs.append(result)
        os.kill(os.getpid(), signal.SIGTERM)
        return result

    monkeypatch.setattr(MaintenanceRunner, "run_once", run_then_terminate)

    assert main(["maintain"]) == 0
    assert runs == [True]
