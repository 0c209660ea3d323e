from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from itertools import count

import pytest

from nolatransit.aggregation import Aggregator, FragmentSource, RowStoreSource
from nolatransit.exceptions import TransitAggregationError, TransitStorageError
from nolatransit.geofence import GeofenceIndex
from nolatransit.models.rollup import (
    ROLLUP_MODELS,
    DailySummary,
    HourlySegmentPerformance,
    RollupRecord,
    RoutePerformance,
    SegmentPerformance,
    SegmentSummary,
)
from nolatransit.models.segment import SegmentType
from nolatransit.models.telemetry import TelemetryRecord
from nolatransit.sinks import ColumnObjectSink, RowStoreSink
from nolatransit.storage import LocalObjectStore
from nolatransit.summary import SummaryStore

UPTOWN = (29.9300, -90.1200)
CANAL = (29.9550, -90.0700)
OUTSIDE = (29.9900, -90.0100)


def _record(vid, position, hour, minute, speed, *, route="12", delayed=False) -> TelemetryRecord:
    lat, lon = position
    return TelemetryRecord(
        vehicle_id=vid,
        event_timestamp=datetime(2024, 1, 15, hour, minute),
        latitude=lat,
        longitude=lon,
        route=route,
        speed=speed,
        is_delayed=delayed,
    )


FIRST_BATCH = [
    _record("1", UPTOWN, 8, 0, 10),
    _record("1", UPTOWN, 8, 10, 14),
    _record("2", CANAL, 9, 0, 2, delayed=True),
]
SECOND_BATCH = [
    _record("2", CANAL, 9, 10, 4, delayed=True),
    _record("3", OUTSIDE, 9, 20, 0, route="U"),
]


class _FailingRouteSummary(SummaryStore):
    def upsert(self, model: type[RollupRecord], rows: Sequence[RollupRecord]) -> int:
        if model is RoutePerformance:
            raise TransitStorageError("summary store unavailable")
        return super().upsert(model, rows)


def _stepping_clock():
    ticks = count()
    return lambda: datetime(2024, 1, 15, 12, 0, tzinfo=UTC) + timedelta(seconds=next(ticks))


async def _fill_row_store(database: str) -> RowStoreSource:
    geofence = GeofenceIndex.default()
    async with RowStoreSink(database, geofence) as sink:
        await sink.write(FIRST_BATCH)
        await sink.write(SECOND_BATCH)
    return RowStoreSource(database, geofence)


async def _fill_fragments(root) -> FragmentSource:
    store = LocalObjectStore(root)
    sink = ColumnObjectSink(store, GeofenceIndex.default(), clock=_stepping_clock())
    async with sink:
        await sink.write(FIRST_BATCH)
        await sink.write(SECOND_BATCH)
    return FragmentSource(store)


def _snapshot(summary: SummaryStore) -> dict[str, list[RollupRecord]]:
    return {model.TABLE: summary.fetch(model) for model in ROLLUP_MODELS}


def _assert_rollups(summary: SummaryStore) -> None:
    (daily,) = summary.fetch(DailySummary)
    assert daily.date == date(2024, 1, 15)
    assert (daily.readings, daily.delayed, daily.total_routes, daily.total_vehicles) == (5, 2, 2, 3)
    assert daily.delay_pct == Decimal("40.00")
    assert daily.on_time_pct == Decimal("60.00")
    assert daily.avg_speed == Decimal("6.00")

    by_type = {row.segment_type: row for row in summary.fetch(SegmentPerformance)}
    dedicated = by_type[SegmentType.DEDICATED_ROW]
    mixed = by_type[SegmentType.MIXED_TRAFFIC]
    assert (dedicated.readings, dedicated.delay_pct, dedicated.avg_speed) == (2, Decimal("0.00"), Decimal("12.00"))
    assert (mixed.readings, mixed.delay_pct, mixed.on_time_pct) == (2, Decimal("100.00"), Decimal("0.00"))
    assert mixed.avg_speed == Decimal("3.00")

    hourly = [(row.hour, row.segment_type) for row in summary.fetch(HourlySegmentPerformance)]
    assert hourly == [(8, SegmentType.DEDICATED_ROW), (9, SegmentType.MIXED_TRAFFIC)]

    segments = {row.segment_name: row.segment_type for row in summary.fetch(SegmentSummary)}
    assert segments == {
        "Canal Street (CBD)": SegmentType.MIXED_TRAFFIC,
        "St. Charles - Uptown": SegmentType.DEDICATED_ROW,
    }


@pytest.mark.asyncio
async def test_rollups_from_row_store(tmp_path) -> None:
    source = await _fill_row_store(str(tmp_path / "raw.duckdb"))

    with SummaryStore(str(tmp_path / "summary.duckdb")) as summary:
        report = Aggregator(source, summary).run()
        _assert_rollups(summary)

    assert report.total_records == 5
    assert report.first_timestamp == datetime(2024, 1, 15, 8, 0)
    assert report.last_timestamp == datetime(2024, 1, 15, 9, 20)


@pytest.mark.asyncio
async def test_rollups_from_fragments(tmp_path) -> None:
    source = await _fill_fragments(tmp_path / "store")

    with SummaryStore(str(tmp_path / "summary.duckdb")) as summary:
        report = Aggregator(source, summary).run()
        _assert_rollups(summary)

    assert report.total_records == 5


@pytest.mark.asyncio
async def test_rerun_produces_identical_rows(tmp_path) -> None:
    source = await _fill_fragments(tmp_path / "store")

    with SummaryStore(str(tmp_path / "summary.duckdb")) as summary:
        aggregator = Aggregator(source, summary, min_route_readings=1)
        aggregator.run()
        first = _snapshot(summary)
        aggregator.run()
        second = _snapshot(summary)

    assert first == second
    assert sum(len(rows) for rows in second.values()) == 8


@pytest.mark.asyncio
async def test_route_grain_threshold_and_exclusions(tmp_path) -> None:
    source = await _fill_fragments(tmp_path / "store")

    with SummaryStore(str(tmp_path / "summary.duckdb")) as summary:
        Aggregator(source, summary, min_route_readings=1).run()
        routes = summary.fetch(RoutePerformance)
        Aggregator(source, summary, min_route_readings=4).run()
        unchanged = summary.fetch(RoutePerformance)

    assert [(row.date, row.route) for row in routes] == [(date(2024, 1, 15), "12")]
    assert routes[0].readings == 4
    assert routes[0].delay_pct == Decimal("50.00")
    assert routes[0].avg_speed == Decimal("7.50")
    assert unchanged == routes


def test_empty_source_writes_nothing(tmp_path) -> None:
    source = FragmentSource(LocalObjectStore(tmp_path / "store"))

    with SummaryStore(str(tmp_path / "summary.duckdb")) as summary:
        report = Aggregator(source, summary).run()
        assert all(not rows for rows in _snapshot(summary).values())

    assert report.empty
    assert report.rows == {}


@pytest.mark.asyncio
async def test_unreadable_fragment_is_skipped(tmp_path) -> None:
    source = await _fill_fragments(tmp_path / "store")
    LocalObjectStore(tmp_path / "store").put("2024/01/transit-2024-01-15T13-00-00-000Z.parquet", b"junk")

    assert source.load().num_rows == 5


@pytest.mark.asyncio
async def test_failed_phase_keeps_earlier_phases(tmp_path) -> None:
    source = await _fill_fragments(tmp_path / "store")

    with _FailingRouteSummary(str(tmp_path / "summary.duckdb")) as summary:
        with pytest.raises(TransitAggregationError) as excinfo:
            Aggregator(source, summary, min_route_readings=1).run()
        daily = summary.fetch(DailySummary)
        segments = summary.fetch(SegmentPerformance)

    assert excinfo.value.phase == "route_performance"
    assert len(daily) == 1
    assert segments == []


def test_summary_reset_empties_tables(tmp_path) -> None:
    row = DailySummary.from_counts(
        date=date(2024, 1, 15), total_routes=1, total_vehicles=1, readings=4, delayed=1, speed_sum=Decimal("10")
    )
    with SummaryStore(str(tmp_path / "summary.duckdb")) as summary:
        assert summary.upsert(DailySummary, [row]) == 1
        assert summary.upsert(DailySummary, [row]) == 1
        assert summary.fetch(DailySummary) == [row]
        summary.reset()
        assert summary.fetch(DailySummary) == []
