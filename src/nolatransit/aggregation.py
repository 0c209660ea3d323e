"""Idempotent rollup aggregation.

The aggregator recomputes five rollup grains from the full raw data and
upserts them into the summary store:

1. daily summary
2. daily route performance
3. daily segment-type performance
4. hourly segment-type performance (all days)
5. per-segment summary

Each phase commits on its own. A failure aborts the run with
:class:`TransitAggregationError`; phases that already ran stay committed and
the next run recomputes everything.
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime
from typing import Any, Protocol

import duckdb
import pyarrow as pa

from nolatransit._constants import DEFAULT_FRAGMENT_PREFIX, DEFAULT_MIN_ROUTE_READINGS, UNASSIGNED_ROUTE
from nolatransit._parquet import decode_fragment, empty_table
from nolatransit.compaction import group_by_date
from nolatransit.exceptions import TransitAggregationError, TransitError, TransitStorageError
from nolatransit.geofence import GeofenceIndex
from nolatransit.models.rollup import (
    DailySummary,
    HourlySegmentPerformance,
    RollupRecord,
    RoutePerformance,
    SegmentPerformance,
    SegmentSummary,
)
from nolatransit.sinks.rowstore import POSITIONS_TABLE, SEGMENTS_TABLE, connect_row_store, ensure_schema
from nolatransit.storage import ObjectStore
from nolatransit.summary import SummaryStore

_logger = logging.getLogger(__name__)

RELATION = "transit_data"

# Shared measures: readings, delayed readings, exact speed sum.
_MEASURES = """
    COUNT(*) AS readings,
    SUM(CASE WHEN is_delayed THEN 1 ELSE 0 END) AS delayed,
    SUM(CAST(COALESCE(speed, 0) AS DECIMAL(18, 6))) AS speed_sum"""


class RawSource(Protocol):
    """Provides the raw records as a DuckDB relation named ``transit_data``.

    The relation exposes ``vid, timestamp, route, speed, is_delayed,
    segment_name, segment_type`` regardless of where the data lives.
    """

    def open(self) -> contextlib.AbstractContextManager[duckdb.DuckDBPyConnection]:
        ...


class RowStoreSource:
    """Raw records from the row store, joined with the segment table."""

    def __init__(self, database: str, geofence: GeofenceIndex, *, motherduck_token: str | None = None) -> None:
        self._database = database
        self._geofence = geofence
        self._motherduck_token = motherduck_token

    @contextlib.contextmanager
    def open(self) -> Iterator[duckdb.DuckDBPyConnection]:
        conn = connect_row_store(self._database, self._motherduck_token)
        try:
            ensure_schema(conn, self._geofence)
            conn.execute(
                f"""
                CREATE OR REPLACE TEMP VIEW {RELATION} AS
                SELECT p.vid, p.timestamp, p.route, p.speed, p.is_delayed,
                       s.name AS segment_name, s.segment_type
                FROM {POSITIONS_TABLE} p
                LEFT JOIN {SEGMENTS_TABLE} s ON p.segment_id = s.id
                """
            )
            yield conn
        finally:
            conn.close()


class FragmentSource:
    """Raw records from every raw and consolidated Parquet fragment.

    Unreadable fragments are skipped and logged.
    """

    def __init__(self, store: ObjectStore, *, prefix: str = DEFAULT_FRAGMENT_PREFIX) -> None:
        self._store = store
        self._prefix = prefix

    def load(self) -> pa.Table:
        groups = group_by_date(self._store.list_keys(), self._prefix)
        keys = sorted(key for day_keys in groups.values() for key in day_keys)
        tables: list[pa.Table] = []
        for key in keys:
            try:
                tables.append(decode_fragment(self._store.get(key), key=key))
            except TransitStorageError as exc:
                _logger.warning("Skipping unreadable fragment %s: %s", key, exc)
        _logger.debug("Loaded %d of %d fragments", len(tables), len(keys))
        if not tables:
            return empty_table()
        return pa.concat_tables(tables)

    @contextlib.contextmanager
    def open(self) -> Iterator[duckdb.DuckDBPyConnection]:
        table = self.load()
        conn = duckdb.connect(":memory:")
        try:
            conn.register(RELATION, table)
            yield conn
        finally:
            conn.close()


@dataclasses.dataclass
class AggregationReport:
    """Outcome of one aggregation run."""

    total_records: int = 0
    first_timestamp: datetime | None = None
    last_timestamp: datetime | None = None
    rows: dict[str, int] = dataclasses.field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return self.total_records == 0


@dataclasses.dataclass(frozen=True)
class _Phase:
    name: str
    model: type[RollupRecord]
    compute: Callable[[duckdb.DuckDBPyConnection], list[RollupRecord]]


class Aggregator:
    """Recompute every rollup grain from a :class:`RawSource`.

    Parameters
    ----------
    source : RawSource
        Where the raw records are read from.
    summary : SummaryStore
        Open summary store receiving the rollups.
    min_route_readings : int
        A route needs more than this many readings on a day to be reported.
    excluded_routes : sequence of str
        Routes left out of the route performance grain.
    """

    def __init__(
        self,
        source: RawSource,
        summary: SummaryStore,
        *,
        min_route_readings: int = DEFAULT_MIN_ROUTE_READINGS,
        excluded_routes: Sequence[str] = (UNASSIGNED_ROUTE,),
    ) -> None:
        self._source = source
        self._summary = summary
        self._min_route_readings = min_route_readings
        self._excluded_routes = tuple(excluded_routes)
        self._phases = (
            _Phase("daily_summary", DailySummary, self._daily_summary),
            _Phase("route_performance", RoutePerformance, self._route_performance),
            _Phase("segment_performance", SegmentPerformance, self._segment_performance),
            _Phase("hourly_performance", HourlySegmentPerformance, self._hourly_performance),
            _Phase("segment_summary", SegmentSummary, self._segment_summary),
        )

    # ------------------------------------------------------------------
    # Phase queries
    # ------------------------------------------------------------------

    @staticmethod
    def _fetch(conn: duckdb.DuckDBPyConnection, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        cursor = conn.execute(sql, list(params))
        names = [column[0] for column in cursor.description]
        return [dict(zip(names, row, strict=True)) for row in cursor.fetchall()]

    def _daily_summary(self, conn: duckdb.DuckDBPyConnection) -> list[RollupRecord]:
        rows = self._fetch(
            conn,
            f"""
            SELECT CAST(timestamp AS DATE) AS date,
                   COUNT(DISTINCT route) AS total_routes,
                   COUNT(DISTINCT vid) AS total_vehicles,{_MEASURES}
            FROM {RELATION}
            GROUP BY 1
            ORDER BY 1
            """,
        )
        return [DailySummary.from_counts(**row) for row in rows]

    def _route_performance(self, conn: duckdb.DuckDBPyConnection) -> list[RollupRecord]:
        params: list[Any] = []
        exclusion = ""
        if self._excluded_routes:
            exclusion = f"AND route NOT IN ({', '.join('?' for _ in self._excluded_routes)})"
            params.extend(self._excluded_routes)
        params.append(self._min_route_readings)
        rows = self._fetch(
            conn,
            f"""
            SELECT CAST(timestamp AS DATE) AS date, route,{_MEASURES}
            FROM {RELATION}
            WHERE route IS NOT NULL {exclusion}
            GROUP BY 1, 2
            HAVING COUNT(*) > ?
            ORDER BY 1, 2
            """,
            params,
        )
        return [RoutePerformance.from_counts(**row) for row in rows]

    def _segment_performance(self, conn: duckdb.DuckDBPyConnection) -> list[RollupRecord]:
        rows = self._fetch(
            conn,
            f"""
            SELECT CAST(timestamp AS DATE) AS date, segment_type,{_MEASURES}
            FROM {RELATION}
            WHERE segment_type IS NOT NULL
            GROUP BY 1, 2
            ORDER BY 1, 2
            """,
        )
        return [SegmentPerformance.from_counts(**row) for row in rows]

    def _hourly_performance(self, conn: duckdb.DuckDBPyConnection) -> list[RollupRecord]:
        rows = self._fetch(
            conn,
            f"""
            SELECT CAST(EXTRACT(HOUR FROM timestamp) AS INTEGER) AS hour, segment_type,{_MEASURES}
            FROM {RELATION}
            WHERE segment_type IS NOT NULL
            GROUP BY 1, 2
            ORDER BY 1, 2
            """,
        )
        return [HourlySegmentPerformance.from_counts(**row) for row in rows]

    def _segment_summary(self, conn: duckdb.DuckDBPyConnection) -> list[RollupRecord]:
        rows = self._fetch(
            conn,
            f"""
            SELECT segment_name, MIN(segment_type) AS segment_type,{_MEASURES}
            FROM {RELATION}
            WHERE segment_name IS NOT NULL AND segment_type IS NOT NULL
            GROUP BY 1
            ORDER BY 1
            """,
        )
        return [SegmentSummary.from_counts(**row) for row in rows]

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> AggregationReport:
        """Run every phase in order.

        Raises
        ------
        TransitAggregationError
            When a phase fails; ``phase`` names it and earlier phases stay
            committed.
        """
        report = AggregationReport()
        with self._source.open() as conn:
            first, last, total = conn.execute(
                f"SELECT MIN(timestamp), MAX(timestamp), COUNT(*) FROM {RELATION}"
            ).fetchone()
            report.first_timestamp, report.last_timestamp, report.total_records = first, last, int(total)
            if report.empty:
                _logger.info("No data to aggregate")
                return report
            _logger.info("Aggregating %d records from %s to %s", report.total_records, first, last)

            for phase in self._phases:
                try:
                    rows = phase.compute(conn)
                    report.rows[phase.name] = self._summary.upsert(phase.model, rows)
                except (duckdb.Error, TransitError, ValueError) as exc:
                    raise TransitAggregationError(
                        f"Aggregation phase {phase.name} failed: {exc}", phase=phase.name
                    ) from exc
                _logger.info("Phase %s upserted %d rows", phase.name, report.rows[phase.name])
        return report
