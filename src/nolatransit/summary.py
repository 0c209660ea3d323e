"""DuckDB summary store holding the rollup tables."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Sequence
from enum import Enum
from typing import Any, TypeVar

import duckdb

from nolatransit.exceptions import TransitStorageError
from nolatransit.models.rollup import (
    ROLLUP_MODELS,
    DailySummary,
    HourlySegmentPerformance,
    RollupRecord,
    RoutePerformance,
    SegmentPerformance,
    SegmentSummary,
)

_logger = logging.getLogger(__name__)

TRollup = TypeVar("TRollup", bound=RollupRecord)

_MEASURES = """
        readings INTEGER NOT NULL,
        delayed INTEGER NOT NULL,
        delay_pct DECIMAL(5,2),
        on_time_pct DECIMAL(5,2),
        avg_speed DECIMAL(7,2)"""

_TABLE_DDL: dict[type[RollupRecord], str] = {
    DailySummary: f"""
    CREATE TABLE IF NOT EXISTS {DailySummary.TABLE} (
        date DATE PRIMARY KEY,
        total_routes INTEGER NOT NULL,
        total_vehicles INTEGER NOT NULL,{_MEASURES}
    )""",
    RoutePerformance: f"""
    CREATE TABLE IF NOT EXISTS {RoutePerformance.TABLE} (
        date DATE NOT NULL,
        route VARCHAR NOT NULL,{_MEASURES},
        PRIMARY KEY (date, route)
    )""",
    SegmentPerformance: f"""
    CREATE TABLE IF NOT EXISTS {SegmentPerformance.TABLE} (
        date DATE NOT NULL,
        segment_type VARCHAR NOT NULL,{_MEASURES},
        PRIMARY KEY (date, segment_type)
    )""",
    HourlySegmentPerformance: f"""
    CREATE TABLE IF NOT EXISTS {HourlySegmentPerformance.TABLE} (
        hour INTEGER NOT NULL CHECK (hour >= 0 AND hour <= 23),
        segment_type VARCHAR NOT NULL,{_MEASURES},
        PRIMARY KEY (hour, segment_type)
    )""",
    SegmentSummary: f"""
    CREATE TABLE IF NOT EXISTS {SegmentSummary.TABLE} (
        segment_name VARCHAR PRIMARY KEY,
        segment_type VARCHAR NOT NULL,{_MEASURES}
    )""",
}


def _param(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def upsert_statement(model: type[RollupRecord]) -> str:
    """``INSERT ... ON CONFLICT (key) DO UPDATE`` overwriting every non-key column."""
    columns = model.columns()
    placeholders = ", ".join("?" for _ in columns)
    updates = ", ".join(f"{name} = EXCLUDED.{name}" for name in columns if name not in model.KEY)
    return (
        f"INSERT INTO {model.TABLE} ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON CONFLICT ({', '.join(model.KEY)}) DO UPDATE SET {updates}"
    )


class SummaryStore:
    """Rollup tables in a DuckDB database.

    Use as a context manager; the connection is opened on enter and closed
    on exit.
    """

    def __init__(self, database: str, *, motherduck_token: str | None = None) -> None:
        self._database = database
        self._motherduck_token = motherduck_token
        self._conn: duckdb.DuckDBPyConnection | None = None

    def __enter__(self) -> SummaryStore:
        config: dict[str, Any] = {}
        if self._database.startswith("md:") and self._motherduck_token:
            config["motherduck_token"] = self._motherduck_token
        try:
            self._conn = duckdb.connect(self._database, config=config)
            for ddl in _TABLE_DDL.values():
                self._conn.execute(ddl)
        except duckdb.Error as exc:
            self.close()
            raise TransitStorageError(f"Cannot open summary store {self._database}: {exc}") from exc
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise TransitStorageError("Summary store used outside its context")
        return self._conn

    def upsert(self, model: type[RollupRecord], rows: Sequence[RollupRecord]) -> int:
        """Insert or overwrite *rows* of *model* in a single transaction.

        Raises
        ------
        TransitStorageError
            When the transaction fails; nothing from this call is kept.
        """
        if not rows:
            return 0
        conn = self.connection
        params = [[_param(value) for value in row.values()] for row in rows]
        conn.begin()
        try:
            conn.executemany(upsert_statement(model), params)
            conn.commit()
        except duckdb.Error as exc:
            with contextlib.suppress(duckdb.Error):
                conn.rollback()
            raise TransitStorageError(f"Upsert into {model.TABLE} failed: {exc}") from exc
        _logger.debug("Upserted %d rows into %s", len(rows), model.TABLE)
        return len(rows)

    def fetch(self, model: type[TRollup]) -> list[TRollup]:
        """Return every row of *model*'s table ordered by key."""
        columns = model.columns()
        result = self.connection.execute(
            f"SELECT {', '.join(columns)} FROM {model.TABLE} ORDER BY {', '.join(model.KEY)}"
        ).fetchall()
        return [model.model_validate(dict(zip(columns, row, strict=True))) for row in result]

    def reset(self) -> None:
        """Empty every rollup table."""
        conn = self.connection
        conn.begin()
        try:
            for model in ROLLUP_MODELS:
                conn.execute(f"DELETE FROM {model.TABLE}")
            conn.commit()
        except duckdb.Error as exc:
            with contextlib.suppress(duckdb.Error):
                conn.rollback()
            raise TransitStorageError(f"Reset of summary tables failed: {exc}") from exc
        _logger.info("Summary tables reset")
