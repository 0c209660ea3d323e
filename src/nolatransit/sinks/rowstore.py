"""Row-store sink on DuckDB or MotherDuck."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import Sequence
from types import TracebackType
from typing import Any

import duckdb

from nolatransit._parquet import records_to_table
from nolatransit.exceptions import TransitStorageError
from nolatransit.geofence import GeofenceIndex
from nolatransit.models.telemetry import TelemetryRecord
from nolatransit.sinks._base import WriteAck, prepare_batch

_logger = logging.getLogger(__name__)

POSITIONS_TABLE = "vehicle_positions"
SEGMENTS_TABLE = "route_segments"

_SCHEMA_STATEMENTS = (
    f"""
    CREATE TABLE IF NOT EXISTS {SEGMENTS_TABLE} (
        id INTEGER PRIMARY KEY,
        route VARCHAR NOT NULL,
        name VARCHAR NOT NULL,
        segment_type VARCHAR NOT NULL,
        min_lat DOUBLE NOT NULL,
        max_lat DOUBLE NOT NULL,
        min_lon DOUBLE NOT NULL,
        max_lon DOUBLE NOT NULL,
        sequence_order INTEGER DEFAULT 0
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {POSITIONS_TABLE} (
        vid VARCHAR NOT NULL,
        timestamp TIMESTAMP NOT NULL,
        server_timestamp TIMESTAMP,
        lat DOUBLE NOT NULL,
        lon DOUBLE NOT NULL,
        heading INTEGER,
        route VARCHAR,
        trip_id VARCHAR,
        block_id VARCHAR,
        destination VARCHAR,
        pattern_distance DOUBLE,
        pattern_id BIGINT,
        speed DOUBLE,
        is_delayed BOOLEAN DEFAULT FALSE,
        is_off_route BOOLEAN DEFAULT FALSE,
        segment_id INTEGER,
        created_at TIMESTAMP DEFAULT current_timestamp
    )
    """,
    f"CREATE INDEX IF NOT EXISTS idx_vehicle_positions_vid ON {POSITIONS_TABLE}(vid)",
    f"CREATE INDEX IF NOT EXISTS idx_vehicle_positions_timestamp ON {POSITIONS_TABLE}(timestamp)",
    f"CREATE INDEX IF NOT EXISTS idx_vehicle_positions_route ON {POSITIONS_TABLE}(route)",
    f"CREATE INDEX IF NOT EXISTS idx_vehicle_positions_delayed ON {POSITIONS_TABLE}(is_delayed)",
    f"CREATE INDEX IF NOT EXISTS idx_vehicle_positions_segment ON {POSITIONS_TABLE}(segment_id)",
)

_INSERT_COLUMNS = (
    "vid",
    "timestamp",
    "server_timestamp",
    "lat",
    "lon",
    "heading",
    "route",
    "trip_id",
    "block_id",
    "destination",
    "pattern_distance",
    "pattern_id",
    "speed",
    "is_delayed",
    "is_off_route",
    "segment_id",
)


def connect_row_store(database: str, motherduck_token: str | None = None) -> duckdb.DuckDBPyConnection:
    """Open a DuckDB connection; ``md:`` databases authenticate with *motherduck_token*."""
    config: dict[str, Any] = {}
    if database.startswith("md:") and motherduck_token:
        config["motherduck_token"] = motherduck_token
    try:
        return duckdb.connect(database, config=config)
    except duckdb.Error as exc:
        raise TransitStorageError(f"Cannot open row store {database}: {exc}") from exc


def ensure_schema(conn: duckdb.DuckDBPyConnection, geofence: GeofenceIndex) -> None:
    """Create tables and indexes, and (re)seed the segment table from *geofence*."""
    for statement in _SCHEMA_STATEMENTS:
        conn.execute(statement)
    conn.executemany(
        f"INSERT OR REPLACE INTO {SEGMENTS_TABLE} "
        "(id, route, name, segment_type, min_lat, max_lat, min_lon, max_lon, sequence_order) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        [
            (
                seg.id,
                seg.route,
                seg.name,
                str(seg.segment_type),
                seg.min_lat,
                seg.max_lat,
                seg.min_lon,
                seg.max_lon,
                seg.order,
            )
            for seg in geofence.segments
        ],
    )


class RowStoreSink:
    """Append classified records to ``vehicle_positions``.

    Each batch is one ``INSERT ... SELECT`` inside a transaction, so a batch is
    either fully stored or not stored at all.
    """

    def __init__(self, database: str, geofence: GeofenceIndex, *, motherduck_token: str | None = None) -> None:
        self._database = database
        self._geofence = geofence
        self._motherduck_token = motherduck_token
        self._conn: duckdb.DuckDBPyConnection | None = None

    def _open(self) -> duckdb.DuckDBPyConnection:
        conn = connect_row_store(self._database, self._motherduck_token)
        try:
            ensure_schema(conn, self._geofence)
        except duckdb.Error as exc:
            conn.close()
            raise TransitStorageError(f"Cannot initialise row store schema: {exc}") from exc
        return conn

    async def __aenter__(self) -> RowStoreSink:
        loop = asyncio.get_running_loop()
        self._conn = await loop.run_in_executor(None, self._open)
        _logger.info("Row store %s ready", self._database)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
            _logger.debug("Row store %s closed", self._database)

    def _insert(self, records: list[TelemetryRecord]) -> None:
        if self._conn is None:
            raise TransitStorageError("Row store sink used outside its context")
        table = records_to_table(records)
        columns = ", ".join(_INSERT_COLUMNS)
        with self._conn.cursor() as cur:
            cur.register("incoming_batch", table)
            try:
                cur.begin()
                cur.execute(f"INSERT INTO {POSITIONS_TABLE} ({columns}) SELECT {columns} FROM incoming_batch")
                cur.commit()
            except duckdb.Error as exc:
                with contextlib.suppress(duckdb.Error):
                    cur.rollback()
                raise TransitStorageError(f"Insert of {len(records)} records failed: {exc}") from exc
            finally:
                cur.unregister("incoming_batch")

    async def write(self, batch: Sequence[TelemetryRecord]) -> WriteAck:
        records = prepare_batch(batch, self._geofence)
        if not records:
            return WriteAck(records=0, location=POSITIONS_TABLE)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, functools.partial(self._insert, records))
        _logger.debug("Inserted %d records into %s", len(records), POSITIONS_TABLE)
        return WriteAck(records=len(records), location=POSITIONS_TABLE)
