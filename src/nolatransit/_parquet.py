"""Parquet fragment codec.

Fragments written by the object sink and consolidated by the compactor share
one Arrow schema whose column names match the row store, so the aggregator
reads either layout with the same SQL.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

import pyarrow as pa
import pyarrow.parquet as pq

from nolatransit.exceptions import PartialFragmentError
from nolatransit.models.telemetry import TelemetryRecord

FRAGMENT_SCHEMA = pa.schema(
    [
        # Identity and time
        pa.field("vid", pa.string()),
        pa.field("timestamp", pa.timestamp("ms")),
        pa.field("server_timestamp", pa.timestamp("ms")),
        # Position
        pa.field("lat", pa.float64()),
        pa.field("lon", pa.float64()),
        pa.field("heading", pa.int32()),
        # Schedule
        pa.field("route", pa.string()),
        pa.field("trip_id", pa.string()),
        pa.field("block_id", pa.string()),
        pa.field("destination", pa.string()),
        pa.field("pattern_distance", pa.float64()),
        pa.field("pattern_id", pa.int64()),
        # Status
        pa.field("speed", pa.float64()),
        pa.field("is_delayed", pa.bool_()),
        pa.field("is_off_route", pa.bool_()),
        # Derived from the geofence
        pa.field("segment_id", pa.int32()),
        pa.field("segment_name", pa.string()),
        pa.field("segment_type", pa.string()),
    ]
)

SORT_COLUMN = "timestamp"


def record_to_row(record: TelemetryRecord) -> dict[str, Any]:
    """Flatten a record into a row keyed by fragment column name."""
    return {
        "vid": record.vehicle_id,
        "timestamp": record.event_timestamp,
        "server_timestamp": record.server_timestamp,
        "lat": record.latitude,
        "lon": record.longitude,
        "heading": record.heading,
        "route": record.route,
        "trip_id": record.trip_id,
        "block_id": record.block_id,
        "destination": record.destination,
        "pattern_distance": record.pattern_distance,
        "pattern_id": record.pattern_id,
        "speed": record.speed,
        "is_delayed": record.is_delayed,
        "is_off_route": record.is_off_route,
        "segment_id": record.segment_id,
        "segment_name": record.segment_name,
        "segment_type": str(record.segment_type) if record.segment_type is not None else None,
    }


def records_to_table(records: Iterable[TelemetryRecord]) -> pa.Table:
    return pa.Table.from_pylist([record_to_row(record) for record in records], schema=FRAGMENT_SCHEMA)


def empty_table() -> pa.Table:
    return FRAGMENT_SCHEMA.empty_table()


def encode_table(table: pa.Table) -> bytes:
    sink = pa.BufferOutputStream()
    pq.write_table(table, sink, compression="snappy")
    return sink.getvalue().to_pybytes()


def encode_records(records: Iterable[TelemetryRecord]) -> bytes:
    """Serialize a batch of records into Parquet bytes."""
    return encode_table(records_to_table(records))


def _conform(table: pa.Table) -> pa.Table:
    """Add missing columns as nulls, drop unknown ones and cast to the fragment schema."""
    columns = []
    for field in FRAGMENT_SCHEMA:
        if field.name in table.column_names:
            columns.append(table.column(field.name).cast(field.type))
        else:
            columns.append(pa.nulls(table.num_rows, type=field.type))
    return pa.Table.from_arrays(columns, schema=FRAGMENT_SCHEMA)


def decode_fragment(data: bytes, *, key: str = "") -> pa.Table:
    """Decode Parquet bytes into a table conforming to :data:`FRAGMENT_SCHEMA`.

    Raises
    ------
    PartialFragmentError
        When the bytes are not a readable fragment.
    """
    try:
        table = pq.read_table(pa.BufferReader(data))
        return _conform(table)
    except (pa.ArrowException, OSError, ValueError) as exc:
        raise PartialFragmentError(f"Unreadable fragment {key or '<bytes>'}: {exc}", key=key) from exc


def merge_fragments(tables: Sequence[pa.Table]) -> pa.Table:
    """Concatenate fragments and sort rows ascending by event timestamp.

    The sort is stable, so rows sharing a timestamp keep their input order.
    """
    if not tables:
        return empty_table()
    merged = pa.concat_tables([_conform(table) for table in tables])
    return merged.sort_by([(SORT_COLUMN, "ascending")])
