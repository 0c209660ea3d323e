"""Durable sinks for flushed telemetry batches."""

from __future__ import annotations

from nolatransit.config import SINK_ROW, TransitConfig
from nolatransit.geofence import GeofenceIndex
from nolatransit.sinks._base import DurableSink, WriteAck, prepare_batch
from nolatransit.sinks.objectstore import ColumnObjectSink, fragment_key
from nolatransit.sinks.rowstore import RowStoreSink
from nolatransit.storage import build_object_store


def build_sink(config: TransitConfig, geofence: GeofenceIndex) -> DurableSink:
    """Create the sink named by ``config.sink``; the only place the backend is chosen."""
    if config.sink == SINK_ROW:
        return RowStoreSink(config.row_store, geofence, motherduck_token=config.motherduck_token)
    return ColumnObjectSink(build_object_store(config), geofence, prefix=config.fragment_prefix)


__all__ = [
    "ColumnObjectSink",
    "DurableSink",
    "RowStoreSink",
    "WriteAck",
    "build_sink",
    "fragment_key",
    "prepare_batch",
]
