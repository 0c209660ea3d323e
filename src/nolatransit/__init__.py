"""nolatransit - Streetcar telemetry ingestion, compaction and rollups."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("nolatransit")
except PackageNotFoundError:
    __version__ = "0+local"
from nolatransit.aggregation import AggregationReport, Aggregator, FragmentSource, RowStoreSource
from nolatransit.compaction import CompactionReport, Compactor
from nolatransit.config import TransitConfig
from nolatransit.exceptions import (
    PartialFragmentError,
    TransitAggregationError,
    TransitConfigError,
    TransitError,
    TransitParseError,
    TransitStorageError,
    TransitTransportError,
)
from nolatransit.geofence import GeofenceIndex
from nolatransit.ingestion.buffer import IngestBuffer, IngestionStats
from nolatransit.ingestion.collector import CollectorState, StreamCollector
from nolatransit.models import (
    DailySummary,
    HourlySegmentPerformance,
    RoutePerformance,
    RouteSegment,
    SegmentPerformance,
    SegmentSummary,
    SegmentType,
    TelemetryRecord,
)
from nolatransit.service import IngestionService, MaintenanceRunner
from nolatransit.sinks import ColumnObjectSink, DurableSink, RowStoreSink, WriteAck, build_sink
from nolatransit.storage import LocalObjectStore, ObjectStore, S3ObjectStore
from nolatransit.summary import SummaryStore

__all__ = [
    "__version__",
    "AggregationReport",
    "Aggregator",
    "CollectorState",
    "ColumnObjectSink",
    "CompactionReport",
    "Compactor",
    "DailySummary",
    "DurableSink",
    "FragmentSource",
    "GeofenceIndex",
    "HourlySegmentPerformance",
    "IngestBuffer",
    "IngestionService",
    "IngestionStats",
    "LocalObjectStore",
    "MaintenanceRunner",
    "ObjectStore",
    "PartialFragmentError",
    "RouteSegment",
    "RoutePerformance",
    "RowStoreSink",
    "RowStoreSource",
    "S3ObjectStore",
    "SegmentPerformance",
    "SegmentSummary",
    "SegmentType",
    "StreamCollector",
    "SummaryStore",
    "TelemetryRecord",
    "TransitAggregationError",
    "TransitConfig",
    "TransitConfigError",
    "TransitError",
    "TransitParseError",
    "TransitStorageError",
    "TransitTransportError",
    "WriteAck",
    "build_sink",
]
