"""Data models for feed records, route segments and rollups."""

from nolatransit.models._base import TransitBaseModel
from nolatransit.models.rollup import (
    ROLLUP_MODELS,
    DailySummary,
    HourlySegmentPerformance,
    RollupRecord,
    RoutePerformance,
    SegmentPerformance,
    SegmentSummary,
)
from nolatransit.models.segment import RouteSegment, SegmentType
from nolatransit.models.telemetry import TelemetryRecord

__all__ = [
    "ROLLUP_MODELS",
    "DailySummary",
    "HourlySegmentPerformance",
    "RollupRecord",
    "RoutePerformance",
    "RouteSegment",
    "SegmentPerformance",
    "SegmentSummary",
    "SegmentType",
    "TelemetryRecord",
    "TransitBaseModel",
]
