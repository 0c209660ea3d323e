"""Route segment geofence lookup."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from nolatransit.exceptions import TransitConfigError
from nolatransit.models.segment import RouteSegment, SegmentType
from nolatransit.models.telemetry import TelemetryRecord

_logger = logging.getLogger(__name__)

# St. Charles streetcar (route 12): mixed traffic downtown, neutral ground
# right-of-way uptown.
ROUTE_12_SEGMENTS: tuple[dict[str, Any], ...] = (
    {
        "id": 1,
        "route": "12",
        "name": "Canal Street (CBD)",
        "type": SegmentType.MIXED_TRAFFIC,
        "min_lat": 29.9495,
        "max_lat": 29.9650,
        "min_lon": -90.0800,
        "max_lon": -90.0650,
        "order": 1,
    },
    {
        "id": 2,
        "route": "12",
        "name": "Lee Circle / Downtown",
        "type": SegmentType.MIXED_TRAFFIC,
        "min_lat": 29.9430,
        "max_lat": 29.9495,
        "min_lon": -90.0820,
        "max_lon": -90.0700,
        "order": 2,
    },
    {
        "id": 3,
        "route": "12",
        "name": "St. Charles - Lower Garden District",
        "type": SegmentType.DEDICATED_ROW,
        "min_lat": 29.9250,
        "max_lat": 29.9430,
        "min_lon": -90.0900,
        "max_lon": -90.0750,
        "order": 3,
    },
    {
        "id": 4,
        "route": "12",
        "name": "St. Charles - Garden District",
        "type": SegmentType.DEDICATED_ROW,
        "min_lat": 29.9150,
        "max_lat": 29.9250,
        "min_lon": -90.1050,
        "max_lon": -90.0900,
        "order": 4,
    },
    {
        "id": 5,
        "route": "12",
        "name": "St. Charles - Uptown",
        "type": SegmentType.DEDICATED_ROW,
        "min_lat": 29.9150,
        "max_lat": 29.9350,
        "min_lon": -90.1300,
        "max_lon": -90.1050,
        "order": 5,
    },
    {
        "id": 6,
        "route": "12",
        "name": "Carrollton - Riverbend",
        "type": SegmentType.DEDICATED_ROW,
        "min_lat": 29.9350,
        "max_lat": 29.9550,
        "min_lon": -90.1400,
        "max_lon": -90.1250,
        "order": 6,
    },
    {
        "id": 7,
        "route": "12",
        "name": "S. Carrollton Ave",
        "type": SegmentType.DEDICATED_ROW,
        "min_lat": 29.9550,
        "max_lat": 29.9750,
        "min_lon": -90.1350,
        "max_lon": -90.1200,
        "order": 7,
    },
)


class GeofenceIndex:
    """Immutable route -> ordered segments lookup.

    Segments of each route are kept sorted by sequence order, so when boxes
    overlap the segment with the lowest order wins.
    """

    __slots__ = ("_by_route", "_segments")

    def __init__(self, segments: Iterable[RouteSegment]) -> None:
        ordered = tuple(sorted(segments, key=lambda seg: (seg.route, seg.order, seg.id)))
        by_route: dict[str, tuple[RouteSegment, ...]] = {}
        for segment in ordered:
            by_route[segment.route] = by_route.get(segment.route, ()) + (segment,)
        self._segments = ordered
        self._by_route: Mapping[str, tuple[RouteSegment, ...]] = by_route

    @classmethod
    def default(cls) -> GeofenceIndex:
        """Index over the built-in route 12 segment table."""
        return cls(RouteSegment.model_validate(raw) for raw in ROUTE_12_SEGMENTS)

    @classmethod
    def from_records(cls, raw_segments: Sequence[Mapping[str, Any]]) -> GeofenceIndex:
        try:
            return cls(RouteSegment.model_validate(dict(raw)) for raw in raw_segments)
        except ValidationError as exc:
            raise TransitConfigError(f"Invalid segment definition: {exc}") from exc

    @classmethod
    def from_file(cls, path: str | Path) -> GeofenceIndex:
        """Load segments from a JSON file holding a list of segment objects.

        Raises
        ------
        TransitConfigError
            When the file cannot be read or does not describe valid segments.
        """
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise TransitConfigError(f"Cannot load segments from {path}: {exc}") from exc
        if not isinstance(payload, list):
            raise TransitConfigError(f"Segments file {path} must contain a JSON list")
        index = cls.from_records(payload)
        _logger.info("Loaded %d route segments from %s", len(index), path)
        return index

    @classmethod
    def from_config(cls, segments_file: str | None) -> GeofenceIndex:
        if segments_file:
            return cls.from_file(segments_file)
        return cls.default()

    def __len__(self) -> int:
        return len(self._segments)

    @property
    def segments(self) -> tuple[RouteSegment, ...]:
        return self._segments

    def classify(self, route: str | None, lat: float, lon: float) -> RouteSegment | None:
        """Return the first segment of *route* containing the point, or ``None``."""
        if route is None:
            return None
        for segment in self._by_route.get(route, ()):
            if segment.contains(lat, lon):
                return segment
        return None

    def enrich(self, record: TelemetryRecord) -> TelemetryRecord:
        """Return *record* with its segment fields set from :meth:`classify`."""
        return record.with_segment(self.classify(record.route, record.latitude, record.longitude))
