"""Vehicle telemetry record model."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, Field, field_validator

from nolatransit.ingestion.normalize import (
    float_or_zero,
    int_or_zero,
    parse_feed_timestamp,
    safe_int,
    safe_str,
    strict_flag,
)
from nolatransit.models._base import TransitBaseModel
from nolatransit.models.segment import RouteSegment, SegmentType


class TelemetryRecord(TransitBaseModel):
    """One vehicle position observation.

    Built from a raw feed element with :meth:`pydantic.BaseModel.model_validate`;
    the short feed keys (``vid``, ``tmstmp``, ``lat`` ...) are accepted as
    aliases. Numeric fields default to ``0`` when absent or unparseable.

    Parameters
    ----------
    vehicle_id : str
        Vehicle identifier (``vid``).
    event_timestamp : datetime
        Agency wall-clock time of the observation (``tmstmp``), naive.
    server_timestamp : datetime or None
        Time the feed server saw the observation (``srvtmstmp``).
    latitude, longitude : float
        Position in degrees. ``0, 0`` is the unknown-position sentinel.
    heading : int
        Heading in degrees (``hdg``).
    route : str or None
        Route designator (``rt``).
    trip_id, block_id, destination : str or None
        Schedule identifiers (``tatripid``, ``tablockid``, ``des``).
    pattern_distance : float
        Distance travelled along the pattern (``pdist``).
    pattern_id : int or None
        Pattern identifier (``pid``).
    speed : float
        Reported speed (``spd``).
    is_delayed, is_off_route : bool
        ``True`` only when the feed sent a JSON ``true`` (``dly``, ``or``).
    segment_id, segment_name, segment_type
        Set by :meth:`with_segment` after geofence classification.
    """

    vehicle_id: str = Field(validation_alias=AliasChoices("vid", "vehicle_id"))
    event_timestamp: datetime = Field(validation_alias=AliasChoices("tmstmp", "event_timestamp", "timestamp"))
    server_timestamp: datetime | None = Field(
        default=None, validation_alias=AliasChoices("srvtmstmp", "server_timestamp")
    )
    latitude: float = Field(default=0.0, validation_alias=AliasChoices("lat", "latitude"))
    longitude: float = Field(default=0.0, validation_alias=AliasChoices("lon", "longitude"))
    heading: int = Field(default=0, validation_alias=AliasChoices("hdg", "heading"))
    route: str | None = Field(default=None, validation_alias=AliasChoices("rt", "route"))
    trip_id: str | None = Field(default=None, validation_alias=AliasChoices("tatripid", "trip_id"))
    block_id: str | None = Field(default=None, validation_alias=AliasChoices("tablockid", "block_id"))
    destination: str | None = Field(default=None, validation_alias=AliasChoices("des", "destination"))
    pattern_distance: float = Field(default=0.0, validation_alias=AliasChoices("pdist", "pattern_distance"))
    pattern_id: int | None = Field(default=None, validation_alias=AliasChoices("pid", "pattern_id"))
    speed: float = Field(default=0.0, validation_alias=AliasChoices("spd", "speed"))
    is_delayed: bool = Field(default=False, validation_alias=AliasChoices("dly", "is_delayed"))
    is_off_route: bool = Field(default=False, validation_alias=AliasChoices("or", "is_off_route"))
    segment_id: int | None = None
    segment_name: str | None = None
    segment_type: SegmentType | None = None

    @field_validator("vehicle_id", mode="before")
    @classmethod
    def _coerce_vehicle_id(cls, value: Any) -> Any:
        text = safe_str(value)
        if text is None:
            raise ValueError("vehicle id is required")
        return text

    @field_validator("event_timestamp", "server_timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Any:
        parsed = parse_feed_timestamp(value)
        if parsed is None:
            raise ValueError(f"unrecognised timestamp {value!r}")
        return parsed

    @field_validator("latitude", "longitude", "pattern_distance", "speed", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> float:
        return float_or_zero(value)

    @field_validator("heading", mode="before")
    @classmethod
    def _coerce_heading(cls, value: Any) -> int:
        return int_or_zero(value)

    @field_validator("pattern_id", mode="before")
    @classmethod
    def _coerce_pattern_id(cls, value: Any) -> int | None:
        return safe_int(value)

    @field_validator("route", "trip_id", "block_id", "destination", mode="before")
    @classmethod
    def _coerce_strings(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("is_delayed", "is_off_route", mode="before")
    @classmethod
    def _coerce_flags(cls, value: Any) -> bool:
        return strict_flag(value)

    @property
    def is_unknown_position(self) -> bool:
        """Return ``True`` for the ``0, 0`` unknown-position sentinel."""
        return self.latitude == 0 and self.longitude == 0

    def with_segment(self, segment: RouteSegment | None) -> TelemetryRecord:
        """Return a copy enriched with *segment* (or with segment fields cleared)."""
        if segment is None:
            return self.model_copy(update={"segment_id": None, "segment_name": None, "segment_type": None})
        return self.model_copy(
            update={
                "segment_id": segment.id,
                "segment_name": segment.name,
                "segment_type": segment.segment_type,
            }
        )
