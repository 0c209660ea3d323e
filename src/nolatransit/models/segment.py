"""Route segment model."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field, model_validator

from nolatransit.models._base import TransitBaseModel


class SegmentType(StrEnum):
    """Right-of-way class of a route segment."""

    DEDICATED_ROW = "dedicated_row"
    MIXED_TRAFFIC = "mixed_traffic"


class RouteSegment(TransitBaseModel):
    """A named rectangular region of a route.

    Parameters
    ----------
    id : int
        Stable segment identifier.
    route : str
        Route the segment belongs to.
    name : str
        Human readable segment name.
    segment_type : SegmentType
        Dedicated right-of-way or mixed traffic.
    min_lat, max_lat, min_lon, max_lon : float
        Inclusive bounding box.
    order : int
        Sequence order along the route; lower wins on overlap.
    """

    id: int
    route: str
    name: str
    segment_type: SegmentType = Field(alias="type")
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float
    order: int

    @model_validator(mode="after")
    def _check_bounds(self) -> RouteSegment:
        if self.min_lat > self.max_lat or self.min_lon > self.max_lon:
            raise ValueError(f"segment {self.id} has an inverted bounding box")
        return self

    def contains(self, lat: float, lon: float) -> bool:
        """Return ``True`` when the point lies inside the box, edges included."""
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon
