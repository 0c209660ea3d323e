"""Rollup rows written by the aggregator.

Each rollup class names its summary table and key columns. Rows are
overwritten on their key (last write wins), so rerunning aggregation over
unchanged raw data produces identical rows.
"""

from __future__ import annotations

import datetime as dt
from decimal import ROUND_HALF_UP, Decimal
from typing import ClassVar

from nolatransit.models._base import TransitBaseModel
from nolatransit.models.segment import SegmentType

_CENT = Decimal("0.01")
_HUNDRED = Decimal(100)


def round_half_up(value: Decimal) -> Decimal:
    """Round to two decimal places, halves away from zero."""
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def delay_percentage(delayed: int, readings: int) -> Decimal:
    """``round(100 * delayed / readings, 2)``."""
    if readings <= 0:
        return round_half_up(Decimal(0))
    return round_half_up(_HUNDRED * Decimal(delayed) / Decimal(readings))


def on_time_percentage(delay_pct: Decimal) -> Decimal:
    return round_half_up(_HUNDRED - delay_pct)


def average_speed(speed_sum: Decimal | float, readings: int) -> Decimal:
    """``round(speed_sum / readings, 2)``.

    Float sums are read back through ``repr`` so binary noise does not leak
    into the decimal.
    """
    if readings <= 0:
        return round_half_up(Decimal(0))
    total = speed_sum if isinstance(speed_sum, Decimal) else Decimal(repr(float(speed_sum)))
    return round_half_up(total / Decimal(readings))


class RollupRecord(TransitBaseModel):
    """Common columns of every rollup grain."""

    TABLE: ClassVar[str] = ""
    KEY: ClassVar[tuple[str, ...]] = ()

    readings: int
    delayed: int
    delay_pct: Decimal
    on_time_pct: Decimal
    avg_speed: Decimal

    @classmethod
    def columns(cls) -> tuple[str, ...]:
        """Key columns first, then the measures, in declaration order."""
        rest = tuple(name for name in cls.model_fields if name not in cls.KEY)
        return cls.KEY + rest

    def key(self) -> tuple[object, ...]:
        return tuple(getattr(self, name) for name in self.KEY)

    def values(self) -> tuple[object, ...]:
        return tuple(getattr(self, name) for name in self.columns())

    @classmethod
    def from_counts(
        cls, *, readings: int, delayed: int, speed_sum: Decimal | float, **keys: object
    ) -> RollupRecord:
        """Build a row from raw counts, deriving the percentages and average."""
        delay_pct = delay_percentage(delayed, readings)
        return cls(
            readings=readings,
            delayed=delayed,
            delay_pct=delay_pct,
            on_time_pct=on_time_percentage(delay_pct),
            avg_speed=average_speed(speed_sum, readings),
            **keys,
        )


class DailySummary(RollupRecord):
    """Daily totals across all routes."""

    TABLE: ClassVar[str] = "daily_summary"
    KEY: ClassVar[tuple[str, ...]] = ("date",)

    date: dt.date
    total_routes: int
    total_vehicles: int


class RoutePerformance(RollupRecord):
    """Daily performance of one route."""

    TABLE: ClassVar[str] = "daily_route_performance"
    KEY: ClassVar[tuple[str, ...]] = ("date", "route")

    date: dt.date
    route: str


class SegmentPerformance(RollupRecord):
    """Daily performance of one segment type."""

    TABLE: ClassVar[str] = "daily_segment_performance"
    KEY: ClassVar[tuple[str, ...]] = ("date", "segment_type")

    date: dt.date
    segment_type: SegmentType


class HourlySegmentPerformance(RollupRecord):
    """Performance of one segment type at one hour of day, across all days."""

    TABLE: ClassVar[str] = "hourly_segment_performance"
    KEY: ClassVar[tuple[str, ...]] = ("hour", "segment_type")

    hour: int
    segment_type: SegmentType


class SegmentSummary(RollupRecord):
    """All-time performance of one named segment."""

    TABLE: ClassVar[str] = "segment_summary"
    KEY: ClassVar[tuple[str, ...]] = ("segment_name",)

    segment_name: str
    segment_type: SegmentType


ROLLUP_MODELS: tuple[type[RollupRecord], ...] = (
    DailySummary,
    RoutePerformance,
    SegmentPerformance,
    HourlySegmentPerformance,
    SegmentSummary,
)
