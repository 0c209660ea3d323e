"""Dedicated right-of-way vs mixed traffic delay report built from rollups."""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal

from nolatransit.models.rollup import (
    HourlySegmentPerformance,
    RoutePerformance,
    SegmentPerformance,
    SegmentSummary,
    delay_percentage,
)
from nolatransit.models.segment import SegmentType
from nolatransit.summary import SummaryStore

_RULE = "-" * 60


def _segment_type_section(rows: list[SegmentPerformance]) -> list[str]:
    lines = ["DELAYS BY SEGMENT TYPE (mixed traffic vs dedicated right-of-way)", _RULE]
    if not rows:
        return [*lines, "No data yet.", ""]
    readings: dict[SegmentType, int] = defaultdict(int)
    delayed: dict[SegmentType, int] = defaultdict(int)
    for row in rows:
        readings[row.segment_type] += row.readings
        delayed[row.segment_type] += row.delayed
    pct: dict[SegmentType, Decimal] = {}
    for segment_type in sorted(readings):
        pct[segment_type] = delay_percentage(delayed[segment_type], readings[segment_type])
        lines.append(
            f"{segment_type.value:<15} readings={readings[segment_type]:>8}  delayed={pct[segment_type]:>6}%"
        )
    if SegmentType.MIXED_TRAFFIC in pct and SegmentType.DEDICATED_ROW in pct:
        difference = pct[SegmentType.MIXED_TRAFFIC] - pct[SegmentType.DEDICATED_ROW]
        lines.append("")
        lines.append(
            f"Finding: streetcars in mixed traffic are delayed {difference}% more often "
            "than in dedicated right-of-way"
        )
    lines.append("")
    return lines


def _segment_section(rows: list[SegmentSummary]) -> list[str]:
    lines = ["DELAYS BY SEGMENT", _RULE]
    if not rows:
        return [*lines, "No data yet.", ""]
    for row in sorted(rows, key=lambda r: r.delay_pct, reverse=True):
        lines.append(
            f"{row.segment_name:<38} {row.segment_type.value:<14} "
            f"delayed={row.delay_pct:>6}%  avg_speed={row.avg_speed}"
        )
    lines.append("")
    return lines


def _hourly_section(rows: list[HourlySegmentPerformance]) -> list[str]:
    lines = ["DELAYS BY TIME OF DAY", _RULE]
    if not rows:
        return [*lines, "No data yet.", ""]
    by_hour: dict[int, dict[SegmentType, Decimal]] = defaultdict(dict)
    for row in rows:
        by_hour[row.hour][row.segment_type] = row.delay_pct
    lines.append("Hour  | Mixed Traffic | Dedicated ROW | Difference")
    for hour in sorted(by_hour):
        mixed = by_hour[hour].get(SegmentType.MIXED_TRAFFIC)
        dedicated = by_hour[hour].get(SegmentType.DEDICATED_ROW)
        difference = f"{mixed - dedicated}%" if mixed is not None and dedicated is not None else "n/a"
        lines.append(
            f"{hour:02d}:00 | {_pct(mixed):>13} | {_pct(dedicated):>13} | {difference}"
        )
    lines.append("")
    return lines


def _route_section(rows: list[RoutePerformance]) -> list[str]:
    lines = ["ROUTE DELAYS (latest day)", _RULE]
    if not rows:
        return [*lines, "No data yet.", ""]
    latest = max(row.date for row in rows)
    for row in sorted((r for r in rows if r.date == latest), key=lambda r: r.delay_pct, reverse=True):
        lines.append(f"route {row.route:<6} readings={row.readings:>7}  delayed={row.delay_pct:>6}%")
    lines.append("")
    return lines


def _pct(value: Decimal | None) -> str:
    return "-" if value is None else f"{value}%"


def build_report(summary: SummaryStore) -> str:
    """Render the delay analysis from the summary tables."""
    lines = ["=" * 40, "NOLA STREETCAR DELAY ANALYSIS", "=" * 40, ""]
    lines += _segment_type_section(summary.fetch(SegmentPerformance))
    lines += _segment_section(summary.fetch(SegmentSummary))
    lines += _hourly_section(summary.fetch(HourlySegmentPerformance))
    lines += _route_section(summary.fetch(RoutePerformance))
    return "\n".join(lines)
