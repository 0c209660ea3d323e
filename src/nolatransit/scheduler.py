"""Top-of-hour trigger computation for scheduled maintenance."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta


def next_run_after(now: datetime, hours: Iterable[int]) -> datetime:
    """Return the first ``HH:00:00`` UTC strictly after *now* whose hour is in *hours*.

    Naive *now* values are taken as UTC.
    """
    wanted = {int(hour) for hour in hours}
    if not wanted or not all(0 <= hour <= 23 for hour in wanted):
        raise ValueError(f"hours must name UTC hours between 0 and 23, got {sorted(wanted)}")
    current = now.replace(tzinfo=UTC) if now.tzinfo is None else now.astimezone(UTC)
    candidate = current.replace(minute=0, second=0, microsecond=0)
    for _ in range(25):
        candidate += timedelta(hours=1)
        if candidate.hour in wanted:
            return candidate
    raise AssertionError("unreachable: every hour of the day was checked")
