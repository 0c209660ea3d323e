"""Daily compaction of Parquet fragments.

Every flush of the object sink leaves one small fragment. The compactor
merges all fragments of a finished (UTC) day into ``daily/{date}.parquet``,
sorted by event timestamp, and deletes the originals once the merged object
is stored.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime

import pyarrow as pa

from nolatransit._constants import CONSOLIDATED_PREFIX, DEFAULT_FRAGMENT_PREFIX, FRAGMENT_SUFFIX
from nolatransit._parquet import decode_fragment, encode_table, merge_fragments
from nolatransit.exceptions import TransitStorageError
from nolatransit.storage import ObjectStore

_logger = logging.getLogger(__name__)

_DAILY_PATTERN = re.compile(rf"^{re.escape(CONSOLIDATED_PREFIX)}(\d{{4}}-\d{{2}}-\d{{2}}){re.escape(FRAGMENT_SUFFIX)}$")


def _utc_now() -> datetime:
    return datetime.now(UTC)


def consolidated_key(day: date) -> str:
    return f"{CONSOLIDATED_PREFIX}{day.isoformat()}{FRAGMENT_SUFFIX}"


def _raw_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(rf"(?:^|/){re.escape(prefix)}-(\d{{4}}-\d{{2}}-\d{{2}})T[^/]*{re.escape(FRAGMENT_SUFFIX)}$")


def fragment_date(key: str, prefix: str = DEFAULT_FRAGMENT_PREFIX) -> date | None:
    """Return the date partition of a raw or consolidated fragment key, or ``None``."""
    match = _DAILY_PATTERN.match(key) or _raw_pattern(prefix).search(key)
    if match is None:
        return None
    try:
        return date.fromisoformat(match.group(1))
    except ValueError:
        return None


def group_by_date(keys: Iterable[str], prefix: str = DEFAULT_FRAGMENT_PREFIX) -> dict[date, list[str]]:
    """Group fragment keys by date; keys that are not fragments are ignored."""
    groups: dict[date, list[str]] = defaultdict(list)
    for key in keys:
        day = fragment_date(key, prefix)
        if day is not None:
            groups[day].append(key)
    return {day: sorted(day_keys) for day, day_keys in groups.items()}


@dataclasses.dataclass
class CompactionReport:
    """Outcome of one compaction run."""

    consolidated: list[date] = dataclasses.field(default_factory=list)
    skipped: list[date] = dataclasses.field(default_factory=list)
    unreadable: list[str] = dataclasses.field(default_factory=list)
    fragments_deleted: int = 0
    records_written: int = 0


class Compactor:
    """Merge each finished day's fragments into one consolidated object."""

    def __init__(
        self,
        store: ObjectStore,
        *,
        prefix: str = DEFAULT_FRAGMENT_PREFIX,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._prefix = prefix
        self._clock = clock

    def candidate_dates(self, keys: Iterable[str]) -> dict[date, list[str]]:
        """Dates eligible for compaction: before today (UTC) with more than one fragment."""
        today = self._clock().astimezone(UTC).date()
        return {
            day: day_keys
            for day, day_keys in sorted(group_by_date(keys, self._prefix).items())
            if day < today and len(day_keys) > 1
        }

    def _read(self, keys: list[str], report: CompactionReport) -> tuple[list[pa.Table], list[str]]:
        tables: list[pa.Table] = []
        readable: list[str] = []
        for key in keys:
            try:
                tables.append(decode_fragment(self._store.get(key), key=key))
            except TransitStorageError as exc:
                report.unreadable.append(key)
                _logger.warning("Skipping unreadable fragment %s: %s", key, exc)
                continue
            readable.append(key)
        return tables, readable

    def compact_date(self, day: date, keys: list[str], report: CompactionReport) -> None:
        """Consolidate *keys* of *day*; deletes happen only after the upload returns.

        Raises
        ------
        TransitStorageError
            When the upload or a delete fails.
        """
        output_key = consolidated_key(day)
        tables, readable = self._read(keys, report)
        if not readable or readable == [output_key]:
            _logger.warning("No readable fragments to merge for %s, leaving it untouched", day)
            report.skipped.append(day)
            return

        merged = merge_fragments(tables)
        self._store.put(output_key, encode_table(merged))

        originals = [key for key in readable if key != output_key]
        self._store.delete(originals)

        report.consolidated.append(day)
        report.fragments_deleted += len(originals)
        report.records_written += merged.num_rows
        _logger.info(
            "Consolidated %d fragments for %s into %s (%d records)", len(readable), day, output_key, merged.num_rows
        )

    def run(self) -> CompactionReport:
        """Compact every eligible date.

        Raises
        ------
        TransitStorageError
            When listing, uploading or deleting fails; dates finished before
            the failure stay consolidated.
        """
        report = CompactionReport()
        keys = self._store.list_keys()
        candidates = self.candidate_dates(keys)
        _logger.info("Found %d fragments, %d dates to compact", len(keys), len(candidates))
        for day, day_keys in candidates.items():
            self.compact_date(day, day_keys, report)
        return report
