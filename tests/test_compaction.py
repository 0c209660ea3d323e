from __future__ import annotations

from collections import Counter
from datetime import UTC, date, datetime

import pytest

from nolatransit._parquet import decode_fragment, encode_records
from nolatransit.compaction import Compactor, consolidated_key, fragment_date, group_by_date
from nolatransit.exceptions import TransitStorageError
from nolatransit.models.telemetry import TelemetryRecord
from nolatransit.sinks import fragment_key
from nolatransit.storage import LocalObjectStore

NOW = datetime(2024, 1, 16, 12, 0, tzinfo=UTC)


def _clock() -> datetime:
    return NOW


def _record(vid: str, minute: int) -> TelemetryRecord:
    return TelemetryRecord(
        vehicle_id=vid,
        event_timestamp=datetime(2024, 1, 15, 10, minute),
        latitude=29.93,
        longitude=-90.12,
        route="12",
    )


def _put_fragment(store: LocalObjectStore, written_at: datetime, *records: TelemetryRecord) -> str:
    key = fragment_key(written_at)
    store.put(key, encode_records(records))
    return key


def _vids(store: LocalObjectStore, key: str) -> list[str]:
    return decode_fragment(store.get(key), key=key).column("vid").to_pylist()


def _timestamps(store: LocalObjectStore, key: str) -> list[datetime]:
    return decode_fragment(store.get(key), key=key).column("timestamp").to_pylist()


class _FailingPutStore(LocalObjectStore):
    def put(self, key: str, data: bytes) -> None:
        raise TransitStorageError("upload refused", key=key)


def test_fragment_date_parsing() -> None:
    assert fragment_date("2024/01/transit-2024-01-15T10-30-00-123Z.parquet") == date(2024, 1, 15)
    assert fragment_date("daily/2024-01-15.parquet") == date(2024, 1, 15)
    assert fragment_date("2024/01/other-2024-01-15T10-30-00-123Z.parquet") is None
    assert fragment_date("2024/01/transit-2024-13-45T10-30-00-123Z.parquet") is None
    assert fragment_date("notes.txt") is None


def test_group_by_date_sorts_and_ignores_strangers() -> None:
    keys = [
        "2024/01/transit-2024-01-15T11-00-00-000Z.parquet",
        "README.md",
        "2024/01/transit-2024-01-15T10-00-00-000Z.parquet",
        "daily/2024-01-14.parquet",
    ]

    assert group_by_date(keys) == {
        date(2024, 1, 15): [
            "2024/01/transit-2024-01-15T10-00-00-000Z.parquet",
            "2024/01/transit-2024-01-15T11-00-00-000Z.parquet",
        ],
        date(2024, 1, 14): ["daily/2024-01-14.parquet"],
    }


def test_compaction_merges_sorted_and_deletes_originals(tmp_path) -> None:
    store = LocalObjectStore(tmp_path)
    first = _put_fragment(store, datetime(2024, 1, 15, 10, 0, tzinfo=UTC), _record("a", 30), _record("b", 10))
    second = _put_fragment(store, datetime(2024, 1, 15, 11, 0, tzinfo=UTC), _record("c", 20), _record("a", 40))
    today = _put_fragment(store, datetime(2024, 1, 16, 9, 0, tzinfo=UTC), _record("d", 5))
    today_too = _put_fragment(store, datetime(2024, 1, 16, 10, 0, tzinfo=UTC), _record("e", 5))

    report = Compactor(store, clock=_clock).run()

    daily = consolidated_key(date(2024, 1, 15))
    assert report.consolidated == [date(2024, 1, 15)]
    assert report.fragments_deleted == 2
    assert report.records_written == 4
    assert first not in store.list_keys()
    assert second not in store.list_keys()
    assert {today, today_too} <= set(store.list_keys())
    assert Counter(_vids(store, daily)) == Counter({"a": 2, "b": 1, "c": 1})
    stamps = _timestamps(store, daily)
    assert stamps == sorted(stamps)


def test_single_fragment_date_is_left_alone(tmp_path) -> None:
    store = LocalObjectStore(tmp_path)
    only = _put_fragment(store, datetime(2024, 1, 14, 10, 0, tzinfo=UTC), _record("a", 1))

    report = Compactor(store, clock=_clock).run()

    assert report.consolidated == []
    assert store.list_keys() == [only]


def test_compaction_rerun_is_a_no_op(tmp_path) -> None:
    store = LocalObjectStore(tmp_path)
    _put_fragment(store, datetime(2024, 1, 15, 10, 0, tzinfo=UTC), _record("a", 1))
    _put_fragment(store, datetime(2024, 1, 15, 11, 0, tzinfo=UTC), _record("b", 2))
    compactor = Compactor(store, clock=_clock)
    compactor.run()
    daily = consolidated_key(date(2024, 1, 15))
    before = store.get(daily)

    report = compactor.run()

    assert report.consolidated == []
    assert store.list_keys() == [daily]
    assert store.get(daily) == before


def test_unreadable_fragment_is_skipped_and_kept(tmp_path) -> None:
    store = LocalObjectStore(tmp_path)
    _put_fragment(store, datetime(2024, 1, 15, 10, 0, tzinfo=UTC), _record("a", 1))
    _put_fragment(store, datetime(2024, 1, 15, 11, 0, tzinfo=UTC), _record("b", 2))
    garbage = fragment_key(datetime(2024, 1, 15, 12, 0, tzinfo=UTC))
    store.put(garbage, b"not parquet")

    report = Compactor(store, clock=_clock).run()

    daily = consolidated_key(date(2024, 1, 15))
    assert report.unreadable == [garbage]
    assert sorted(store.list_keys()) == sorted([garbage, daily])
    assert sorted(_vids(store, daily)) == ["a", "b"]


def test_failed_upload_leaves_originals(tmp_path) -> None:
    seed = LocalObjectStore(tmp_path)
    _put_fragment(seed, datetime(2024, 1, 15, 10, 0, tzinfo=UTC), _record("a", 1))
    _put_fragment(seed, datetime(2024, 1, 15, 11, 0, tzinfo=UTC), _record("b", 2))
    store = _FailingPutStore(tmp_path)
    before = store.list_keys()

    with pytest.raises(TransitStorageError):
        Compactor(store, clock=_clock).run()

    assert store.list_keys() == before


def test_late_fragment_merges_into_existing_daily(tmp_path) -> None:
    store = LocalObjectStore(tmp_path)
    _put_fragment(store, datetime(2024, 1, 15, 10, 0, tzinfo=UTC), _record("a", 1))
    _put_fragment(store, datetime(2024, 1, 15, 11, 0, tzinfo=UTC), _record("b", 2))
    compactor = Compactor(store, clock=_clock)
    compactor.run()
    late = _put_fragment(store, datetime(2024, 1, 15, 23, 59, tzinfo=UTC), _record("c", 0))

    report = compactor.run()

    daily = consolidated_key(date(2024, 1, 15))
    assert report.consolidated == [date(2024, 1, 15)]
    assert store.list_keys() == [daily]
    assert late not in store.list_keys()
    assert _vids(store, daily) == ["c", "a", "b"]
