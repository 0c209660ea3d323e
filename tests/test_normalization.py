from __future__ import annotations

from datetime import datetime

from nolatransit.ingestion.normalize import (
    float_or_zero,
    int_or_zero,
    parse_feed_timestamp,
    safe_float,
    safe_int,
    safe_str,
    strict_flag,
)


def test_safe_float_handles_feed_placeholders() -> None:
    assert safe_float("12.5") == 12.5
    assert safe_float(7) == 7.0
    assert safe_float("") is None
    assert safe_float("--") is None
    assert safe_float("abc") is None
    assert safe_float(float("nan")) is None
    assert safe_float(True) is None


def test_zero_defaults_for_missing_numbers() -> None:
    assert float_or_zero(None) == 0.0
    assert float_or_zero("n/a") == 0.0
    assert int_or_zero("42.9") == 42
    assert int_or_zero("") == 0
    assert safe_int(None) is None


def test_safe_str_strips_and_drops_empty() -> None:
    assert safe_str("  Canal  ") == "Canal"
    assert safe_str("   ") is None
    assert safe_str(12) == "12"


def test_strict_flag_only_accepts_json_true() -> None:
    assert strict_flag(True) is True
    assert strict_flag("true") is False
    assert strict_flag(1) is False
    assert strict_flag(None) is False


def test_parse_feed_timestamp_agency_formats() -> None:
    assert parse_feed_timestamp("20240115 10:30") == datetime(2024, 1, 15, 10, 30)
    assert parse_feed_timestamp("20240115 10:30:45") == datetime(2024, 1, 15, 10, 30, 45)


def test_parse_feed_timestamp_iso_keeps_wall_clock() -> None:
    assert parse_feed_timestamp("2024-01-15T10:30:45Z") == datetime(2024, 1, 15, 10, 30, 45)
    assert parse_feed_timestamp("2024-01-15T10:30:45-06:00") == datetime(2024, 1, 15, 10, 30, 45)


def test_parse_feed_timestamp_rejects_garbage() -> None:
    assert parse_feed_timestamp(None) is None
    assert parse_feed_timestamp("") is None
    assert parse_feed_timestamp("yesterday") is None
