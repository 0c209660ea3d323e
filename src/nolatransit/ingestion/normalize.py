"""Normalization helpers.

Centralizes defensive parsing of feed values. The feed sends numbers as
strings, uses ``""`` and ``"--"`` for missing values, and reports times as
agency wall-clock strings.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any

_FEED_TIME_FORMATS = ("%Y%m%d %H:%M:%S", "%Y%m%d %H:%M")


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or value == "--" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    parsed = safe_float(value)
    if parsed is None:
        return None
    return int(parsed)


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def float_or_zero(value: Any) -> float:
    parsed = safe_float(value)
    return 0.0 if parsed is None else parsed


def int_or_zero(value: Any) -> int:
    parsed = safe_int(value)
    return 0 if parsed is None else parsed


def strict_flag(value: Any) -> bool:
    """Return ``True`` only for a JSON ``true``.

    ``"true"``, ``1`` and other truthy values are *not* flags.
    """
    return value is True


def parse_feed_timestamp(value: Any) -> datetime | None:
    """Parse a feed timestamp into a naive wall-clock datetime.

    Accepts ``YYYYMMDD HH:MM[:SS]`` and ISO 8601. Timezone-aware ISO values
    keep their wall-clock reading and drop the offset. Returns ``None`` when
    the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    text = safe_str(value)
    if text is None:
        return None
    for fmt in _FEED_TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.replace(tzinfo=None)
