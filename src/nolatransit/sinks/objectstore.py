"""Column-object sink: one Parquet fragment per flushed batch."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from types import TracebackType

from nolatransit._constants import DEFAULT_FRAGMENT_PREFIX, FRAGMENT_SUFFIX
from nolatransit._parquet import encode_records
from nolatransit.geofence import GeofenceIndex
from nolatransit.models.telemetry import TelemetryRecord
from nolatransit.sinks._base import WriteAck, prepare_batch
from nolatransit.storage import ObjectStore

_logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def fragment_key(written_at: datetime, prefix: str = DEFAULT_FRAGMENT_PREFIX) -> str:
    """Return ``{YYYY}/{MM}/{prefix}-{timestamp}.parquet`` for a write at *written_at*.

    The timestamp is the UTC ISO 8601 form with millisecond precision, ``:``
    and ``.`` replaced by ``-`` (``2024-01-15T10-30-00-123Z``).
    """
    utc = written_at.astimezone(UTC) if written_at.tzinfo else written_at
    stamp = f"{utc:%Y-%m-%dT%H:%M:%S}.{utc.microsecond // 1000:03d}Z"
    sanitized = stamp.replace(":", "-").replace(".", "-")
    return f"{utc:%Y}/{utc:%m}/{prefix}-{sanitized}{FRAGMENT_SUFFIX}"


class ColumnObjectSink:
    """Serialize each batch to Parquet and upload it as an immutable object."""

    def __init__(
        self,
        store: ObjectStore,
        geofence: GeofenceIndex,
        *,
        prefix: str = DEFAULT_FRAGMENT_PREFIX,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._geofence = geofence
        self._prefix = prefix
        self._clock = clock

    async def __aenter__(self) -> ColumnObjectSink:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        return None

    def _upload(self, records: list[TelemetryRecord]) -> str:
        key = fragment_key(self._clock(), self._prefix)
        self._store.put(key, encode_records(records))
        return key

    async def write(self, batch: Sequence[TelemetryRecord]) -> WriteAck:
        records = prepare_batch(batch, self._geofence)
        if not records:
            return WriteAck(records=0)
        loop = asyncio.get_running_loop()
        key = await loop.run_in_executor(None, functools.partial(self._upload, records))
        _logger.debug("Uploaded %d records to %s", len(records), key)
        return WriteAck(records=len(records), location=key)
