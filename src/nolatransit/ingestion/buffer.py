"""In-memory ingest buffer with single-flight flushes."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
from collections import deque

from nolatransit.models.telemetry import TelemetryRecord
from nolatransit.sinks import DurableSink, WriteAck

_logger = logging.getLogger(__name__)


@dataclasses.dataclass
class IngestionStats:
    """Counters of one ingestion session."""

    messages_received: int = 0
    records_accepted: int = 0
    records_dropped: int = 0
    records_persisted: int = 0
    records_evicted: int = 0
    flushes_completed: int = 0
    errors: int = 0
    parse_errors: int = 0
    started_at: float = dataclasses.field(default_factory=time.monotonic)

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at


class IngestBuffer:
    """Accumulate records and hand them to a :class:`DurableSink` in batches.

    Parameters
    ----------
    sink : DurableSink
        Destination of flushed batches.
    flush_size : int
        ``accumulate`` reports ``True`` once this many records are buffered.
        ``0`` disables the size trigger.
    max_records : int
        Bound on buffered records; beyond it the oldest are evicted. ``0``
        means unbounded.
    stats : IngestionStats or None
        Counters shared with the collector.
    """

    def __init__(
        self,
        sink: DurableSink,
        *,
        flush_size: int = 0,
        max_records: int = 0,
        stats: IngestionStats | None = None,
    ) -> None:
        self._sink = sink
        self._flush_size = flush_size
        self._max_records = max_records
        self._stats = stats or IngestionStats()
        self._records: deque[TelemetryRecord] = deque()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    @property
    def stats(self) -> IngestionStats:
        return self._stats

    def snapshot(self) -> list[TelemetryRecord]:
        """Return the buffered records, oldest first, without clearing them."""
        return list(self._records)

    def accumulate(self, record: TelemetryRecord) -> bool:
        """Append *record*; return ``True`` when the size threshold is reached."""
        self._records.append(record)
        if self._max_records and len(self._records) > self._max_records:
            self._evict(len(self._records) - self._max_records)
        return bool(self._flush_size) and len(self._records) >= self._flush_size

    def _evict(self, count: int) -> None:
        for _ in range(count):
            self._records.popleft()
        self._stats.records_evicted += count
        _logger.warning(
            "Buffer bound of %d records reached, evicted %d oldest (total evicted %d)",
            self._max_records,
            count,
            self._stats.records_evicted,
        )

    def _requeue(self, batch: list[TelemetryRecord]) -> None:
        self._records.extendleft(reversed(batch))
        if self._max_records and len(self._records) > self._max_records:
            self._evict(len(self._records) - self._max_records)

    async def flush(self) -> bool:
        """Write buffered records to the sink.

        Only one flush runs at a time. On failure the attempted batch is put
        back ahead of records that arrived meanwhile and ``False`` is
        returned; this method never raises for sink errors.

        Cancelling a flush does not cancel the sink write already in flight:
        the write is awaited to completion and the batch is requeued only if
        it failed, then the cancellation propagates.
        """
        async with self._lock:
            if not self._records:
                return True
            batch = list(self._records)
            self._records.clear()
            write = asyncio.ensure_future(self._sink.write(batch))
            try:
                await asyncio.wait({write})
            except asyncio.CancelledError:
                await _settle(write)
                self._record_outcome(write, batch)
                raise
            return self._record_outcome(write, batch)

    def _record_outcome(self, write: asyncio.Future[WriteAck], batch: list[TelemetryRecord]) -> bool:
        exc = None if write.cancelled() else write.exception()
        if write.cancelled() or exc is not None:
            self._requeue(batch)
            self._stats.errors += 1
            _logger.warning("Flush of %d records failed, requeued: %s", len(batch), exc or "write cancelled")
            _logger.debug("Flush failure detail", exc_info=exc)
            return False
        ack = write.result()
        self._stats.records_persisted += ack.records
        self._stats.flushes_completed += 1
        _logger.info("Flushed %d records to %s", ack.records, ack.location or "sink")
        return True


async def _settle(write: asyncio.Future[WriteAck]) -> None:
    """Wait for an in-flight write even while the caller is being cancelled."""
    while not write.done():
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.wait({write})
