from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime, timedelta

import pytest

from nolatransit.exceptions import TransitStorageError
from nolatransit.ingestion.buffer import IngestBuffer, IngestionStats
from nolatransit.models.telemetry import TelemetryRecord
from nolatransit.sinks import WriteAck


def _record(n: int) -> TelemetryRecord:
    return TelemetryRecord(
        vehicle_id=str(n),
        event_timestamp=datetime(2024, 1, 15, 10, 0) + timedelta(seconds=n),
        latitude=29.93,
        longitude=-90.12,
        route="12",
    )


class _FakeSink:
    def __init__(self) -> None:
        self.batches: list[list[str]] = []
        self.fail = False
        self.gate: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0

    async def write(self, batch: Sequence[TelemetryRecord]) -> WriteAck:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.fail:
                raise TransitStorageError("store unavailable")
            self.batches.append([record.vehicle_id for record in batch])
            return WriteAck(records=len(batch), location="fake")
        finally:
            self.active -= 1


def _ids(buffer: IngestBuffer) -> list[str]:
    return [record.vehicle_id for record in buffer.snapshot()]


def test_accumulate_reports_size_threshold() -> None:
    buffer = IngestBuffer(_FakeSink(), flush_size=2)

    assert buffer.accumulate(_record(1)) is False
    assert buffer.accumulate(_record(2)) is True
    assert len(buffer) == 2


def test_accumulate_without_size_trigger_never_reports() -> None:
    buffer = IngestBuffer(_FakeSink())
    assert not any(buffer.accumulate(_record(n)) for n in range(100))


@pytest.mark.asyncio
async def test_flush_writes_in_order_and_clears() -> None:
    sink = _FakeSink()
    stats = IngestionStats()
    buffer = IngestBuffer(sink, stats=stats)
    for n in (1, 2, 3):
        buffer.accumulate(_record(n))

    assert await buffer.flush() is True

    assert sink.batches == [["1", "2", "3"]]
    assert len(buffer) == 0
    assert stats.records_persisted == 3
    assert stats.flushes_completed == 1


@pytest.mark.asyncio
async def test_empty_flush_skips_sink() -> None:
    sink = _FakeSink()
    buffer = IngestBuffer(sink)

    assert await buffer.flush() is True
    assert sink.batches == []


@pytest.mark.asyncio
async def test_failed_flush_requeues_exact_batch_ahead_of_new_records() -> None:
    sink = _FakeSink()
    stats = IngestionStats()
    buffer = IngestBuffer(sink, stats=stats)
    buffer.accumulate(_record(1))
    buffer.accumulate(_record(2))

    sink.fail = True
    sink.gate = asyncio.Event()
    flush = asyncio.create_task(buffer.flush())
    await asyncio.sleep(0)
    # Arrives while the failing write is in flight.
    buffer.accumulate(_record(3))
    sink.gate.set()

    assert await flush is False
    assert _ids(buffer) == ["1", "2", "3"]
    assert stats.errors == 1
    assert stats.flushes_completed == 0

    sink.fail = False
    sink.gate = None
    assert await buffer.flush() is True
    assert sink.batches == [["1", "2", "3"]]


@pytest.mark.asyncio
async def test_flushes_are_single_flight() -> None:
    sink = _FakeSink()
    sink.gate = asyncio.Event()
    buffer = IngestBuffer(sink)
    buffer.accumulate(_record(1))

    first = asyncio.create_task(buffer.flush())
    await asyncio.sleep(0)
    buffer.accumulate(_record(2))
    second = asyncio.create_task(buffer.flush())
    await asyncio.sleep(0)
    sink.gate.set()

    assert await asyncio.gather(first, second) == [True, True]
    assert sink.max_active == 1
    assert sink.batches == [["1"], ["2"]]


@pytest.mark.asyncio
async def test_cancelled_flush_lets_write_finish_without_requeue() -> None:
    sink = _FakeSink()
    sink.gate = asyncio.Event()
    stats = IngestionStats()
    buffer = IngestBuffer(sink, stats=stats)
    buffer.accumulate(_record(1))

    flush = asyncio.create_task(buffer.flush())
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert sink.active == 1
    flush.cancel()
    await asyncio.sleep(0)
    assert not flush.done()
    sink.gate.set()
    with pytest.raises(asyncio.CancelledError):
        await flush

    assert sink.batches == [["1"]]
    assert len(buffer) == 0
    assert stats.records_persisted == 1

    assert await buffer.flush() is True
    assert sink.batches == [["1"]]


@pytest.mark.asyncio
async def test_cancelled_flush_requeues_when_write_fails() -> None:
    sink = _FakeSink()
    sink.gate = asyncio.Event()
    sink.fail = True
    stats = IngestionStats()
    buffer = IngestBuffer(sink, stats=stats)
    buffer.accumulate(_record(1))

    flush = asyncio.create_task(buffer.flush())
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    flush.cancel()
    await asyncio.sleep(0)
    sink.gate.set()
    with pytest.raises(asyncio.CancelledError):
        await flush

    assert _ids(buffer) == ["1"]
    assert stats.errors == 1


def test_bounded_buffer_evicts_oldest() -> None:
    stats = IngestionStats()
    buffer = IngestBuffer(_FakeSink(), max_records=2, stats=stats)
    for n in (1, 2, 3):
        buffer.accumulate(_record(n))

    assert _ids(buffer) == ["2", "3"]
    assert stats.records_evicted == 1
