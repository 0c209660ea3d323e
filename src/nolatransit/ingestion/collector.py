"""Live feed collector.

Holds one persistent server-sent events connection, turns each ``message``
event into validated :class:`TelemetryRecord` objects and hands them to a
callback. Transport failures are counted and followed by a reconnect after a
fixed delay; only :meth:`StreamCollector.stop` ends :meth:`StreamCollector.run`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from nolatransit._constants import DEFAULT_RECONNECT_DELAY_MS
from nolatransit._transport import DEFAULT_EVENT, FeedTransport, SseEvent
from nolatransit.exceptions import TransitParseError, TransitTransportError
from nolatransit.ingestion.buffer import IngestionStats
from nolatransit.models.telemetry import TelemetryRecord

_logger = logging.getLogger(__name__)

RecordsCallback = Callable[[list[TelemetryRecord]], Awaitable[None]]


class CollectorState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


def parse_message(data: str) -> list[Any]:
    """Decode one event payload into its list of raw vehicle elements.

    Raises
    ------
    TransitParseError
        When the payload is not JSON or not a JSON array.
    """
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise TransitParseError(f"Message is not JSON: {data[:64]!r}") from exc
    if not isinstance(payload, list):
        raise TransitParseError(f"Message is not a JSON array: {type(payload).__name__}")
    return payload


def parse_records(data: str, stats: IngestionStats) -> list[TelemetryRecord]:
    """Validate one message payload and return the accepted records.

    A malformed message counts as an error. A single invalid element is
    dropped and counted as a parse error. Elements at the ``0, 0`` position
    are counted as dropped.
    """
    stats.messages_received += 1
    try:
        elements = parse_message(data)
    except TransitParseError as exc:
        stats.errors += 1
        _logger.warning("Skipping malformed message: %s", exc)
        return []

    accepted: list[TelemetryRecord] = []
    for element in elements:
        if not isinstance(element, dict):
            stats.parse_errors += 1
            _logger.debug("Skipping non-object element %r", element)
            continue
        try:
            record = TelemetryRecord.model_validate(element)
        except ValidationError as exc:
            stats.parse_errors += 1
            _logger.debug("Skipping invalid element vid=%s: %s", element.get("vid"), exc)
            continue
        if record.is_unknown_position:
            stats.records_dropped += 1
            continue
        accepted.append(record)

    stats.records_accepted += len(accepted)
    _logger.debug("Message accepted %d of %d elements", len(accepted), len(elements))
    return accepted


class StreamCollector:
    """Consume the vehicle feed and forward accepted records.

    Parameters
    ----------
    transport : FeedTransport
        Connection factory for the feed.
    on_records : callable
        Awaited with the accepted records of each message.
    stats : IngestionStats or None
        Counters shared with the buffer.
    reconnect_delay_ms : int
        Fixed wait before reconnecting after a transport failure.
    """

    def __init__(
        self,
        transport: FeedTransport,
        on_records: RecordsCallback,
        *,
        stats: IngestionStats | None = None,
        reconnect_delay_ms: int = DEFAULT_RECONNECT_DELAY_MS,
    ) -> None:
        self._transport = transport
        self._on_records = on_records
        self._stats = stats or IngestionStats()
        self._reconnect_delay = reconnect_delay_ms / 1000.0
        self._state = CollectorState.DISCONNECTED
        self._stop = asyncio.Event()

    @property
    def state(self) -> CollectorState:
        return self._state

    @property
    def stats(self) -> IngestionStats:
        return self._stats

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _set_state(self, state: CollectorState) -> None:
        if state != self._state:
            _logger.debug("Collector %s -> %s", self._state, state)
            self._state = state

    def handle_message(self, data: str) -> list[TelemetryRecord]:
        """Validate one message payload; return the accepted records."""
        return parse_records(data, self._stats)

    async def _dispatch(self, event: SseEvent) -> None:
        if event.event != DEFAULT_EVENT:
            _logger.debug("Ignoring %s event", event.event)
            return
        records = self.handle_message(event.data)
        if records:
            await self._on_records(records)

    async def connect(self) -> None:
        """Open the feed and process events until the connection fails.

        Raises
        ------
        TransitTransportError
            When the connection cannot be opened or is lost.
        """
        self._set_state(CollectorState.CONNECTING)
        try:
            async with self._transport.open() as events:
                self._set_state(CollectorState.CONNECTED)
                _logger.info("Connected to feed")
                async for event in events:
                    await self._dispatch(event)
        finally:
            self._set_state(CollectorState.CLOSING)
            self._set_state(CollectorState.DISCONNECTED)

    async def _wait_reconnect(self) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=self._reconnect_delay)

    async def run(self) -> None:
        """Collect until :meth:`stop` is called, reconnecting after failures."""
        while not self._stop.is_set():
            connect_task = asyncio.create_task(self.connect())
            stop_task = asyncio.create_task(self._stop.wait())
            try:
                done, _ = await asyncio.wait({connect_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                connect_task.cancel()
                stop_task.cancel()
                raise

            if connect_task not in done:
                connect_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, TransitTransportError):
                    await connect_task
                break

            stop_task.cancel()
            exc = connect_task.exception()
            if exc is None:
                _logger.warning("Feed connection ended without error")
            elif isinstance(exc, TransitTransportError):
                self._stats.errors += 1
                _logger.warning("Feed connection lost: %s", exc)
            else:
                self._stats.errors += 1
                _logger.error("Collector failed unexpectedly: %s", exc, exc_info=exc)

            if self._stop.is_set():
                break
            _logger.info("Reconnecting in %.1f s", self._reconnect_delay)
            await self._wait_reconnect()

        self._set_state(CollectorState.DISCONNECTED)
        _logger.info("Collector stopped")

    def stop(self) -> None:
        """Request :meth:`run` to return; an open connection is closed."""
        if not self._stop.is_set():
            _logger.info("Collector stop requested")
            self._stop.set()
            if self._state == CollectorState.CONNECTED:
                self._set_state(CollectorState.CLOSING)
