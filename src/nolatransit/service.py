"""Long-running ingestion and maintenance services.

:class:`IngestionService` wires the feed transport, collector, buffer and
sink into one session with its own stats. :class:`MaintenanceRunner` runs
compaction then aggregation, once or on a UTC hour schedule.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from nolatransit._redact import redact_config
from nolatransit._transport import FeedTransport, SseTransport
from nolatransit.aggregation import AggregationReport, Aggregator, FragmentSource, RawSource, RowStoreSource
from nolatransit.compaction import CompactionReport, Compactor
from nolatransit.config import SINK_ROW, TransitConfig
from nolatransit.exceptions import TransitError
from nolatransit.geofence import GeofenceIndex
from nolatransit.ingestion.buffer import IngestBuffer, IngestionStats
from nolatransit.ingestion.collector import StreamCollector
from nolatransit.models.telemetry import TelemetryRecord
from nolatransit.scheduler import next_run_after
from nolatransit.sinks import DurableSink, build_sink
from nolatransit.storage import ObjectStore, build_object_store
from nolatransit.summary import SummaryStore

_logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def install_signal_handlers(callback: Callable[[], None]) -> Callable[[], None]:
    """Route SIGINT/SIGTERM to *callback*; return a function removing the handlers."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in _SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError):
            _logger.debug("Signal handler for %s not supported here", sig.name)
            continue
        installed.append(sig)

    def remove() -> None:
        for sig in installed:
            loop.remove_signal_handler(sig)

    return remove


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class IngestionService:
    """One ingestion session: feed -> collector -> buffer -> sink.

    ``run()`` returns after :meth:`stop` (or SIGINT/SIGTERM) once the final
    flush has been awaited; its result is that flush's outcome. When a
    *maintenance* runner is given, its schedule runs alongside collection and
    an in-flight run is finished before the final flush.
    """

    def __init__(
        self,
        config: TransitConfig,
        *,
        geofence: GeofenceIndex | None = None,
        sink: DurableSink | None = None,
        transport: FeedTransport | None = None,
        handle_signals: bool = True,
        maintenance: MaintenanceRunner | None = None,
    ) -> None:
        self._config = config
        self._geofence = geofence
        self._sink = sink
        self._transport = transport
        self._handle_signals = handle_signals
        self._maintenance = maintenance
        self._stats = IngestionStats()
        self._buffer: IngestBuffer | None = None
        self._collector: StreamCollector | None = None
        self._stop_requested = False

    @property
    def stats(self) -> IngestionStats:
        return self._stats

    @property
    def buffer(self) -> IngestBuffer | None:
        return self._buffer

    @property
    def collector(self) -> StreamCollector | None:
        return self._collector

    def stop(self) -> None:
        """Request a graceful shutdown."""
        self._stop_requested = True
        if self._collector is not None:
            self._collector.stop()

    async def _on_records(self, records: list[TelemetryRecord]) -> None:
        assert self._buffer is not None  # noqa: S101
        threshold = False
        for record in records:
            threshold = self._buffer.accumulate(record) or threshold
        if threshold:
            await self._buffer.flush()

    async def _flush_periodically(self, buffer: IngestBuffer) -> None:
        while True:
            await asyncio.sleep(self._config.flush_interval)
            await buffer.flush()

    async def _log_stats_periodically(self, buffer: IngestBuffer) -> None:
        while True:
            await asyncio.sleep(self._config.stats_interval)
            self.log_stats(buffer)

    def log_stats(self, buffer: IngestBuffer) -> None:
        stats = self._stats
        _logger.info(
            "Stats: uptime=%ds messages=%d accepted=%d buffered=%d persisted=%d flushes=%d errors=%d "
            "parse_errors=%d evicted=%d",
            int(stats.uptime),
            stats.messages_received,
            stats.records_accepted,
            len(buffer),
            stats.records_persisted,
            stats.flushes_completed,
            stats.errors,
            stats.parse_errors,
            stats.records_evicted,
        )

    async def run(self) -> bool:
        """Collect until stopped, then perform one final flush.

        Returns
        -------
        bool
            ``True`` when the final flush succeeded (or nothing was buffered).
        """
        config = self._config
        _logger.debug("Ingestion config: %s", redact_config(config))
        geofence = self._geofence or GeofenceIndex.from_config(config.segments_file)
        sink = self._sink or build_sink(config, geofence)

        async with contextlib.AsyncExitStack() as stack:
            await stack.enter_async_context(sink)
            transport = self._transport
            if transport is None:
                transport = await stack.enter_async_context(SseTransport(config.feed_url))

            buffer = IngestBuffer(
                sink,
                flush_size=config.flush_size,
                max_records=config.max_buffered,
                stats=self._stats,
            )
            self._buffer = buffer
            collector = StreamCollector(
                transport,
                self._on_records,
                stats=self._stats,
                reconnect_delay_ms=config.reconnect_delay_ms,
            )
            self._collector = collector
            if self._stop_requested:
                collector.stop()

            if self._handle_signals:
                stack.callback(install_signal_handlers(self.stop))

            background: list[asyncio.Task[Any]] = []
            if config.flush_interval > 0:
                background.append(asyncio.create_task(self._flush_periodically(buffer)))
            if config.stats_interval > 0:
                background.append(asyncio.create_task(self._log_stats_periodically(buffer)))
            maintenance_stop = asyncio.Event()
            maintenance_task = None
            if self._maintenance is not None:
                maintenance_task = asyncio.create_task(self._maintenance.run_scheduled(maintenance_stop))

            _logger.info("Ingestion started, feed %s", config.feed_url)
            try:
                await collector.run()
            finally:
                for task in background:
                    task.cancel()
                await asyncio.gather(*background, return_exceptions=True)
                if maintenance_task is not None:
                    maintenance_stop.set()
                    await maintenance_task

            pending = len(buffer)
            _logger.info("Shutting down, final flush of %d records", pending)
            flushed = await buffer.flush()
            self.log_stats(buffer)
            if not flushed:
                _logger.error("Final flush failed, %d records not persisted", len(buffer))
            return flushed


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def build_raw_source(config: TransitConfig, geofence: GeofenceIndex, store: ObjectStore | None = None) -> RawSource:
    """Raw source matching the configured sink."""
    if config.sink == SINK_ROW:
        return RowStoreSource(config.row_store, geofence, motherduck_token=config.motherduck_token)
    return FragmentSource(store or build_object_store(config), prefix=config.fragment_prefix)


def build_compaction(config: TransitConfig, store: ObjectStore | None = None) -> Callable[[], CompactionReport] | None:
    """Compaction task for the object sink; the row sink has no fragments."""
    if config.sink == SINK_ROW:
        return None
    return Compactor(store or build_object_store(config), prefix=config.fragment_prefix).run


def build_aggregation(
    config: TransitConfig,
    geofence: GeofenceIndex,
    store: ObjectStore | None = None,
    *,
    reset: bool = False,
) -> Callable[[], AggregationReport] | None:
    """Aggregation task writing into ``config.summary_store``."""
    if not config.summary_store:
        return None
    summary_database = config.summary_store
    source = build_raw_source(config, geofence, store)

    def aggregate() -> AggregationReport:
        with SummaryStore(summary_database, motherduck_token=config.motherduck_token) as summary:
            if reset:
                summary.reset()
            aggregator = Aggregator(
                source,
                summary,
                min_route_readings=config.min_route_readings,
                excluded_routes=config.excluded_routes,
            )
            return aggregator.run()

    return aggregate


class MaintenanceRunner:
    """Run compaction then aggregation, serially and never concurrently.

    Parameters
    ----------
    compact, aggregate : callable or None
        Blocking stage functions; ``None`` skips the stage.
    schedule_hours : tuple of int
        UTC hours triggering scheduled runs.
    run_on_start : bool
        Run once immediately when scheduling starts.
    clock : callable
        Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        compact: Callable[[], CompactionReport] | None,
        aggregate: Callable[[], AggregationReport] | None,
        *,
        schedule_hours: tuple[int, ...] = (6, 18),
        run_on_start: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._compact = compact
        self._aggregate = aggregate
        self._schedule_hours = schedule_hours
        self._run_on_start = run_on_start
        self._clock = clock
        self._lock = asyncio.Lock()
        self.runs_completed = 0
        self.runs_failed = 0

    @classmethod
    def from_config(cls, config: TransitConfig, geofence: GeofenceIndex | None = None) -> MaintenanceRunner:
        _logger.debug("Maintenance config: %s", redact_config(config))
        geofence = geofence or GeofenceIndex.from_config(config.segments_file)
        store = None if config.sink == SINK_ROW else build_object_store(config)
        return cls(
            build_compaction(config, store),
            build_aggregation(config, geofence, store),
            schedule_hours=config.schedule_hours,
            run_on_start=config.run_on_start,
        )

    async def run_once(self) -> bool:
        """Run compaction then aggregation; return ``False`` if either failed."""
        loop = asyncio.get_running_loop()
        async with self._lock:
            started = self._clock()
            _logger.info("Maintenance run started")
            try:
                if self._compact is not None:
                    compaction = await loop.run_in_executor(None, self._compact)
                    _logger.info(
                        "Compaction: %d dates consolidated, %d skipped, %d fragments deleted, %d unreadable",
                        len(compaction.consolidated),
                        len(compaction.skipped),
                        compaction.fragments_deleted,
                        len(compaction.unreadable),
                    )
                if self._aggregate is not None:
                    aggregation = await loop.run_in_executor(None, self._aggregate)
                    if aggregation.empty:
                        _logger.info("Aggregation: no data")
                    else:
                        _logger.info("Aggregation: %s", aggregation.rows)
            except TransitError as exc:
                self.runs_failed += 1
                _logger.error("Maintenance run failed: %s", exc)
                _logger.debug("Maintenance failure detail", exc_info=True)
                return False
            except Exception:
                self.runs_failed += 1
                _logger.exception("Maintenance run failed unexpectedly")
                return False
            self.runs_completed += 1
            elapsed = (self._clock() - started).total_seconds()
            _logger.info("Maintenance run finished in %.1f s", elapsed)
            return True

    async def run_scheduled(self, stop: asyncio.Event) -> None:
        """Run at each scheduled UTC hour until *stop* is set.

        An in-flight run is finished before returning.
        """
        if self._run_on_start and not stop.is_set():
            await self.run_once()
        while not stop.is_set():
            now = self._clock()
            due = next_run_after(now, self._schedule_hours)
            delay = max(0.0, (due - now).total_seconds())
            _logger.info("Next maintenance run at %s", due.isoformat())
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=delay)
            if stop.is_set():
                break
            await self.run_once()
        _logger.info("Maintenance scheduler stopped")
