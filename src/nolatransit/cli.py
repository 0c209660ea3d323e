"""Command line entry point: ``nolatransit`` / ``python -m nolatransit``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from nolatransit.config import TransitConfig
from nolatransit.exceptions import TransitConfigError, TransitError
from nolatransit.geofence import GeofenceIndex
from nolatransit.report import build_report
from nolatransit.service import (
    IngestionService,
    MaintenanceRunner,
    build_aggregation,
    build_compaction,
    install_signal_handlers,
)
from nolatransit.summary import SummaryStore

_logger = logging.getLogger("nolatransit")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="nolatransit",
        description="Collect, compact and aggregate New Orleans transit vehicle telemetry.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("ingest", help="Collect the live feed until SIGINT/SIGTERM.")

    maintain = commands.add_parser("maintain", help="Run compaction then aggregation on a UTC hour schedule.")
    maintain.add_argument(
        "--once",
        action="store_true",
        help="Run a single compaction + aggregation pass and exit.",
    )

    commands.add_parser("compact", help="Consolidate finished days of fragments once.")

    aggregate = commands.add_parser("aggregate", help="Recompute the rollup tables once.")
    aggregate.add_argument(
        "--reset",
        action="store_true",
        help="Empty the rollup tables before recomputing them.",
    )

    commands.add_parser("report", help="Print the dedicated vs mixed traffic delay report.")
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _ingest(config: TransitConfig) -> int:
    config.require_ingestion()
    geofence = GeofenceIndex.from_config(config.segments_file)
    maintenance = None
    if config.row_store_is_local and config.summary_store:
        _logger.info("Local row store %s: maintenance runs inside the ingest process", config.row_store)
        maintenance = MaintenanceRunner.from_config(config, geofence)
    flushed = asyncio.run(IngestionService(config, geofence=geofence, maintenance=maintenance).run())
    return 0 if flushed else 1


async def _maintain_scheduled(runner: MaintenanceRunner) -> None:
    stop = asyncio.Event()
    remove_handlers = install_signal_handlers(stop.set)
    try:
        await runner.run_scheduled(stop)
    finally:
        remove_handlers()


def _maintain(config: TransitConfig, once: bool) -> int:
    config.require_maintenance(scheduled=not once)
    runner = MaintenanceRunner.from_config(config)
    if once:
        return 0 if asyncio.run(runner.run_once()) else 1
    asyncio.run(_maintain_scheduled(runner))
    return 0


def _compact(config: TransitConfig) -> int:
    config.require_maintenance(aggregate=False)
    compact = build_compaction(config)
    if compact is None:
        _logger.info("The row-store sink writes no fragments, nothing to compact")
        return 0
    report = compact()
    print(
        f"Consolidated {len(report.consolidated)} dates, skipped {len(report.skipped)}, "
        f"deleted {report.fragments_deleted} fragments, {len(report.unreadable)} unreadable"
    )
    return 0


def _aggregate(config: TransitConfig, reset: bool) -> int:
    config.require_maintenance()
    geofence = GeofenceIndex.from_config(config.segments_file)
    aggregate = build_aggregation(config, geofence, reset=reset)
    assert aggregate is not None  # noqa: S101
    report = aggregate()
    if report.empty:
        print("No data to aggregate")
    else:
        print(f"Aggregated {report.total_records} records: {report.rows}")
    return 0


def _report(config: TransitConfig) -> int:
    if not config.summary_store:
        raise TransitConfigError("TRANSIT_SUMMARY_STORE is required for the report")
    with SummaryStore(config.summary_store, motherduck_token=config.motherduck_token) as summary:
        print(build_report(summary))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = TransitConfig.from_env()
        if args.command == "ingest":
            return _ingest(config)
        if args.command == "maintain":
            return _maintain(config, args.once)
        if args.command == "compact":
            return _compact(config)
        if args.command == "aggregate":
            return _aggregate(config, args.reset)
        return _report(config)
    except TransitConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1
    except TransitError as exc:
        _logger.error("%s failed: %s", args.command, exc)
        _logger.debug("Failure detail", exc_info=True)
        return 1
    except KeyboardInterrupt:
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
