#!/usr/bin/env python3
"""Passive probe of the vehicle feed.

Connects to the server-sent events endpoint, prints the cadence and size of
each message and how many elements validate as telemetry records. Nothing is
stored. Use this to check feed health or message frequency before running
the collector.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from nolatransit import TransitConfig  # noqa: E402
from nolatransit._transport import DEFAULT_EVENT, SseTransport  # noqa: E402
from nolatransit.exceptions import TransitTransportError  # noqa: E402
from nolatransit.ingestion.buffer import IngestionStats  # noqa: E402
from nolatransit.ingestion.collector import parse_records  # noqa: E402
from nolatransit.models.telemetry import TelemetryRecord  # noqa: E402

_LOG = logging.getLogger("feed_probe")


@dataclass
class ProbeStats:
    started_at: float
    total_messages: int = 0
    other_events: int = 0
    first_message_at: float | None = None
    last_message_at: float | None = None

    def on_message(self, now: float) -> float | None:
        previous = self.last_message_at
        self.total_messages += 1
        if self.first_message_at is None:
            self.first_message_at = now
        self.last_message_at = now
        return None if previous is None else now - previous


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Passive probe of the vehicle position feed.",
    )
    parser.add_argument(
        "--url",
        default=None,
        help="Feed URL (defaults to TRANSIT_FEED_URL or the public feed).",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--routes",
        action="store_true",
        help="Print a per-route vehicle count for each message.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _route_counts(records: list[TelemetryRecord]) -> str:
    counts: dict[str, int] = {}
    for record in records:
        route = record.route or "?"
        counts[route] = counts.get(route, 0) + 1
    return " ".join(f"{route}={count}" for route, count in sorted(counts.items()))


async def _probe(url: str, args: argparse.Namespace, stats: ProbeStats) -> None:
    validation = IngestionStats()
    async with SseTransport(url) as transport:
        print(f"[probe] Connecting to {url}")
        async with transport.open() as events:
            print("[probe] Connected")
            async for event in events:
                now = time.time()
                if event.event != DEFAULT_EVENT:
                    stats.other_events += 1
                    continue
                delta = stats.on_message(now)
                records = parse_records(event.data, validation)
                ts_text = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(now))
                gap_text = "first" if delta is None else f"{delta:.1f}s"
                print(
                    f"[probe] msg#{stats.total_messages} at {ts_text} gap={gap_text} "
                    f"bytes={len(event.data)} records={len(records)}",
                )
                if args.routes:
                    print(f"[probe]   routes: {_route_counts(records)}")
                if args.duration > 0 and (now - stats.started_at) >= args.duration:
                    print(f"[probe] Reached --duration={args.duration}s, stopping.")
                    return


def _print_summary(stats: ProbeStats) -> None:
    elapsed = time.time() - stats.started_at
    print("[probe] Summary")
    print(f"[probe]   runtime        : {elapsed:.1f}s")
    print(f"[probe]   messages       : {stats.total_messages}")
    print(f"[probe]   other events   : {stats.other_events}")
    if stats.first_message_at is not None and stats.last_message_at is not None and stats.total_messages > 1:
        average = (stats.last_message_at - stats.first_message_at) / (stats.total_messages - 1)
        print(f"[probe]   average gap    : {average:.1f}s")


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    config = TransitConfig.from_env()
    url = args.url or config.feed_url
    stats = ProbeStats(started_at=time.time())
    try:
        asyncio.run(_probe(url, args, stats))
    except TransitTransportError as exc:
        print(f"[probe] Feed failed: {exc}", file=sys.stderr)
        _print_summary(stats)
        return 2
    except KeyboardInterrupt:
        pass

    _print_summary(stats)
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
