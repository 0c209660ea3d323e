"""Pipeline configuration for nolatransit."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from nolatransit._constants import (
    DEFAULT_FLUSH_INTERVAL,
    DEFAULT_FRAGMENT_PREFIX,
    DEFAULT_MIN_ROUTE_READINGS,
    DEFAULT_RECONNECT_DELAY_MS,
    DEFAULT_SCHEDULE_HOURS,
    DEFAULT_STATS_INTERVAL,
    FEED_URL,
    UNASSIGNED_ROUTE,
)
from nolatransit.exceptions import TransitConfigError

SINK_ROW = "row"
SINK_OBJECT = "object"
OBJECT_STORE_S3 = "s3"
OBJECT_STORE_LOCAL = "local"


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(name: str, value: str, kind: type[int] | type[float]) -> int | float:
    try:
        return kind(value)
    except ValueError as exc:
        raise TransitConfigError(f"{name} must be a number, got {value!r}") from exc


def parse_schedule_hours(value: str) -> tuple[int, ...]:
    """Parse a comma separated list of UTC hours (``"6,18"``)."""
    hours: set[int] = set()
    for part in value.split(","):
        text = part.strip()
        if not text:
            continue
        if not text.isdigit() or not 0 <= int(text) <= 23:
            raise TransitConfigError(f"schedule hour must be between 0 and 23, got {text!r}")
        hours.add(int(text))
    if not hours:
        raise TransitConfigError("schedule must name at least one hour")
    return tuple(sorted(hours))


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclasses.dataclass(frozen=True)
class TransitConfig:
    """Pipeline configuration.

    Parameters
    ----------
    feed_url : str
        Server-sent events endpoint emitting JSON arrays of vehicles.
    flush_size : int
        Flush as soon as this many records are buffered. ``0`` disables
        size-triggered flushes.
    flush_interval : float
        Seconds between time-triggered flushes. ``0`` disables the timer.
    reconnect_delay_ms : int
        Fixed delay before reconnecting after a feed error.
    max_buffered : int
        Upper bound on buffered records; the oldest are evicted beyond it.
        ``0`` means unbounded.
    stats_interval : float
        Seconds between ingestion stats log lines. ``0`` disables them.
    sink : str
        ``"row"`` (DuckDB / MotherDuck) or ``"object"`` (Parquet fragments).
    row_store : str
        DuckDB database path, or ``md:<database>`` for MotherDuck.
    motherduck_token : str or None
        Required when ``row_store`` points at MotherDuck.
    object_store : str
        ``"s3"`` or ``"local"``.
    local_store_dir : str
        Root directory of the local object store.
    bucket : str
        S3 bucket holding fragments.
    s3_endpoint : str or None
        Custom S3 endpoint (Cloudflare R2, MinIO).
    s3_region : str
        S3 region name.
    s3_access_key_id, s3_secret_access_key : str or None
        S3 credentials.
    fragment_prefix : str
        File-name prefix of raw fragments.
    summary_store : str or None
        DuckDB database receiving the rollup tables.
    schedule_hours : tuple of int
        UTC hours at which scheduled maintenance runs.
    run_on_start : bool
        Run maintenance once immediately when the scheduler starts.
    segments_file : str or None
        JSON file overriding the built-in route segment table.
    min_route_readings : int
        Routes with this many readings or fewer on a day are left out of the
        route performance rollup.
    excluded_routes : tuple of str
        Routes never reported in the route performance rollup.
    """

    feed_url: str = FEED_URL
    flush_size: int = 0
    flush_interval: float = DEFAULT_FLUSH_INTERVAL
    reconnect_delay_ms: int = DEFAULT_RECONNECT_DELAY_MS
    max_buffered: int = 0
    stats_interval: float = DEFAULT_STATS_INTERVAL
    sink: str = SINK_OBJECT
    row_store: str = "transit.duckdb"
    motherduck_token: str | None = None
    object_store: str = OBJECT_STORE_S3
    local_store_dir: str = "data/fragments"
    bucket: str = "nola-transit"
    s3_endpoint: str | None = None
    s3_region: str = "auto"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    fragment_prefix: str = DEFAULT_FRAGMENT_PREFIX
    summary_store: str | None = None
    schedule_hours: tuple[int, ...] = DEFAULT_SCHEDULE_HOURS
    run_on_start: bool = True
    segments_file: str | None = None
    min_route_readings: int = DEFAULT_MIN_ROUTE_READINGS
    excluded_routes: tuple[str, ...] = (UNASSIGNED_ROUTE,)

    @property
    def reconnect_delay(self) -> float:
        """Reconnect delay in seconds."""
        return self.reconnect_delay_ms / 1000.0

    @property
    def uses_motherduck(self) -> bool:
        return self.row_store.startswith("md:")

    @property
    def row_store_is_local(self) -> bool:
        """``True`` when the row sink writes a local DuckDB file.

        DuckDB locks such a file for the writing process, so other processes
        cannot read it while ingestion runs.
        """
        return self.sink == SINK_ROW and not self.uses_motherduck

    @classmethod
    def from_env(cls, **overrides: Any) -> TransitConfig:
        """Create configuration from ``TRANSIT_*`` environment variables.

        Explicit keyword arguments override environment values.

        Raises
        ------
        TransitConfigError
            When a numeric or schedule variable cannot be parsed.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "TRANSIT_FEED_URL": "feed_url",
            "TRANSIT_SINK": "sink",
            "TRANSIT_ROW_STORE": "row_store",
            "TRANSIT_MOTHERDUCK_TOKEN": "motherduck_token",
            "TRANSIT_OBJECT_STORE": "object_store",
            "TRANSIT_LOCAL_STORE_DIR": "local_store_dir",
            "TRANSIT_BUCKET": "bucket",
            "TRANSIT_S3_ENDPOINT": "s3_endpoint",
            "TRANSIT_S3_REGION": "s3_region",
            "TRANSIT_S3_ACCESS_KEY_ID": "s3_access_key_id",
            "TRANSIT_S3_SECRET_ACCESS_KEY": "s3_secret_access_key",
            "TRANSIT_FRAGMENT_PREFIX": "fragment_prefix",
            "TRANSIT_SUMMARY_STORE": "summary_store",
            "TRANSIT_SEGMENTS_FILE": "segments_file",
        }
        _ENV_INT_MAP = {
            "TRANSIT_FLUSH_SIZE": "flush_size",
            "TRANSIT_RECONNECT_DELAY_MS": "reconnect_delay_ms",
            "TRANSIT_MAX_BUFFERED": "max_buffered",
            "TRANSIT_MIN_ROUTE_READINGS": "min_route_readings",
        }
        _ENV_FLOAT_MAP = {
            "TRANSIT_FLUSH_INTERVAL": "flush_interval",
            "TRANSIT_STATS_INTERVAL": "stats_interval",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and val.strip():
                config_kwargs[field_name] = val.strip()

        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, int)

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, float)

        hours_env = env.get("TRANSIT_SCHEDULE_HOURS")
        if hours_env is not None and "schedule_hours" not in overrides:
            config_kwargs["schedule_hours"] = parse_schedule_hours(hours_env)

        excluded_env = env.get("TRANSIT_EXCLUDED_ROUTES")
        if excluded_env is not None and "excluded_routes" not in overrides:
            config_kwargs["excluded_routes"] = _split_csv(excluded_env)

        if "run_on_start" not in overrides:
            config_kwargs["run_on_start"] = _env_bool(env.get("TRANSIT_RUN_ON_START"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)

    # ------------------------------------------------------------------
    # Startup validation
    # ------------------------------------------------------------------

    def _require_sink_choice(self) -> None:
        if self.sink not in {SINK_ROW, SINK_OBJECT}:
            raise TransitConfigError(f"sink must be '{SINK_ROW}' or '{SINK_OBJECT}', got {self.sink!r}")

    def _require_row_store(self) -> None:
        if not self.row_store:
            raise TransitConfigError("TRANSIT_ROW_STORE is required for the row-store sink")
        if self.uses_motherduck and not self.motherduck_token:
            raise TransitConfigError("TRANSIT_MOTHERDUCK_TOKEN is required for a MotherDuck row store")

    def _require_object_store(self) -> None:
        if self.object_store == OBJECT_STORE_LOCAL:
            if not self.local_store_dir:
                raise TransitConfigError("TRANSIT_LOCAL_STORE_DIR is required for the local object store")
            return
        if self.object_store != OBJECT_STORE_S3:
            raise TransitConfigError(
                f"object_store must be '{OBJECT_STORE_S3}' or '{OBJECT_STORE_LOCAL}', got {self.object_store!r}"
            )
        missing = [
            name
            for name, value in (
                ("TRANSIT_BUCKET", self.bucket),
                ("TRANSIT_S3_ACCESS_KEY_ID", self.s3_access_key_id),
                ("TRANSIT_S3_SECRET_ACCESS_KEY", self.s3_secret_access_key),
            )
            if not value
        ]
        if missing:
            raise TransitConfigError(f"Missing object store credentials: {', '.join(missing)}")

    def _require_sink(self) -> None:
        self._require_sink_choice()
        if self.sink == SINK_ROW:
            self._require_row_store()
        else:
            self._require_object_store()

    def require_ingestion(self) -> None:
        """Validate everything the collector process needs.

        Raises
        ------
        TransitConfigError
            On the first missing or malformed setting.
        """
        if not self.feed_url:
            raise TransitConfigError("TRANSIT_FEED_URL is required")
        if self.flush_size < 0 or self.flush_interval < 0 or self.max_buffered < 0:
            raise TransitConfigError("flush_size, flush_interval and max_buffered must not be negative")
        if self.flush_size == 0 and self.flush_interval == 0:
            raise TransitConfigError("Either TRANSIT_FLUSH_SIZE or TRANSIT_FLUSH_INTERVAL must be set")
        if self.reconnect_delay_ms < 0:
            raise TransitConfigError("TRANSIT_RECONNECT_DELAY_MS must not be negative")
        self._require_sink()

    def require_maintenance(self, *, aggregate: bool = True, scheduled: bool = False) -> None:
        """Validate what compaction and aggregation runs need.

        A scheduled maintenance process cannot share a local row store with
        the ingest process; ``nolatransit ingest`` runs that schedule itself.
        """
        self._require_sink()
        if scheduled and self.row_store_is_local:
            raise TransitConfigError(
                "Scheduled maintenance needs a MotherDuck (md:) row store; with a local row store "
                "the ingest process runs the maintenance schedule itself"
            )
        if aggregate and not self.summary_store:
            raise TransitConfigError("TRANSIT_SUMMARY_STORE is required for aggregation")
