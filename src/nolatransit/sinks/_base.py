"""Sink capability shared by every durable backend."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from types import TracebackType
from typing import Protocol

from nolatransit.geofence import GeofenceIndex
from nolatransit.models.telemetry import TelemetryRecord

_logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class WriteAck:
    """Acknowledgement of a durable write.

    Parameters
    ----------
    records : int
        Number of records persisted.
    location : str
        Where they went: a table name or an object key.
    """

    records: int
    location: str = ""


class DurableSink(Protocol):
    """Structural interface of a durable batch sink.

    Sinks are async context managers: the underlying connection is acquired
    on enter and released on every exit path. ``write`` raises
    :class:`~nolatransit.exceptions.TransitStorageError` on failure.
    """

    async def __aenter__(self) -> DurableSink:
        ...

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        ...

    async def write(self, batch: Sequence[TelemetryRecord]) -> WriteAck:
        ...


def prepare_batch(batch: Sequence[TelemetryRecord], geofence: GeofenceIndex) -> list[TelemetryRecord]:
    """Drop unknown-position records and classify the rest against *geofence*."""
    prepared = [geofence.enrich(record) for record in batch if not record.is_unknown_position]
    dropped = len(batch) - len(prepared)
    if dropped:
        _logger.debug("Dropped %d unknown-position records before write", dropped)
    return prepared
