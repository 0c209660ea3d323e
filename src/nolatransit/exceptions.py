"""Custom exception hierarchy for nolatransit."""

from __future__ import annotations


class TransitError(Exception):
    """Base exception for all nolatransit errors."""


class TransitConfigError(TransitError):
    """Invalid or missing configuration."""


class TransitTransportError(TransitError):
    """Feed-level failure (network, non-200, stream closed)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        url: str = "",
    ) -> None:
        self.status_code = status_code
        self.url = url
        super().__init__(message)


class TransitParseError(TransitError):
    """A feed message or record could not be parsed."""


class TransitStorageError(TransitError):
    """Durable store failure (insert, upload, download, delete)."""

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class PartialFragmentError(TransitStorageError):
    """A single fragment could not be downloaded or decoded.

    Raised per fragment during compaction and aggregation. Callers skip the
    fragment and continue with the rest of the date.
    """


class TransitAggregationError(TransitError):
    """A rollup phase failed.

    Phases that completed before ``phase`` remain committed.
    """

    def __init__(self, message: str, *, phase: str = "") -> None:
        self.phase = phase
        super().__init__(message)
