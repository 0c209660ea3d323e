"""Credential redaction for configuration log lines."""

from __future__ import annotations

import dataclasses
import re
from typing import Any

from nolatransit.config import TransitConfig

_SECRET_FIELDS: frozenset[str] = frozenset(
    {
        "motherduck_token",
        "s3_access_key_id",
        "s3_secret_access_key",
    }
)

# MotherDuck accepts the token inline: ``md:transit?motherduck_token=...``.
_INLINE_TOKEN = re.compile(r"(motherduck_token=)[^&\s]+", re.IGNORECASE)

_REDACTED = "<redacted>"


def redact_config(config: TransitConfig) -> dict[str, Any]:
    """Return *config* as a dictionary with credentials masked.

    Unset credentials stay ``None`` so a missing setting is still visible in
    the log line.
    """
    redacted: dict[str, Any] = {}
    for name, value in dataclasses.asdict(config).items():
        if name in _SECRET_FIELDS:
            redacted[name] = _REDACTED if value else value
        elif isinstance(value, str):
            redacted[name] = _INLINE_TOKEN.sub(rf"\g<1>{_REDACTED}", value)
        else:
            redacted[name] = value
    return redacted
