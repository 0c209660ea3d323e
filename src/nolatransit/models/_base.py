"""Base model for feed and rollup models.

Every nolatransit model inherits from :class:`TransitBaseModel` which
provides:

* A frozen, ``extra="ignore"`` configuration, so unknown feed keys are
  tolerated and built records cannot be mutated in place.
* A ``model_validator(mode="before")`` that strips feed sentinel values
  (``""``, ``"--"``, NaN) so the field default is used.
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator

# Sentinel strings the feed uses for "not available".
_SENTINELS = frozenset({"", "--", "NaN", "nan", "null"})


class TransitBaseModel(BaseModel):
    """Base for nolatransit models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    @staticmethod
    def _clean_dict(values: dict[str, Any]) -> dict[str, Any]:
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_sentinels(cls, values: Any) -> Any:
        """Strip sentinel values so field defaults apply."""
        if not isinstance(values, dict):
            return values
        return TransitBaseModel._clean_dict(values)
