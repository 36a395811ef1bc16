"""Base model for collaborator payloads.

Every model inherits from :class:`AutoCollectBaseModel` which provides:

* ``alias_generator=to_camel`` so camelCase payload keys map
  automatically to snake_case fields.
* A ``model_validator(mode="before")`` that drops placeholder values
  (``""``, ``"--"``, NaN) so the field default is used.
* A ``raw`` dict that captures the original payload.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from pyautocollect._normalize import parse_timestamp, safe_float

_SENTINELS = frozenset({"", "--", "NaN", "nan", "null"})

OptionalFloat = Annotated[float | None, BeforeValidator(safe_float)]
"""Float that resolves unparseable input to ``None`` instead of failing."""

Timestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]
"""ISO string or epoch seconds/ms coerced to an aware UTC datetime."""


class AutoCollectBaseModel(BaseModel):
    """Base for every payload the core reads from its collaborators."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)
    """Original payload dict."""

    @model_validator(mode="before")
    @classmethod
    def _clean_values(cls, values: Any) -> Any:
        """Drop placeholder values and stash the raw payload."""
        if isinstance(values, BaseModel):
            values = values.model_dump(by_alias=True)
        if not isinstance(values, dict):
            return values
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        if "raw" not in values:
            cleaned["raw"] = dict(values)
        return cleaned
