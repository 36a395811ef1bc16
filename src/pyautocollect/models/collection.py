"""Collection history record."""

from __future__ import annotations

from typing import Any

from pydantic import field_validator

from pyautocollect._normalize import safe_str, to_epoch_ms
from pyautocollect.models._base import AutoCollectBaseModel, Timestamp


class CollectionRecord(AutoCollectBaseModel):
    """A recorded (manual or automatic) collection of a bin by a driver."""

    driver_id: str | None = None
    bin_id: str | None = None
    timestamp: Timestamp = None
    auto_collection: bool = False

    @field_validator("driver_id", "bin_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: Any) -> str | None:
        return safe_str(value)

    @property
    def timestamp_ms(self) -> int | None:
        if self.timestamp is None:
            return None
        return to_epoch_ms(self.timestamp)
