"""Session user model."""

from __future__ import annotations

from typing import Any

from pydantic import field_validator

from pyautocollect._constants import DRIVER_USER_TYPE
from pyautocollect._normalize import safe_str
from pyautocollect.models._base import AutoCollectBaseModel


class SessionUser(AutoCollectBaseModel):
    """The currently logged-in user of a subsystem."""

    id: str
    type: str | None = None
    name: str | None = None
    vehicle_id: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("user id must be non-empty")
        return text

    @property
    def is_driver(self) -> bool:
        return self.type == DRIVER_USER_TYPE
