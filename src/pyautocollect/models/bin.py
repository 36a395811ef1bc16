"""Bin (serviceable asset) model."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, field_validator

from pyautocollect._normalize import safe_str
from pyautocollect.models._base import AutoCollectBaseModel, OptionalFloat

_LABEL_MAX = 40


class Bin(AutoCollectBaseModel):
    """A stationary bin as exposed by the fleet backend.

    Parameters
    ----------
    id : str
        Bin identifier.
    lat, lng : float or None
        Coordinates; bins without both are skipped by the detectors.
    fill_level : float or None
        Sensor-reported fill percentage.
    location : str or None
        Human-readable address, used for notifications.
    """

    id: str
    lat: OptionalFloat = Field(default=None, validation_alias=AliasChoices("lat", "latitude"))
    lng: OptionalFloat = Field(default=None, validation_alias=AliasChoices("lng", "lon", "longitude"))
    fill_level: OptionalFloat = Field(default=None, validation_alias=AliasChoices("fillLevel", "fill", "fill_level"))
    location: str | None = Field(default=None, validation_alias=AliasChoices("location", "locationName", "address"))

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("bin id must be non-empty")
        return text

    @field_validator("location", mode="before")
    @classmethod
    def _coerce_location(cls, value: Any) -> str | None:
        if isinstance(value, dict):
            return safe_str(value.get("address"))
        return safe_str(value)

    @property
    def has_coordinates(self) -> bool:
        # Zero coordinates are treated as missing.
        return bool(self.lat) and bool(self.lng)

    @property
    def label(self) -> str:
        """Short location text for notifications."""
        if self.location:
            text = self.location
        elif self.lat is not None and self.lng is not None:
            text = f"{self.lat:.4f}, {self.lng:.4f}"
        else:
            text = self.id
        return text[:_LABEL_MAX]
