"""Agent location models."""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from pyautocollect.models._base import AutoCollectBaseModel, OptionalFloat, Timestamp


class Location(AutoCollectBaseModel):
    """Latest reported position of an agent.

    Coordinates are ``None`` when absent or unparseable; such a location
    is treated as unavailable by the detectors.
    """

    lat: OptionalFloat = Field(default=None, validation_alias=AliasChoices("lat", "latitude"))
    lng: OptionalFloat = Field(default=None, validation_alias=AliasChoices("lng", "lon", "longitude"))
    accuracy: OptionalFloat = None
    timestamp: Timestamp = Field(
        default=None,
        validation_alias=AliasChoices("timestamp", "lastUpdate", "updatedAt", "time"),
    )

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


class PositionSample(BaseModel):
    """One entry of the dwell detector's sliding window."""

    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float
    timestamp: int
    """Epoch milliseconds when the sample was taken."""
