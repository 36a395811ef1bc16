"""Data models for pyautocollect collaborator payloads."""

from pyautocollect.models._base import AutoCollectBaseModel
from pyautocollect.models.bin import Bin
from pyautocollect.models.collection import CollectionRecord
from pyautocollect.models.location import Location, PositionSample
from pyautocollect.models.user import SessionUser

__all__ = [
    "AutoCollectBaseModel",
    "Bin",
    "CollectionRecord",
    "Location",
    "PositionSample",
    "SessionUser",
]
