"""pyautocollect - Automatic bin-collection detection for fleet drivers."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyautocollect")
except PackageNotFoundError:
    __version__ = "0+local"
from pyautocollect._storage import JsonFileStorage, KeyValueStorage, MemoryStorage
from pyautocollect.backend import DetectionContext, FleetBackend, LoggingNotifier, Notifier
from pyautocollect.config import DetectionConfig, RuntimeConfig
from pyautocollect.coordination import (
    CONTROL_OWNERSHIP,
    CompatibilityLayer,
    ControlRegistry,
    ControlSurface,
    SubsystemDirectory,
    SubsystemRole,
)
from pyautocollect.dwell import DriverAtBinDetector, DwellSupervisor
from pyautocollect.events import BusEvent, DomainEvent, EventBus
from pyautocollect.exceptions import (
    AutoCollectCollaboratorError,
    AutoCollectConfigError,
    AutoCollectError,
    AutoCollectStorageError,
    AutoCollectTransportError,
)
from pyautocollect.geo import haversine_km, haversine_m
from pyautocollect.http_backend import HttpFleetBackend
from pyautocollect.models import Bin, CollectionRecord, Location, PositionSample, SessionUser
from pyautocollect.proximity import ProximityDetector
from pyautocollect.runtime import AutoCollectionRuntime
from pyautocollect.store import (
    AutoCollectionStore,
    configure_default_store,
    default_store,
    get_config,
    is_in_cooldown,
    set_cooldown,
    update_config,
)

__all__ = [
    "__version__",
    "AutoCollectCollaboratorError",
    "AutoCollectConfigError",
    "AutoCollectError",
    "AutoCollectStorageError",
    "AutoCollectTransportError",
    "AutoCollectionRuntime",
    "AutoCollectionStore",
    "Bin",
    "BusEvent",
    "CONTROL_OWNERSHIP",
    "CollectionRecord",
    "CompatibilityLayer",
    "ControlRegistry",
    "ControlSurface",
    "DetectionConfig",
    "DetectionContext",
    "DomainEvent",
    "DriverAtBinDetector",
    "DwellSupervisor",
    "EventBus",
    "FleetBackend",
    "HttpFleetBackend",
    "JsonFileStorage",
    "KeyValueStorage",
    "Location",
    "LoggingNotifier",
    "MemoryStorage",
    "Notifier",
    "PositionSample",
    "ProximityDetector",
    "RuntimeConfig",
    "SessionUser",
    "SubsystemDirectory",
    "SubsystemRole",
    "configure_default_store",
    "default_store",
    "get_config",
    "haversine_km",
    "haversine_m",
    "is_in_cooldown",
    "set_cooldown",
    "update_config",
]
