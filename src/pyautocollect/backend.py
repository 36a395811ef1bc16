"""Collaborator contracts consumed by the detectors and the capability set passed to them."""

from __future__ import annotations

import dataclasses
import inspect
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from pyautocollect._normalize import now_ms
from pyautocollect.events import EventBus
from pyautocollect.geo import haversine_km
from pyautocollect.models import Bin, CollectionRecord, Location, SessionUser
from pyautocollect.store import AutoCollectionStore

_logger = logging.getLogger(__name__)

DistanceFn = Callable[[float, float, float, float], float]
M = TypeVar("M", bound=BaseModel)


class FleetBackend(Protocol):
    """Structural interface of the surrounding fleet system.

    Having a protocol here makes it easy to pass test doubles while the
    production adapter (:class:`~pyautocollect.http_backend.HttpFleetBackend`)
    stays concrete.  A backend may additionally expose a synchronous
    ``calculate_distance(lat1, lng1, lat2, lng2) -> km``.
    """

    async def get_current_user(self) -> SessionUser | None:
        ...

    async def get_driver_location(self, driver_id: str) -> Location | None:
        ...

    async def get_bins(self) -> Sequence[Bin]:
        ...

    async def get_collections(self) -> Sequence[CollectionRecord]:
        ...

    async def mark_bin_collected(self, bin_id: str, meta: Mapping[str, Any]) -> Any:
        ...


class Notifier(Protocol):
    """Transient user-facing notifications (toasts)."""

    def show_alert(self, title: str, message: str, level: str = "info", duration_ms: int = 5000) -> None:
        ...


class LoggingNotifier:
    """Notifier that only writes to the log; used when no UI is attached."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or _logger

    def show_alert(self, title: str, message: str, level: str = "info", duration_ms: int = 5000) -> None:
        self._logger.info("[%s] %s: %s", level, title, message)


def coerce_model(model_cls: type[M], value: Any) -> M | None:
    """Validate a collaborator value into *model_cls*; ``None`` when malformed."""
    if value is None or isinstance(value, model_cls):
        return value
    try:
        return model_cls.model_validate(value)
    except (ValidationError, TypeError, ValueError):
        _logger.debug("Skipping malformed %s payload", model_cls.__name__, exc_info=True)
        return None


def coerce_models(model_cls: type[M], values: Iterable[Any] | None) -> list[M]:
    """Validate each item, silently dropping the malformed ones."""
    result: list[M] = []
    for value in values or ():
        item = coerce_model(model_cls, value)
        if item is not None:
            result.append(item)
    return result


def resolve_distance(backend: object) -> DistanceFn:
    """The backend's ``calculate_distance`` (km) if it has one, else haversine."""
    candidate = getattr(backend, "calculate_distance", None)
    if callable(candidate) and not inspect.iscoroutinefunction(candidate):
        return candidate  # type: ignore[no-any-return]
    return haversine_km


async def maybe_await(value: Any) -> Any:
    """Await *value* when a collaborator handed back an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


@dataclasses.dataclass
class DetectionContext:
    """Explicit capability set handed to every component at construction.

    Replaces ambient global lookups: components only ever reach the
    backend, store, bus, notifier and clock they were given.
    """

    backend: FleetBackend | None
    store: AutoCollectionStore = dataclasses.field(default_factory=AutoCollectionStore)
    bus: EventBus = dataclasses.field(default_factory=EventBus)
    notifier: Notifier = dataclasses.field(default_factory=LoggingNotifier)
    clock: Callable[[], int] = now_ms

    def distance_km(self, lat1: float, lng1: float, lat2: float, lng2: float) -> float:
        return resolve_distance(self.backend)(lat1, lng1, lat2, lng2)
