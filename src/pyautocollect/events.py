"""Named domain events and the publish/subscribe bus that carries them.

Detectors and subsystems never call into each other's method bodies; they
dispatch and subscribe to these events instead.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

_logger = logging.getLogger(__name__)


class DomainEvent(StrEnum):
    ROUTE_STARTED = "routeStarted"
    ROUTE_ENDED = "routeEnded"
    GPS_UPDATE = "gpsUpdate"
    AUTO_COLLECTION_REGISTERED = "autoCollectionRegistered"
    COLLECTION_RECORDED = "collectionRecorded"
    DATA_CHANGED = "dataChanged"
    DRIVER_LOGIN = "driverLogin"
    DRIVER_LOGOUT = "driverLogout"


class BusEvent(BaseModel):
    """A dispatched event as seen by listeners."""

    model_config = ConfigDict(frozen=True)

    name: str
    detail: dict[str, Any] = Field(default_factory=dict)
    dispatched_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


Listener = Callable[[BusEvent], Any]


class EventBus:
    """In-process event bus with ``dispatch``/``add_listener`` semantics.

    Listeners run synchronously in registration order.  A listener that
    returns an awaitable has it scheduled on the running loop; the task is
    held until it finishes.  A failing listener is logged and never stops
    delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._pending: set[asyncio.Future[Any]] = set()

    def add_listener(self, name: str, listener: Listener) -> Callable[[], None]:
        """Subscribe *listener* to *name*.  Returns a callable that unsubscribes it."""
        self._listeners.setdefault(str(name), []).append(listener)

        def _unsubscribe() -> None:
            self.remove_listener(name, listener)

        return _unsubscribe

    def remove_listener(self, name: str, listener: Listener) -> None:
        listeners = self._listeners.get(str(name))
        if not listeners:
            return
        self._listeners[str(name)] = [cand for cand in listeners if cand is not listener]
        if not self._listeners[str(name)]:
            self._listeners.pop(str(name), None)

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(str(name), []))

    def dispatch(self, name: str, detail: dict[str, Any] | None = None) -> BusEvent:
        """Deliver an event to every current listener of *name*."""
        event = BusEvent(name=str(name), detail=dict(detail or {}))
        for listener in list(self._listeners.get(event.name, [])):
            try:
                result = listener(event)
            except Exception:
                _logger.warning("Listener for %s failed", event.name, exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._track(event.name, result)
        return event

    def _track(self, name: str, awaitable: Any) -> None:
        try:
            future = asyncio.ensure_future(awaitable)
        except RuntimeError:
            _logger.warning("No running loop for async listener of %s", name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._pending.add(future)

        def _done(fut: asyncio.Future[Any]) -> None:
            self._pending.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                _logger.warning("Async listener for %s failed", name, exc_info=exc)

        future.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait until every scheduled async listener has finished."""
        while True:
            pending = [fut for fut in self._pending if not fut.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
