"""Cross-subsystem coordination for the two driver-facing subsystems.

The *operations* subsystem owns route and operational controls; the
*proximity* subsystem owns GPS-proximity monitoring and notifications.
This layer makes them share one session user, forwards domain events
between them over the bus, and guarantees that each contested UI control
carries exactly the owning subsystem's handler.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterable, Mapping
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Protocol

from pyautocollect.config import RuntimeConfig
from pyautocollect.events import BusEvent, DomainEvent, EventBus

_logger = logging.getLogger(__name__)

ControlHandler = Callable[..., Any]


class SubsystemRole(StrEnum):
    OPERATIONS = "operations"
    PROXIMITY = "proximity"


#: Owner of each contested control.  Controls owned by the operations
#: subsystem are stripped of every other handler.
CONTROL_OWNERSHIP: Mapping[str, SubsystemRole] = MappingProxyType(
    {
        "startRouteBtn": SubsystemRole.OPERATIONS,
        "registerPickupBtn": SubsystemRole.OPERATIONS,
        "reportIssueDriverBtn": SubsystemRole.OPERATIONS,
        "updateFuelBtn": SubsystemRole.OPERATIONS,
    }
)


class ControlSurface(Protocol):
    """Toolkit-independent (de)registration of handlers on named controls."""

    def bind(self, control_id: str, handler: ControlHandler) -> None:
        ...

    def unbind_all(self, control_id: str) -> int:
        ...


class ControlRegistry:
    """In-memory :class:`ControlSurface` holding ``{control_id: [handlers]}``."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[ControlHandler]] = {}

    def bind(self, control_id: str, handler: ControlHandler) -> None:
        self._handlers.setdefault(control_id, []).append(handler)

    def unbind_all(self, control_id: str) -> int:
        return len(self._handlers.pop(control_id, []))

    def handlers(self, control_id: str) -> list[ControlHandler]:
        return list(self._handlers.get(control_id, []))

    def trigger(self, control_id: str, *args: Any) -> list[Any]:
        """Invoke every handler bound to *control_id*; failures are logged."""
        results: list[Any] = []
        for handler in self.handlers(control_id):
            try:
                results.append(handler(*args))
            except Exception:
                _logger.warning("Handler for control %s failed", control_id, exc_info=True)
        return results


class SubsystemDirectory:
    """Where subsystems announce themselves; resolves per-role readiness."""

    def __init__(self) -> None:
        self._subsystems: dict[SubsystemRole, Any] = {}
        self._ready: dict[SubsystemRole, asyncio.Event] = {}

    def _event(self, role: SubsystemRole) -> asyncio.Event:
        event = self._ready.get(role)
        if event is None:
            event = asyncio.Event()
            self._ready[role] = event
        return event

    def register(self, role: SubsystemRole | str, subsystem: Any) -> None:
        role = SubsystemRole(role)
        self._subsystems[role] = subsystem
        self._event(role).set()
        _logger.debug("Subsystem registered role=%s type=%s", role.value, type(subsystem).__name__)

    def unregister(self, role: SubsystemRole | str) -> None:
        role = SubsystemRole(role)
        self._subsystems.pop(role, None)
        self._event(role).clear()

    def get(self, role: SubsystemRole | str) -> Any | None:
        return self._subsystems.get(SubsystemRole(role))

    async def wait(self, roles: Iterable[SubsystemRole], timeout: float) -> bool:
        """Wait until every role is registered or *timeout* elapses.

        Returns True when all roles are present.
        """
        events = [self._event(role) for role in roles]
        try:
            await asyncio.wait_for(asyncio.gather(*(event.wait() for event in events)), timeout)
        except TimeoutError:
            return all(event.is_set() for event in events)
        return True


class CompatibilityLayer:
    """Keeps the operations and proximity subsystems from racing each other.

    Subsystems are duck-typed: each has a ``current_user`` attribute and may
    offer ``start_proximity_monitoring()``, ``stop_proximity_monitoring()``,
    ``update_position(position)``, ``update_quick_stats()`` and
    ``control_handlers()``.  Missing methods make forwarding a no-op.

    Usage::

        layer = CompatibilityLayer(directory, bus, controls)
        await layer.start()   # waits (bounded) for both subsystems, then coordinates
    """

    def __init__(
        self,
        directory: SubsystemDirectory,
        bus: EventBus,
        controls: ControlSurface | None = None,
        runtime_config: RuntimeConfig | None = None,
        *,
        ownership: Mapping[str, SubsystemRole] = CONTROL_OWNERSHIP,
    ) -> None:
        self._directory = directory
        self._bus = bus
        self._controls = controls
        self._runtime = runtime_config or RuntimeConfig()
        self._ownership = ownership
        self._unsubscribers: list[Callable[[], None]] = []
        self._owned_handlers: dict[str, ControlHandler] = {}
        self._started = False

    @property
    def operations(self) -> Any | None:
        return self._directory.get(SubsystemRole.OPERATIONS)

    @property
    def proximity(self) -> Any | None:
        return self._directory.get(SubsystemRole.PROXIMITY)

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def owned_handlers(self) -> dict[str, ControlHandler]:
        return dict(self._owned_handlers)

    async def start(self) -> None:
        """Wait for both subsystems (bounded), then coordinate them.

        Past the readiness deadline the layer logs a warning and continues
        with whichever subsystems are present.
        """
        if self._started:
            return
        self._started = True

        ready = await self._directory.wait(
            (SubsystemRole.OPERATIONS, SubsystemRole.PROXIMITY),
            self._runtime.ready_timeout_s,
        )
        if ready:
            _logger.info("Both driver subsystems detected")
        else:
            _logger.warning(
                "Driver subsystem(s) missing after %.1fs (operations=%s proximity=%s); continuing degraded",
                self._runtime.ready_timeout_s,
                self.operations is not None,
                self.proximity is not None,
            )

        self._subscribe()
        self.sync_sessions()
        self.enforce_control_ownership()
        _logger.info("Driver subsystems coordinated")

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._started = False

    def _subscribe(self) -> None:
        listeners: dict[DomainEvent, Callable[[BusEvent], Any]] = {
            DomainEvent.DRIVER_LOGIN: self._on_driver_login,
            DomainEvent.ROUTE_STARTED: self._on_route_started,
            DomainEvent.ROUTE_ENDED: self._on_route_ended,
            DomainEvent.GPS_UPDATE: self._on_gps_update,
            DomainEvent.AUTO_COLLECTION_REGISTERED: self._on_auto_collection,
        }
        self._unsubscribers = [self._bus.add_listener(name, listener) for name, listener in listeners.items()]

    # ------------------------------------------------------------------
    # Session synchronization
    # ------------------------------------------------------------------

    def _copy_user(self, source: SubsystemRole, target: SubsystemRole) -> bool:
        src = self._directory.get(source)
        dst = self._directory.get(target)
        if src is None or dst is None:
            return False
        user = getattr(src, "current_user", None)
        if user is None:
            return False
        if getattr(dst, "current_user", None) is not None:
            # First writer wins; an established user is never overwritten.
            return False
        try:
            dst.current_user = user
        except AttributeError:
            _logger.debug("Subsystem %s does not accept a session user", target.value, exc_info=True)
            return False
        _logger.info("Synced current user to %s subsystem", target.value)
        return True

    def sync_sessions(self) -> None:
        """Copy the session user into whichever subsystem still has none."""
        self._copy_user(SubsystemRole.OPERATIONS, SubsystemRole.PROXIMITY)
        self._copy_user(SubsystemRole.PROXIMITY, SubsystemRole.OPERATIONS)

    def _on_driver_login(self, event: BusEvent) -> None:
        try:
            source = SubsystemRole(event.detail.get("subsystem"))
        except ValueError:
            self.sync_sessions()
            return
        target = SubsystemRole.PROXIMITY if source is SubsystemRole.OPERATIONS else SubsystemRole.OPERATIONS
        self._copy_user(source, target)

    # ------------------------------------------------------------------
    # Event forwarding
    # ------------------------------------------------------------------

    def _forward(self, role: SubsystemRole, method_name: str, *args: Any) -> Any:
        target = self._directory.get(role)
        method = getattr(target, method_name, None) if target is not None else None
        if not callable(method):
            _logger.debug("Forward skipped: %s subsystem has no %s", role.value, method_name)
            return None
        try:
            result = method(*args)
        except Exception:
            _logger.warning("Forwarding %s to %s subsystem failed", method_name, role.value, exc_info=True)
            return None
        return result if inspect.isawaitable(result) else None

    def _on_route_started(self, _event: BusEvent) -> Any:
        _logger.debug("Forwarding route start to proximity subsystem")
        return self._forward(SubsystemRole.PROXIMITY, "start_proximity_monitoring")

    def _on_route_ended(self, _event: BusEvent) -> Any:
        _logger.debug("Forwarding route end to proximity subsystem")
        return self._forward(SubsystemRole.PROXIMITY, "stop_proximity_monitoring")

    def _on_gps_update(self, event: BusEvent) -> Any:
        position = event.detail.get("position")
        if position is None:
            return None
        target = self.proximity
        if target is None:
            return None
        if callable(getattr(target, "update_position", None)):
            return self._forward(SubsystemRole.PROXIMITY, "update_position", position)
        if hasattr(target, "current_position"):
            target.current_position = position
        return None

    def _on_auto_collection(self, _event: BusEvent) -> Any:
        _logger.debug("Refreshing operations stats after auto-collection")
        return self._forward(SubsystemRole.OPERATIONS, "update_quick_stats")

    # ------------------------------------------------------------------
    # Control ownership
    # ------------------------------------------------------------------

    def _operations_handlers(self) -> Mapping[str, ControlHandler]:
        provider = getattr(self.operations, "control_handlers", None)
        if not callable(provider):
            return {}
        try:
            handlers = provider()
        except Exception:
            _logger.warning("Operations subsystem failed to provide control handlers", exc_info=True)
            return {}
        return handlers if isinstance(handlers, Mapping) else {}

    def enforce_control_ownership(self) -> dict[str, ControlHandler]:
        """Leave at most one handler, the owner's, on each operations-owned control."""
        if self._controls is None:
            return {}
        handlers = self._operations_handlers()
        for control_id, owner in self._ownership.items():
            if owner is not SubsystemRole.OPERATIONS:
                continue
            removed = self._controls.unbind_all(control_id)
            handler = handlers.get(control_id)
            if handler is not None:
                self._controls.bind(control_id, handler)
                self._owned_handlers[control_id] = handler
            else:
                self._owned_handlers.pop(control_id, None)
            _logger.debug(
                "Control %s: removed %d handler(s), owner handler %s",
                control_id,
                removed,
                "bound" if handler is not None else "absent",
            )
        return dict(self._owned_handlers)
