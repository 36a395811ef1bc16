"""Process wiring: store, bus, detectors and the coordination layer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from pyautocollect._normalize import now_ms
from pyautocollect._storage import JsonFileStorage
from pyautocollect.backend import DetectionContext, FleetBackend, LoggingNotifier, Notifier
from pyautocollect.config import RuntimeConfig
from pyautocollect.coordination import (
    CompatibilityLayer,
    ControlSurface,
    SubsystemDirectory,
    SubsystemRole,
)
from pyautocollect.dwell import DriverAtBinDetector, DwellSupervisor
from pyautocollect.events import EventBus
from pyautocollect.http_backend import HttpFleetBackend
from pyautocollect.proximity import ProximityDetector
from pyautocollect.store import AutoCollectionStore, configure_default_store

_logger = logging.getLogger(__name__)


class AutoCollectionRuntime:
    """Runs the dwell supervisor and the compatibility layer for one process.

    Usage::

        async with AutoCollectionRuntime.from_config(RuntimeConfig.from_env()) as runtime:
            runtime.register_subsystem(SubsystemRole.OPERATIONS, operations)
            ...

    Coordination starts in the background on enter because it may wait up
    to ``ready_timeout_s`` for the subsystems; :meth:`coordinated` awaits it.
    """

    def __init__(
        self,
        context: DetectionContext,
        runtime_config: RuntimeConfig | None = None,
        directory: SubsystemDirectory | None = None,
        controls: ControlSurface | None = None,
    ) -> None:
        self._ctx = context
        self._runtime = runtime_config or RuntimeConfig()
        self._directory = directory or SubsystemDirectory()
        self._detector = DriverAtBinDetector(context, self._runtime)
        self._supervisor = DwellSupervisor(context, self._detector, self._runtime)
        self._layer = CompatibilityLayer(self._directory, context.bus, controls, self._runtime)
        self._layer_task: asyncio.Task[None] | None = None
        self._owned_backend: HttpFleetBackend | None = None

    @classmethod
    def from_config(
        cls,
        runtime_config: RuntimeConfig | None = None,
        *,
        backend: FleetBackend | None = None,
        notifier: Notifier | None = None,
        controls: ControlSurface | None = None,
        clock: Callable[[], int] = now_ms,
        with_proximity: bool = False,
    ) -> AutoCollectionRuntime:
        """Build a runtime and its context from *runtime_config*.

        The store persists to ``storage_path`` when set and becomes the
        process-wide default store.  Without an explicit *backend*, an
        :class:`HttpFleetBackend` for ``backend_url`` is created and owned by
        the runtime.  With *with_proximity*, a :class:`ProximityDetector` is
        registered as the proximity subsystem.
        """
        runtime_config = runtime_config or RuntimeConfig()
        storage = JsonFileStorage(runtime_config.storage_path) if runtime_config.storage_path else None
        store = configure_default_store(AutoCollectionStore(storage, clock=clock))
        bus = EventBus()

        owned_backend: HttpFleetBackend | None = None
        if backend is None and runtime_config.backend_url:
            owned_backend = HttpFleetBackend(runtime_config.backend_url, bus=bus)
            backend = owned_backend
        if backend is None:
            _logger.warning("No fleet backend configured; detectors will stay idle")

        context = DetectionContext(
            backend=backend,
            store=store,
            bus=bus,
            notifier=notifier or LoggingNotifier(),
            clock=clock,
        )
        runtime = cls(context, runtime_config, controls=controls)
        runtime._owned_backend = owned_backend
        if with_proximity:
            runtime.register_subsystem(
                SubsystemRole.PROXIMITY,
                ProximityDetector(context, notice_ms=runtime_config.auto_record_notice_ms),
            )
        return runtime

    @property
    def context(self) -> DetectionContext:
        return self._ctx

    @property
    def directory(self) -> SubsystemDirectory:
        return self._directory

    @property
    def detector(self) -> DriverAtBinDetector:
        return self._detector

    @property
    def supervisor(self) -> DwellSupervisor:
        return self._supervisor

    @property
    def compatibility(self) -> CompatibilityLayer:
        return self._layer

    def register_subsystem(self, role: SubsystemRole | str, subsystem: Any) -> None:
        self._directory.register(role, subsystem)

    async def start(self) -> None:
        if self._owned_backend is not None:
            await self._owned_backend.__aenter__()
        self._supervisor.start()
        if self._layer_task is None:
            self._layer_task = asyncio.get_running_loop().create_task(
                self._layer.start(), name="autocollect-coordination"
            )
        _logger.info("Auto-collection runtime started")

    async def coordinated(self) -> None:
        """Wait until the compatibility layer has finished starting."""
        if self._layer_task is not None:
            await asyncio.shield(self._layer_task)

    async def stop(self) -> None:
        """Stop timers and coordination.  The runtime may be started again."""
        task = self._layer_task
        self._layer_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._layer.stop()
        self._supervisor.stop()
        if self._owned_backend is not None:
            await self._owned_backend.close()
        _logger.info("Auto-collection runtime stopped")

    async def __aenter__(self) -> AutoCollectionRuntime:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()
