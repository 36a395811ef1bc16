"""Geofence-dwell detector ("driver at bin").

While a driver is logged in, the detector samples the driver's location on
a fixed interval into a bounded sliding window.  Once the window is full,
a bin is auto-recorded when *every* sample lies within ``near_bin_meters``
of it.  A single far sample disqualifies the bin, so a drive-by without a
timed stop never counts.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Sequence

from pyautocollect._constants import AUTO_COLLECTION_META
from pyautocollect._timer import RepeatingTimer
from pyautocollect.backend import DetectionContext, coerce_model, coerce_models, maybe_await
from pyautocollect.config import DetectionConfig, RuntimeConfig
from pyautocollect.events import BusEvent, DomainEvent
from pyautocollect.models import Bin, CollectionRecord, Location, PositionSample, SessionUser

_logger = logging.getLogger(__name__)

_DRIVER_LOCATIONS_KEY = "driverLocations"


class DriverAtBinDetector:
    """Sliding-window dwell detector for the currently authenticated driver.

    Usage::

        detector = DriverAtBinDetector(context)
        detector.start()      # immediate check, then every checkIntervalDriverAtBinMs
        ...
        detector.stop()       # disarm and clear the window
    """

    def __init__(self, context: DetectionContext, runtime_config: RuntimeConfig | None = None) -> None:
        self._ctx = context
        self._runtime = runtime_config or RuntimeConfig()
        self._window: deque[PositionSample] = deque()
        self._agent_id: str | None = None
        self._timer: RepeatingTimer | None = None
        self._check_lock = asyncio.Lock()
        self._unsubscribers: list[Callable[[], None]] = [
            context.bus.add_listener(DomainEvent.COLLECTION_RECORDED, self._on_collection_recorded),
            context.bus.add_listener(DomainEvent.DATA_CHANGED, self._on_data_changed),
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._timer is not None and self._timer.is_running

    @property
    def window(self) -> list[PositionSample]:
        """Copy of the current position window, oldest first."""
        return list(self._window)

    def start(self) -> None:
        """Arm the repeating check.  No-op while already running."""
        if self.is_running:
            return
        interval_s = self._ctx.store.get_config().check_interval_driver_at_bin_ms / 1000.0
        self._timer = RepeatingTimer(interval_s, self.check, name="driver-at-bin", immediate=True)
        self._timer.start()
        _logger.info("Driver-at-bin detection started interval=%.1fs", interval_s)

    def stop(self) -> None:
        """Disarm the check and clear the window.  No-op when not running."""
        timer = self._timer
        self._timer = None
        if timer is not None and timer.stop():
            _logger.info("Driver-at-bin detection stopped")
        self.reset_window()

    def close(self) -> None:
        """Stop and drop the bus subscriptions."""
        self.stop()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def reset_window(self) -> None:
        self._window.clear()

    # ------------------------------------------------------------------
    # Bus listeners
    # ------------------------------------------------------------------

    def _on_collection_recorded(self, _event: BusEvent) -> None:
        self.reset_window()

    def _on_data_changed(self, event: BusEvent) -> object:
        if event.detail.get("key") != _DRIVER_LOCATIONS_KEY:
            return None
        return self._delayed_check()

    async def _delayed_check(self) -> None:
        await asyncio.sleep(self._runtime.location_refresh_delay_s)
        await self.check()

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def check(self) -> bool:
        """Run one evaluation now.  Returns True when a bin was auto-recorded.

        Never raises: a failing collaborator is logged and the tick is
        treated as "no match".
        """
        try:
            async with self._check_lock:
                return await self._check()
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.warning("Driver-at-bin check failed", exc_info=True)
            return False

    async def _check(self) -> bool:
        backend = self._ctx.backend
        if backend is None:
            _logger.warning("No fleet backend available; driver-at-bin check skipped")
            return False

        user = coerce_model(SessionUser, await backend.get_current_user())
        if user is None or not user.is_driver:
            return False
        if user.id != self._agent_id:
            # The window belongs to one agent only.
            self._window.clear()
            self._agent_id = user.id

        location = coerce_model(Location, await backend.get_driver_location(user.id))
        if location is None or location.lat is None or location.lng is None:
            return False

        config = self._ctx.store.get_config()
        now = self._ctx.clock()
        self._push(PositionSample(lat=location.lat, lng=location.lng, timestamp=now), config.position_history_size)
        if len(self._window) < config.position_history_size:
            _logger.debug(
                "Driver-at-bin window %d/%d driver=%s",
                len(self._window),
                config.position_history_size,
                user.id,
            )
            return False
        samples = list(self._window)

        bins = coerce_models(Bin, await backend.get_bins())
        collections: list[CollectionRecord] | None = None
        for bin_ in bins:
            if not bin_.has_coordinates:
                continue
            if collections is None:
                collections = coerce_models(CollectionRecord, await backend.get_collections())
            if self._collected_recently(user.id, bin_.id, collections, now):
                continue
            if self._ctx.store.is_in_cooldown(bin_.id):
                continue
            if not self._dwelled_at(bin_, samples, config):
                continue
            return await self._auto_record(bin_, user)
        return False

    def _push(self, sample: PositionSample, capacity: int) -> None:
        self._window.append(sample)
        while len(self._window) > capacity:
            self._window.popleft()

    def _collected_recently(
        self,
        driver_id: str,
        bin_id: str,
        collections: Sequence[CollectionRecord],
        now_ms: int,
    ) -> bool:
        cutoff = now_ms - int(self._runtime.recent_collection_lookback_s * 1000)
        for record in collections:
            if record.driver_id != driver_id or record.bin_id != bin_id:
                continue
            ts = record.timestamp_ms
            if ts is not None and ts > cutoff:
                return True
        return False

    def _dwelled_at(self, bin_: Bin, samples: Sequence[PositionSample], config: DetectionConfig) -> bool:
        assert bin_.lat is not None and bin_.lng is not None  # noqa: S101
        if len(samples) < config.position_history_size:
            return False
        radius_m = config.near_bin_meters
        for sample in samples:
            distance_m = self._ctx.distance_km(sample.lat, sample.lng, bin_.lat, bin_.lng) * 1000.0
            if distance_m > radius_m:
                return False
        return True

    async def _auto_record(self, bin_: Bin, user: SessionUser) -> bool:
        # Cooldown precedes the side effect; a failed record is not retried.
        self._ctx.store.set_cooldown(bin_.id)
        self.reset_window()
        _logger.info("Auto-recording collection bin=%s driver=%s", bin_.id, user.id)

        backend = self._ctx.backend
        assert backend is not None  # noqa: S101
        try:
            await maybe_await(backend.mark_bin_collected(bin_.id, dict(AUTO_COLLECTION_META)))
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.warning("Auto-record failed bin=%s driver=%s", bin_.id, user.id, exc_info=True)
            return False

        try:
            self._ctx.notifier.show_alert(
                "Collection auto-recorded",
                f"Collection at {bin_.label} was automatically registered for you.",
                "success",
                self._runtime.auto_record_notice_ms,
            )
        except Exception:
            _logger.debug("Auto-record notification failed", exc_info=True)

        self._ctx.bus.dispatch(
            DomainEvent.AUTO_COLLECTION_REGISTERED,
            {"binId": bin_.id, "driverId": user.id, "source": "dwell"},
        )
        return True


class DwellSupervisor:
    """Starts the detector while a driver is logged in and stops it otherwise.

    Ticks once ``startup_delay_s`` after :meth:`start`, then every
    ``supervisor_interval_s``, and on every login/logout event.
    """

    def __init__(
        self,
        context: DetectionContext,
        detector: DriverAtBinDetector,
        runtime_config: RuntimeConfig | None = None,
    ) -> None:
        self._ctx = context
        self._detector = detector
        runtime = runtime_config or RuntimeConfig()
        self._timer = RepeatingTimer(
            runtime.supervisor_interval_s,
            self.tick,
            name="driver-at-bin-supervisor",
            immediate=True,
            initial_delay_s=runtime.startup_delay_s,
        )
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def detector(self) -> DriverAtBinDetector:
        return self._detector

    @property
    def is_running(self) -> bool:
        return self._timer.is_running

    def start(self) -> None:
        if not self._timer.start():
            return
        bus = self._ctx.bus
        self._unsubscribers = [
            bus.add_listener(DomainEvent.DRIVER_LOGIN, self._on_session_change),
            bus.add_listener(DomainEvent.DRIVER_LOGOUT, self._on_session_change),
        ]

    def stop(self) -> None:
        self._timer.stop()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._detector.stop()

    def _on_session_change(self, _event: BusEvent) -> object:
        return self.tick()

    async def tick(self) -> bool:
        """Re-evaluate the session.  Returns True when the detector should run."""
        backend = self._ctx.backend
        if backend is None:
            _logger.warning("No fleet backend available; driver-at-bin detection suspended")
            self._detector.stop()
            return False
        try:
            user = coerce_model(SessionUser, await backend.get_current_user())
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.warning("Session lookup failed; keeping detector state", exc_info=True)
            return self._detector.is_running

        if user is not None and user.is_driver:
            self._detector.start()
            return True
        self._detector.stop()
        return False
