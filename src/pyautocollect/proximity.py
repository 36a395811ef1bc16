"""Proximity/state-change detector.

Independently of the dwell detector, this subsystem watches for a bin's
sensor-reported fill level dropping while the driver has been standing
near it for a minimum time.  It shares thresholds and cooldowns with the
dwell detector through the same :class:`~pyautocollect.store.AutoCollectionStore`.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any

from pyautocollect._constants import AUTO_COLLECTION_META
from pyautocollect._timer import RepeatingTimer
from pyautocollect.backend import DetectionContext, coerce_model, coerce_models, maybe_await
from pyautocollect.config import DetectionConfig
from pyautocollect.coordination import SubsystemRole
from pyautocollect.events import DomainEvent
from pyautocollect.models import Bin, Location, SessionUser

_logger = logging.getLogger(__name__)


@dataclasses.dataclass
class _NearbyBin:
    entered_at: int
    previous_fill: float


class ProximityDetector:
    """GPS-proximity subsystem with fill-drop based auto-collection.

    Exposes the attributes the coordination layer synchronizes
    (``current_user``, ``current_position``) and the methods it forwards
    route events to (``start_proximity_monitoring``,
    ``stop_proximity_monitoring``, ``update_position``).
    """

    role = SubsystemRole.PROXIMITY

    def __init__(self, context: DetectionContext, *, notice_ms: int = 5000) -> None:
        self._ctx = context
        self._notice_ms = notice_ms
        self._current_user: SessionUser | None = None
        self.current_position: Location | None = None
        self.auto_collection_enabled = True
        self._nearby: dict[str, _NearbyBin] = {}
        self._timer: RepeatingTimer | None = None

    @property
    def current_user(self) -> SessionUser | None:
        return self._current_user

    @current_user.setter
    def current_user(self, value: SessionUser | dict[str, Any] | None) -> None:
        # Other subsystems may hand over a plain mapping.
        self._current_user = coerce_model(SessionUser, value)

    @property
    def is_monitoring(self) -> bool:
        return self._timer is not None and self._timer.is_running

    @property
    def nearby_bins(self) -> list[str]:
        return list(self._nearby)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def on_user_login(self, user: SessionUser | dict[str, Any]) -> None:
        self.current_user = user
        current = self._current_user
        if current is None:
            return
        _logger.info("Proximity subsystem login user=%s", current.id)
        self._ctx.bus.dispatch(
            DomainEvent.DRIVER_LOGIN,
            {"subsystem": self.role.value, "userId": current.id},
        )
        self.start_proximity_monitoring()

    def on_user_logout(self) -> None:
        self.current_user = None
        self.stop_proximity_monitoring()
        self._nearby.clear()
        self._ctx.bus.dispatch(DomainEvent.DRIVER_LOGOUT, {"subsystem": self.role.value})

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def start_proximity_monitoring(self) -> None:
        if self.is_monitoring:
            return
        interval_s = self._ctx.store.get_config().proximity_check_interval_ms / 1000.0
        self._timer = RepeatingTimer(interval_s, self._tick, name="proximity-monitor", immediate=False)
        self._timer.start()
        _logger.info("Proximity monitoring started interval=%.1fs", interval_s)

    def stop_proximity_monitoring(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None and timer.stop():
            _logger.info("Proximity monitoring stopped")

    def update_position(self, position: Location | dict[str, Any] | None) -> None:
        location = coerce_model(Location, position)
        if location is not None and location.has_coordinates:
            self.current_position = location

    async def _tick(self) -> None:
        if self.auto_collection_enabled and self.current_user is not None:
            await self.check_proximity()

    async def check_proximity(self) -> bool:
        """Evaluate every bin once.  Returns True when a bin was auto-recorded."""
        try:
            return await self._check_proximity()
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.warning("Proximity check failed", exc_info=True)
            return False

    async def _check_proximity(self) -> bool:
        position = self.current_position
        if position is None or position.lat is None or position.lng is None:
            return False
        backend = self._ctx.backend
        if backend is None:
            _logger.warning("No fleet backend available; proximity check skipped")
            return False

        config = self._ctx.store.get_config()
        now = self._ctx.clock()
        recorded = False
        for bin_ in coerce_models(Bin, await backend.get_bins()):
            if not bin_.has_coordinates:
                continue
            assert bin_.lat is not None and bin_.lng is not None  # noqa: S101
            distance_m = self._ctx.distance_km(position.lat, position.lng, bin_.lat, bin_.lng) * 1000.0
            if distance_m > config.proximity_meters:
                if self._nearby.pop(bin_.id, None) is not None:
                    _logger.debug("Driver left proximity of bin=%s", bin_.id)
                continue

            tracked = self._nearby.get(bin_.id)
            if tracked is None:
                tracked = _NearbyBin(entered_at=now, previous_fill=bin_.fill_level or 0.0)
                self._nearby[bin_.id] = tracked
                _logger.debug("Driver entered proximity of bin=%s distance=%.1fm", bin_.id, distance_m)

            if await self._check_trigger(bin_, tracked, config, now, distance_m):
                recorded = True
        return recorded

    async def _check_trigger(
        self,
        bin_: Bin,
        tracked: _NearbyBin,
        config: DetectionConfig,
        now: int,
        distance_m: float,
    ) -> bool:
        dwell_ms = now - tracked.entered_at
        if dwell_ms < config.min_dwell_near_bin_ms:
            if bin_.fill_level is not None:
                tracked.previous_fill = bin_.fill_level
            return False

        current_fill = bin_.fill_level if bin_.fill_level is not None else 0.0
        dropped = tracked.previous_fill >= config.fill_was_above_percent and current_fill <= config.min_fill_drop_percent
        tracked.previous_fill = current_fill
        if not dropped:
            return False
        if self._ctx.store.is_in_cooldown(bin_.id):
            return False

        _logger.info("Fill drop near driver bin=%s dwell=%.0fs", bin_.id, dwell_ms / 1000.0)
        return await self._auto_record(bin_, distance_m)

    async def _auto_record(self, bin_: Bin, distance_m: float) -> bool:
        self._ctx.store.set_cooldown(bin_.id)
        backend = self._ctx.backend
        assert backend is not None  # noqa: S101
        try:
            await maybe_await(backend.mark_bin_collected(bin_.id, dict(AUTO_COLLECTION_META)))
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.warning("Proximity auto-record failed bin=%s", bin_.id, exc_info=True)
            return False

        self._nearby.pop(bin_.id, None)
        try:
            self._ctx.notifier.show_alert(
                "Auto-Collection Registered",
                f"Bin {bin_.id} automatically registered! ({distance_m:.0f}m)",
                "success",
                self._notice_ms,
            )
        except Exception:
            _logger.debug("Proximity notification failed", exc_info=True)

        driver_id = self._current_user.id if self._current_user is not None else None
        self._ctx.bus.dispatch(
            DomainEvent.AUTO_COLLECTION_REGISTERED,
            {"binId": bin_.id, "driverId": driver_id, "source": "proximity"},
        )
        return True
