from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from pyautocollect.backend import DetectionContext
from pyautocollect.events import BusEvent, DomainEvent, EventBus
from pyautocollect.proximity import ProximityDetector
from pyautocollect.store import AutoCollectionStore

_T0 = 1_700_000_000_000
_BIN = {"id": "b1", "lat": 25.2854, "lng": 51.5310}
_AT_BIN = {"lat": 25.28545, "lng": 51.5310}  # ~5.6 m away
_AWAY = {"lat": 25.2899, "lng": 51.5310}


class _Clock:
    def __init__(self, now: int = _T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class _FakeBackend:
    def __init__(self) -> None:
        self.bins: list[dict[str, Any]] = [dict(_BIN, fillLevel=85)]
        self.marked: list[tuple[str, dict[str, Any]]] = []

    def set_fill(self, fill: float) -> None:
        self.bins = [dict(_BIN, fillLevel=fill)]

    async def get_current_user(self) -> Any:
        return None

    async def get_driver_location(self, driver_id: str) -> Any:
        return None

    async def get_bins(self) -> list[dict[str, Any]]:
        return self.bins

    async def get_collections(self) -> list[Any]:
        return []

    async def mark_bin_collected(self, bin_id: str, meta: Mapping[str, Any]) -> None:
        self.marked.append((bin_id, dict(meta)))


class _Notifier:
    def __init__(self) -> None:
        self.alerts: list[tuple[str, str]] = []

    def show_alert(self, title: str, message: str, level: str = "info", duration_ms: int = 5000) -> None:
        self.alerts.append((title, message))


def _detector(backend: _FakeBackend, clock: _Clock) -> ProximityDetector:
    ctx = DetectionContext(
        backend=backend,
        store=AutoCollectionStore(clock=clock),
        bus=EventBus(),
        notifier=_Notifier(),
        clock=clock,
    )
    detector = ProximityDetector(ctx)
    detector.update_position(_AT_BIN)
    return detector


@pytest.mark.asyncio
async def test_fill_drop_after_dwell_is_recorded() -> None:
    clock = _Clock()
    backend = _FakeBackend()
    detector = _detector(backend, clock)
    events: list[BusEvent] = []
    detector._ctx.bus.add_listener(DomainEvent.AUTO_COLLECTION_REGISTERED, events.append)

    assert await detector.check_proximity() is False
    assert detector.nearby_bins == ["b1"]

    clock.now += 13_000
    backend.set_fill(0)
    assert await detector.check_proximity() is True

    assert backend.marked == [("b1", {"isAutoCollection": True})]
    assert detector.nearby_bins == []
    assert detector._ctx.store.is_in_cooldown("b1") is True
    assert events[0].detail["source"] == "proximity"


@pytest.mark.asyncio
async def test_fill_drop_before_minimum_dwell_is_ignored() -> None:
    clock = _Clock()
    backend = _FakeBackend()
    detector = _detector(backend, clock)
    await detector.check_proximity()

    clock.now += 5_000
    backend.set_fill(0)
    assert await detector.check_proximity() is False

    clock.now += 8_000
    assert await detector.check_proximity() is False
    assert backend.marked == []


@pytest.mark.asyncio
async def test_leaving_the_radius_forgets_the_bin() -> None:
    clock = _Clock()
    backend = _FakeBackend()
    detector = _detector(backend, clock)
    await detector.check_proximity()

    detector.update_position(_AWAY)
    await detector.check_proximity()
    assert detector.nearby_bins == []

    detector.update_position(_AT_BIN)
    clock.now += 13_000
    backend.set_fill(0)
    assert await detector.check_proximity() is False


@pytest.mark.asyncio
async def test_bin_in_cooldown_is_not_recorded_twice() -> None:
    clock = _Clock()
    backend = _FakeBackend()
    detector = _detector(backend, clock)
    detector._ctx.store.set_cooldown("b1")
    await detector.check_proximity()

    clock.now += 13_000
    backend.set_fill(0)

    assert await detector.check_proximity() is False
    assert backend.marked == []


@pytest.mark.asyncio
async def test_update_position_ignores_unusable_locations() -> None:
    detector = _detector(_FakeBackend(), _Clock())

    detector.update_position({"lat": "--", "lng": 51.5})
    detector.update_position(None)

    assert detector.current_position is not None
    assert detector.current_position.lat == 25.28545


@pytest.mark.asyncio
async def test_login_announces_and_starts_monitoring() -> None:
    detector = _detector(_FakeBackend(), _Clock())
    logins: list[BusEvent] = []
    bus = detector._ctx.bus
    bus.add_listener(DomainEvent.DRIVER_LOGIN, logins.append)

    detector.on_user_login({"id": "d1", "type": "driver"})

    assert detector.current_user is not None
    assert detector.is_monitoring is True
    assert logins[0].detail == {"subsystem": "proximity", "userId": "d1"}

    detector.on_user_logout()
    assert detector.current_user is None
    assert detector.is_monitoring is False
