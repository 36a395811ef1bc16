from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest

from pyautocollect.backend import DetectionContext
from pyautocollect.config import RuntimeConfig
from pyautocollect.dwell import DriverAtBinDetector, DwellSupervisor
from pyautocollect.events import BusEvent, DomainEvent, EventBus
from pyautocollect.store import AutoCollectionStore

_T0 = 1_700_000_000_000
_BIN = {"id": "b1", "lat": 25.2854, "lng": 51.5310, "location": "Corniche St"}
_NEAR = {"lat": 25.2855, "lng": 51.5310}  # ~11 m from the bin
_FAR = {"lat": 25.2899, "lng": 51.5310}  # ~500 m from the bin
_DRIVER = {"id": "d1", "type": "driver", "name": "Ali"}


class _Clock:
    def __init__(self, now: int = _T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class _FakeBackend:
    def __init__(self) -> None:
        self.user: Any = dict(_DRIVER)
        self.location: Any = dict(_NEAR)
        self.bins: list[Any] = [dict(_BIN)]
        self.collections: list[Any] = []
        self.marked: list[tuple[str, dict[str, Any]]] = []
        self.fail_mark = False
        self.fail_user = False

    async def get_current_user(self) -> Any:
        if self.fail_user:
            raise RuntimeError("session service down")
        return self.user

    async def get_driver_location(self, driver_id: str) -> Any:
        return self.location

    async def get_bins(self) -> list[Any]:
        return self.bins

    async def get_collections(self) -> list[Any]:
        return self.collections

    async def mark_bin_collected(self, bin_id: str, meta: Mapping[str, Any]) -> None:
        self.marked.append((bin_id, dict(meta)))
        if self.fail_mark:
            raise RuntimeError("backend rejected collection")


class _Notifier:
    def __init__(self) -> None:
        self.alerts: list[tuple[str, str, str, int]] = []

    def show_alert(self, title: str, message: str, level: str = "info", duration_ms: int = 5000) -> None:
        self.alerts.append((title, message, level, duration_ms))


def _context(backend: Any, clock: _Clock | None = None) -> DetectionContext:
    clock = clock or _Clock()
    return DetectionContext(
        backend=backend,
        store=AutoCollectionStore(clock=clock),
        bus=EventBus(),
        notifier=_Notifier(),
        clock=clock,
    )


def _registered(ctx: DetectionContext) -> list[BusEvent]:
    events: list[BusEvent] = []
    ctx.bus.add_listener(DomainEvent.AUTO_COLLECTION_REGISTERED, events.append)
    return events


@pytest.mark.asyncio
async def test_three_near_samples_auto_record() -> None:
    backend = _FakeBackend()
    ctx = _context(backend)
    events = _registered(ctx)
    detector = DriverAtBinDetector(ctx)

    assert await detector.check() is False
    assert await detector.check() is False
    assert await detector.check() is True

    assert backend.marked == [("b1", {"isAutoCollection": True})]
    assert ctx.store.is_in_cooldown("b1") is True
    assert detector.window == []
    assert ctx.notifier.alerts[0][0] == "Collection auto-recorded"
    assert "Corniche St" in ctx.notifier.alerts[0][1]
    assert [event.detail for event in events] == [{"binId": "b1", "driverId": "d1", "source": "dwell"}]


@pytest.mark.asyncio
async def test_single_far_sample_disqualifies_the_window() -> None:
    backend = _FakeBackend()
    detector = DriverAtBinDetector(_context(backend))

    for location in (_NEAR, _FAR, _NEAR, _NEAR):
        backend.location = dict(location)
        assert await detector.check() is False
    assert backend.marked == []

    backend.location = dict(_NEAR)
    assert await detector.check() is True
    assert [bin_id for bin_id, _ in backend.marked] == ["b1"]


@pytest.mark.asyncio
async def test_drive_by_is_never_recorded() -> None:
    backend = _FakeBackend()
    detector = DriverAtBinDetector(_context(backend))

    for location in (_FAR, _NEAR, _FAR, _NEAR, _FAR):
        backend.location = dict(location)
        await detector.check()

    assert backend.marked == []


@pytest.mark.asyncio
async def test_bin_in_cooldown_is_skipped_without_refreshing_cooldown() -> None:
    clock = _Clock()
    backend = _FakeBackend()
    ctx = _context(backend, clock)
    ctx.store.set_cooldown("b1")
    clock.now += 60_000
    detector = DriverAtBinDetector(ctx)

    for _ in range(4):
        assert await detector.check() is False

    assert backend.marked == []
    assert ctx.store.cooldown_started_at("b1") == _T0


@pytest.mark.asyncio
async def test_cooldown_expiry_allows_a_new_record() -> None:
    clock = _Clock()
    backend = _FakeBackend()
    ctx = _context(backend, clock)
    ctx.store.set_cooldown("b1")
    clock.now += 7_200_000
    detector = DriverAtBinDetector(ctx)

    results = [await detector.check() for _ in range(3)]

    assert results == [False, False, True]


@pytest.mark.asyncio
async def test_recent_manual_collection_blocks_auto_record() -> None:
    backend = _FakeBackend()
    backend.collections = [{"driverId": "d1", "binId": "b1", "timestamp": _T0 - 3_600_000}]
    detector = DriverAtBinDetector(_context(backend))

    for _ in range(4):
        assert await detector.check() is False
    assert backend.marked == []


@pytest.mark.asyncio
async def test_old_or_foreign_collections_do_not_block() -> None:
    backend = _FakeBackend()
    backend.collections = [
        {"driverId": "d1", "binId": "b1", "timestamp": "2023-11-13T21:00:00Z"},
        {"driverId": "d2", "binId": "b1", "timestamp": _T0 - 60_000},
    ]
    detector = DriverAtBinDetector(_context(backend))

    results = [await detector.check() for _ in range(3)]

    assert results[-1] is True


@pytest.mark.asyncio
async def test_failed_record_keeps_cooldown_and_stays_quiet() -> None:
    backend = _FakeBackend()
    backend.fail_mark = True
    ctx = _context(backend)
    events = _registered(ctx)
    detector = DriverAtBinDetector(ctx)

    results = [await detector.check() for _ in range(3)]

    assert results == [False, False, False]
    assert len(backend.marked) == 1
    assert ctx.store.is_in_cooldown("b1") is True
    assert detector.window == []
    assert ctx.notifier.alerts == []
    assert events == []


@pytest.mark.asyncio
async def test_non_driver_is_not_sampled() -> None:
    backend = _FakeBackend()
    backend.user = {"id": "a1", "type": "admin"}
    detector = DriverAtBinDetector(_context(backend))

    await detector.check()

    assert detector.window == []


@pytest.mark.asyncio
async def test_missing_location_adds_no_sample() -> None:
    backend = _FakeBackend()
    backend.location = {"lat": None, "lng": 51.5}
    detector = DriverAtBinDetector(_context(backend))

    await detector.check()

    assert detector.window == []


@pytest.mark.asyncio
async def test_window_belongs_to_one_driver() -> None:
    backend = _FakeBackend()
    detector = DriverAtBinDetector(_context(backend))
    await detector.check()
    await detector.check()

    backend.user = {"id": "d2", "type": "driver"}
    assert await detector.check() is False

    assert len(detector.window) == 1


@pytest.mark.asyncio
async def test_bins_without_coordinates_are_ignored() -> None:
    backend = _FakeBackend()
    backend.bins = [{"id": "nowhere"}, {"id": "zero", "lat": 0, "lng": 0}, dict(_BIN)]
    detector = DriverAtBinDetector(_context(backend))

    results = [await detector.check() for _ in range(3)]

    assert results[-1] is True
    assert [bin_id for bin_id, _ in backend.marked] == ["b1"]


@pytest.mark.asyncio
async def test_backend_distance_function_is_preferred() -> None:
    class _FlatEarthBackend(_FakeBackend):
        def calculate_distance(self, lat1: float, lng1: float, lat2: float, lng2: float) -> float:
            return 0.0

    backend = _FlatEarthBackend()
    backend.location = dict(_FAR)
    detector = DriverAtBinDetector(_context(backend))

    results = [await detector.check() for _ in range(3)]

    assert results[-1] is True


@pytest.mark.asyncio
async def test_history_size_comes_from_shared_config() -> None:
    backend = _FakeBackend()
    ctx = _context(backend)
    ctx.store.update_config({"positionHistorySize": 1})
    detector = DriverAtBinDetector(ctx)

    assert await detector.check() is True


@pytest.mark.asyncio
async def test_collaborator_failure_is_swallowed() -> None:
    backend = _FakeBackend()
    backend.fail_user = True
    detector = DriverAtBinDetector(_context(backend))

    assert await detector.check() is False


@pytest.mark.asyncio
async def test_missing_backend_is_a_no_op() -> None:
    detector = DriverAtBinDetector(_context(None))

    assert await detector.check() is False


@pytest.mark.asyncio
async def test_collection_recorded_event_clears_window() -> None:
    backend = _FakeBackend()
    ctx = _context(backend)
    detector = DriverAtBinDetector(ctx)
    await detector.check()
    await detector.check()

    ctx.bus.dispatch(DomainEvent.COLLECTION_RECORDED, {"binId": "b7"})

    assert detector.window == []


@pytest.mark.asyncio
async def test_driver_location_change_forces_a_check() -> None:
    backend = _FakeBackend()
    ctx = _context(backend)
    detector = DriverAtBinDetector(ctx, RuntimeConfig(location_refresh_delay_s=0))

    ctx.bus.dispatch(DomainEvent.DATA_CHANGED, {"key": "bins"})
    await ctx.bus.drain()
    assert detector.window == []

    ctx.bus.dispatch(DomainEvent.DATA_CHANGED, {"key": "driverLocations"})
    await ctx.bus.drain()
    assert len(detector.window) == 1


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent() -> None:
    backend = _FakeBackend()
    detector = DriverAtBinDetector(_context(backend))

    detector.start()
    detector.start()
    await asyncio.sleep(0.01)
    assert detector.is_running is True
    assert len(detector.window) == 1

    detector.stop()
    detector.stop()
    assert detector.is_running is False
    assert detector.window == []
    detector.close()


@pytest.mark.asyncio
async def test_supervisor_follows_the_session() -> None:
    backend = _FakeBackend()
    ctx = _context(backend)
    detector = DriverAtBinDetector(ctx)
    supervisor = DwellSupervisor(ctx, detector, RuntimeConfig(startup_delay_s=10))

    assert await supervisor.tick() is True
    assert detector.is_running is True

    backend.user = None
    assert await supervisor.tick() is False
    assert detector.is_running is False

    backend.user = {"id": "a1", "type": "admin"}
    assert await supervisor.tick() is False
    detector.close()


@pytest.mark.asyncio
async def test_supervisor_keeps_state_when_session_lookup_fails() -> None:
    backend = _FakeBackend()
    ctx = _context(backend)
    detector = DriverAtBinDetector(ctx)
    supervisor = DwellSupervisor(ctx, detector)
    await supervisor.tick()

    backend.fail_user = True
    assert await supervisor.tick() is True
    assert detector.is_running is True
    detector.close()


@pytest.mark.asyncio
async def test_supervisor_reacts_to_login_events() -> None:
    backend = _FakeBackend()
    backend.user = None
    ctx = _context(backend)
    detector = DriverAtBinDetector(ctx)
    supervisor = DwellSupervisor(ctx, detector, RuntimeConfig(startup_delay_s=10))
    supervisor.start()
    assert supervisor.is_running is True

    backend.user = dict(_DRIVER)
    ctx.bus.dispatch(DomainEvent.DRIVER_LOGIN, {"subsystem": "operations"})
    await ctx.bus.drain()
    assert detector.is_running is True

    supervisor.stop()
    assert supervisor.is_running is False
    assert detector.is_running is False
    assert ctx.bus.listener_count(DomainEvent.DRIVER_LOGIN) == 0


@pytest.mark.asyncio
async def test_window_cleared_mid_scan_does_not_match_a_far_bin() -> None:
    class _CollectingElsewhereBackend(_FakeBackend):
        bus: EventBus | None = None

        async def get_bins(self) -> list[Any]:
            if self.bus is not None:
                self.bus.dispatch(DomainEvent.COLLECTION_RECORDED, {"binId": "b7"})
            return await super().get_bins()

    backend = _CollectingElsewhereBackend()
    backend.location = dict(_FAR)
    ctx = _context(backend)
    backend.bus = ctx.bus
    detector = DriverAtBinDetector(ctx)

    results = [await detector.check() for _ in range(3)]

    assert results == [False, False, False]
    assert backend.marked == []


@pytest.mark.asyncio
async def test_overlapping_checks_record_a_bin_once() -> None:
    backend = _FakeBackend()
    detector = DriverAtBinDetector(_context(backend))
    await detector.check()
    await detector.check()

    results = await asyncio.gather(detector.check(), detector.check())

    assert sorted(results) == [False, True]
    assert [bin_id for bin_id, _ in backend.marked] == ["b1"]
    assert len(detector.window) == 1
