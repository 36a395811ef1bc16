from __future__ import annotations

import asyncio

import pytest

from pyautocollect._timer import RepeatingTimer
from pyautocollect.events import BusEvent, DomainEvent, EventBus


def test_dispatch_reaches_listeners_in_order() -> None:
    bus = EventBus()
    seen: list[str] = []
    bus.add_listener(DomainEvent.ROUTE_STARTED, lambda event: seen.append("first"))
    bus.add_listener("routeStarted", lambda event: seen.append("second"))

    event = bus.dispatch(DomainEvent.ROUTE_STARTED, {"routeId": "r1"})

    assert seen == ["first", "second"]
    assert event.name == "routeStarted"
    assert event.detail == {"routeId": "r1"}


def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    seen: list[BusEvent] = []
    unsubscribe = bus.add_listener(DomainEvent.GPS_UPDATE, seen.append)

    unsubscribe()
    bus.dispatch(DomainEvent.GPS_UPDATE)

    assert seen == []
    assert bus.listener_count(DomainEvent.GPS_UPDATE) == 0


def test_failing_listener_does_not_block_others() -> None:
    bus = EventBus()
    seen: list[BusEvent] = []

    def _boom(event: BusEvent) -> None:
        raise RuntimeError("listener bug")

    bus.add_listener(DomainEvent.DATA_CHANGED, _boom)
    bus.add_listener(DomainEvent.DATA_CHANGED, seen.append)

    bus.dispatch(DomainEvent.DATA_CHANGED, {"key": "bins"})

    assert len(seen) == 1


@pytest.mark.asyncio
async def test_async_listener_is_scheduled_and_drained() -> None:
    bus = EventBus()
    seen: list[str] = []

    async def _listener(event: BusEvent) -> None:
        await asyncio.sleep(0)
        seen.append(event.detail["binId"])

    bus.add_listener(DomainEvent.AUTO_COLLECTION_REGISTERED, _listener)
    bus.dispatch(DomainEvent.AUTO_COLLECTION_REGISTERED, {"binId": "b1"})
    assert seen == []

    await bus.drain()

    assert seen == ["b1"]


@pytest.mark.asyncio
async def test_timer_ticks_immediately_and_repeats() -> None:
    ticks: list[int] = []

    async def _tick() -> None:
        ticks.append(1)

    timer = RepeatingTimer(0.01, _tick, name="test")
    assert timer.start() is True
    assert timer.start() is False
    await asyncio.sleep(0.05)
    assert timer.stop() is True
    assert timer.stop() is False

    count = len(ticks)
    assert count >= 2
    await asyncio.sleep(0.03)
    assert len(ticks) == count


@pytest.mark.asyncio
async def test_timer_survives_failing_callback() -> None:
    calls: list[int] = []

    async def _tick() -> None:
        calls.append(1)
        raise RuntimeError("tick failed")

    timer = RepeatingTimer(0.01, _tick, name="failing")
    timer.start()
    await asyncio.sleep(0.05)
    timer.stop()

    assert len(calls) >= 2
    assert timer.is_running is False


@pytest.mark.asyncio
async def test_timer_without_immediate_waits_one_interval() -> None:
    ticks: list[int] = []

    async def _tick() -> None:
        ticks.append(1)

    timer = RepeatingTimer(10.0, _tick, name="slow", immediate=False)
    timer.start()
    await asyncio.sleep(0.01)
    timer.stop()

    assert ticks == []
