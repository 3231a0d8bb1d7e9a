from __future__ import annotations

import asyncio

import pytest

from modbus_gateway.common.scheduler import PollTimer

from tests.conftest import wait_for


@pytest.mark.asyncio
async def test_timer_ticks_until_stopped() -> None:
    ticks = []

    async def tick() -> None:
        ticks.append(1)

    timer = PollTimer(lambda: 0.01, tick, name="t")
    timer.start()
    await wait_for(lambda: len(ticks) >= 3)

    timer.stop()
    assert not timer.running
    count = len(ticks)
    await asyncio.sleep(0.05)
    assert len(ticks) == count


@pytest.mark.asyncio
async def test_first_tick_waits_one_interval() -> None:
    ticks = []

    async def tick() -> None:
        ticks.append(1)

    timer = PollTimer(lambda: 0.2, tick)
    timer.start()
    await asyncio.sleep(0.02)
    timer.stop()

    assert ticks == []


@pytest.mark.asyncio
async def test_interval_is_read_before_every_wait() -> None:
    interval = {"s": 10.0}
    ticks = []

    async def tick() -> None:
        ticks.append(1)
        interval["s"] = 10.0

    timer = PollTimer(lambda: interval["s"], tick)
    interval["s"] = 0.01
    timer.start()
    await wait_for(lambda: len(ticks) == 1)
    await asyncio.sleep(0.05)
    timer.stop()

    assert len(ticks) == 1


@pytest.mark.asyncio
async def test_callback_errors_do_not_stop_the_timer() -> None:
    calls = []

    async def tick() -> None:
        calls.append(1)
        raise RuntimeError("boom")

    timer = PollTimer(lambda: 0.01, tick, name="failing")
    timer.start()
    await wait_for(lambda: len(calls) >= 3)
    timer.stop()

    assert timer.error_count >= 3
    assert timer.execution_count == 0


@pytest.mark.asyncio
async def test_stop_cancels_tick_in_progress() -> None:
    started = asyncio.Event()
    finished = []

    async def slow_tick() -> None:
        started.set()
        await asyncio.sleep(1)
        finished.append(1)

    timer = PollTimer(lambda: 0.001, slow_tick)
    timer.start()
    await asyncio.wait_for(started.wait(), 1)
    timer.stop()
    await asyncio.sleep(0.01)

    assert finished == []


@pytest.mark.asyncio
async def test_stats() -> None:
    async def tick() -> None:
        return None

    timer = PollTimer(lambda: 0.25, tick, name="stats")
    timer.start()
    stats = timer.get_stats()
    timer.stop()

    assert stats["name"] == "stats"
    assert stats["running"] is True
    assert stats["interval_s"] == 0.25


@pytest.mark.asyncio
async def test_fire_immediately_ticks_on_start() -> None:
    ticks = []

    async def tick() -> None:
        ticks.append(1)

    timer = PollTimer(lambda: 10.0, tick, fire_immediately=True)
    timer.start()
    await wait_for(lambda: len(ticks) == 1)
    await asyncio.sleep(0.02)
    timer.stop()

    assert len(ticks) == 1
