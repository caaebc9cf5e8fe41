import asyncio

import pytest

from liveclass.client.inactivity import InactivityMonitor

MINUTE = 60


@pytest.fixture
def make_monitor(scheduler):
    def _make(roster):
        calls = []
        monitor = InactivityMonitor(
            on_timeout=lambda: calls.append(scheduler.now),
            roster_size=lambda: len(roster),
            timeout=30 * MINUTE,
            scheduler=scheduler,
        )
        return monitor, calls

    return _make


def test_host_alone_fires_once(make_monitor, scheduler):
    monitor, calls = make_monitor(["host"])
    monitor.start()
    scheduler.advance(30 * MINUTE - 1)
    assert calls == []
    scheduler.advance(1)
    assert calls == [30 * MINUTE]
    assert monitor.fired
    assert not monitor.active

    scheduler.advance(120 * MINUTE)
    assert len(calls) == 1


def test_roster_update_restarts_timer(make_monitor, scheduler):
    monitor, calls = make_monitor(["host"])
    monitor.start()
    scheduler.advance(29 * MINUTE)
    monitor.reset()

    scheduler.advance(1 * MINUTE)
    assert calls == []
    scheduler.advance(28 * MINUTE)
    assert calls == []
    scheduler.advance(1 * MINUTE)
    assert calls == [59 * MINUTE]


def test_busy_room_restarts_until_host_is_alone(make_monitor, scheduler):
    roster = ["host", "student"]
    monitor, calls = make_monitor(roster)
    monitor.start()
    scheduler.advance(30 * MINUTE)
    assert calls == []
    assert monitor.active

    roster.pop()
    scheduler.advance(30 * MINUTE)
    assert calls == [60 * MINUTE]


def test_empty_roster_counts_as_alone(make_monitor, scheduler):
    monitor, calls = make_monitor([])
    monitor.start()
    scheduler.advance(30 * MINUTE)
    assert len(calls) == 1


def test_cancel_is_idempotent_and_stops_timer(make_monitor, scheduler):
    monitor, calls = make_monitor(["host"])
    monitor.start()
    monitor.cancel()
    monitor.cancel()
    scheduler.advance(60 * MINUTE)
    assert calls == []
    assert not monitor.active


def test_reset_without_start_does_nothing(make_monitor, scheduler):
    monitor, calls = make_monitor(["host"])
    monitor.reset()
    assert not monitor.active
    assert scheduler.timers == []


@pytest.mark.anyio
async def test_async_timeout_callback_is_scheduled():
    ended = asyncio.Event()

    async def end_session():
        ended.set()

    monitor = InactivityMonitor(on_timeout=end_session, roster_size=lambda: 1, timeout=0.01)
    monitor.start()
    await asyncio.wait_for(ended.wait(), timeout=1)
    assert monitor.fired


async def drain():
    for _ in range(5):
        await asyncio.sleep(0)


def test_failing_timeout_callback_rearms(scheduler, caplog):
    calls = []

    def end_session():
        calls.append(scheduler.now)
        raise RuntimeError("end failed")

    monitor = InactivityMonitor(on_timeout=end_session, roster_size=lambda: 1, timeout=30 * MINUTE, scheduler=scheduler)
    monitor.start()
    scheduler.advance(30 * MINUTE)
    assert calls == [30 * MINUTE]
    assert monitor.active
    assert not monitor.fired
    assert "Inactivity timeout callback failed" in caplog.text

    scheduler.advance(30 * MINUTE)
    assert calls == [30 * MINUTE, 60 * MINUTE]
    monitor.cancel()


@pytest.mark.anyio
async def test_failing_async_timeout_callback_rearms(scheduler, caplog):
    calls = []

    async def end_session():
        calls.append(scheduler.now)
        raise RuntimeError("end failed")

    monitor = InactivityMonitor(on_timeout=end_session, roster_size=lambda: 1, timeout=30 * MINUTE, scheduler=scheduler)
    monitor.start()
    scheduler.advance(30 * MINUTE)
    await drain()
    assert calls == [30 * MINUTE]
    assert monitor.active
    assert "Inactivity timeout callback failed" in caplog.text

    scheduler.advance(30 * MINUTE)
    await drain()
    assert calls == [30 * MINUTE, 60 * MINUTE]
    monitor.cancel()


@pytest.mark.anyio
async def test_cancel_stops_pending_timeout_callback(scheduler):
    started = asyncio.Event()
    finished = []

    async def end_session():
        started.set()
        await asyncio.sleep(10)
        finished.append(True)

    monitor = InactivityMonitor(on_timeout=end_session, roster_size=lambda: 1, timeout=30 * MINUTE, scheduler=scheduler)
    monitor.start()
    scheduler.advance(30 * MINUTE)
    await asyncio.wait_for(started.wait(), timeout=1)

    monitor.cancel()
    await drain()
    assert finished == []
    assert not monitor.active
