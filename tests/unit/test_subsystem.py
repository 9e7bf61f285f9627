"""
Unit Tests for the Subsystem Lifecycle

These tests verify the four-state protocol shared by every service:
- start/stop contract errors
- failed starts return to stopped
- concurrent starts have exactly one winner
- periodic workers tick on their interval and stop cleanly

Run with:
    pytest tests/unit/test_subsystem.py -v
"""

import asyncio

import pytest

from core.errors import AlreadyStartedError, NotStartedError, StartFailedError, StopFailedError
from core.schemas import SubsystemState
from services.subsystem import PeriodicSubsystem, Subsystem


class Recorder(Subsystem):
    name = "recorder"

    def __init__(self, fail_start=None, fail_stop=None, start_delay=0.0):
        super().__init__()
        self.fail_start = fail_start
        self.fail_stop = fail_stop
        self.start_delay = start_delay
        self.starts = 0

    async def _start(self):
        await asyncio.sleep(self.start_delay)
        if self.fail_start:
            raise self.fail_start
        self.starts += 1

    async def _stop(self):
        if self.fail_stop:
            raise self.fail_stop


class Ticking(PeriodicSubsystem):
    name = "ticking"

    def __init__(self, interval=0.01, tick_on_start=False):
        super().__init__(interval=interval)
        self.tick_on_start = tick_on_start
        self.ticks = 0
        self.cleaned = False

    async def _tick(self):
        self.ticks += 1
        if self.ticks == 2:
            raise RuntimeError("one bad tick")

    async def _cleanup(self):
        self.cleaned = True


class TestLifecycle:
    """Tests for Subsystem.start/stop"""

    @pytest.mark.asyncio
    async def test_start_stop_cycle(self):
        """Verify the state moves stopped -> running -> stopped"""
        sub = Recorder()
        assert sub.state == SubsystemState.STOPPED

        await sub.start()
        assert sub.is_running()
        assert sub.status().started_at is not None

        await sub.stop()
        status = sub.status()
        assert status.state == SubsystemState.STOPPED
        assert (status.start_count, status.stop_count) == (1, 1)

    @pytest.mark.asyncio
    async def test_double_start(self):
        """Verify starting a running subsystem raises AlreadyStartedError"""
        sub = Recorder()
        await sub.start()
        with pytest.raises(AlreadyStartedError):
            await sub.start()
        assert sub.starts == 1

    @pytest.mark.asyncio
    async def test_stop_when_stopped(self):
        """Verify stopping a stopped subsystem raises NotStartedError"""
        with pytest.raises(NotStartedError):
            await Recorder().stop()

    @pytest.mark.asyncio
    async def test_failed_start_returns_to_stopped(self):
        """Verify a failing start raises StartFailedError and can be retried"""
        sub = Recorder(fail_start=ValueError("no config"))
        with pytest.raises(StartFailedError, match="no config"):
            await sub.start()
        assert sub.state == SubsystemState.STOPPED

        sub.fail_start = None
        await sub.start()
        assert sub.is_running()

    @pytest.mark.asyncio
    async def test_failed_stop_still_stops(self):
        """Verify a failing stop raises StopFailedError but leaves the subsystem stopped"""
        sub = Recorder(fail_stop=RuntimeError("stuck"))
        await sub.start()
        with pytest.raises(StopFailedError):
            await sub.stop()
        assert sub.state == SubsystemState.STOPPED

    @pytest.mark.asyncio
    async def test_concurrent_starts_have_one_winner(self):
        """Verify only one of several racing start() calls succeeds"""
        sub = Recorder(start_delay=0.01)
        results = await asyncio.gather(*(sub.start() for _ in range(5)), return_exceptions=True)

        assert results.count(None) == 1
        assert sum(isinstance(r, AlreadyStartedError) for r in results) == 4
        assert sub.starts == 1


class TestPeriodicSubsystem:
    """Tests for the periodic worker"""

    @pytest.mark.asyncio
    async def test_ticks_and_survives_errors(self):
        """Verify the worker keeps ticking after a failed tick"""
        sub = Ticking(interval=0.01)
        await sub.start()
        await asyncio.sleep(0.1)
        await sub.stop()

        assert sub.ticks >= 3
        assert sub.cleaned

    @pytest.mark.asyncio
    async def test_tick_on_start(self):
        """Verify tick_on_start runs a tick before the first interval"""
        sub = Ticking(interval=10.0, tick_on_start=True)
        await sub.start()
        await asyncio.sleep(0.01)

        assert sub.ticks == 1
        await sub.stop()

    @pytest.mark.asyncio
    async def test_stop_wakes_sleeping_worker(self):
        """Verify stop does not wait for a long interval"""
        sub = Ticking(interval=60.0)
        await sub.start()

        await asyncio.wait_for(sub.stop(), timeout=1.0)
        assert sub.ticks == 0
