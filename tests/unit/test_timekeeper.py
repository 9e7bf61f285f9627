"""
Unit Tests for the NTP Time Keeper

The NTP fetcher and the local clock are injected so no packets are sent.

Run with:
    pytest tests/unit/test_timekeeper.py -v
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from core.config import NTPClientConfig, NTPLevel
from core.errors import StartFailedError
from core.utils.ntp import NTP_EPOCH_OFFSET, decode_transmit_time
from services.timekeeper import NTPManager

LOCAL = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def manager_for(offset, level=NTPLevel.WARN, prompt=None, failures=0, retry_limit=3):
    calls = {"fetch": 0}

    async def fetcher(pool, timeout):
        calls["fetch"] += 1
        if calls["fetch"] <= failures:
            raise ConnectionError("no NTP server in pool answered")
        return LOCAL + timedelta(seconds=offset)

    manager = NTPManager(
        NTPClientConfig(enabled=True, level=level, check_interval=60.0, retry_limit=retry_limit),
        prompt=prompt,
        fetcher=fetcher,
        clock=lambda: LOCAL,
    )
    return manager, calls


class TestCheckTime:
    """Tests for NTPManager.check_time"""

    @pytest.mark.asyncio
    async def test_in_sync(self):
        """Verify a small offset is in sync"""
        manager, _ = manager_for(0.01)
        assert await manager.check_time() == pytest.approx(0.01)
        assert manager.in_sync

    @pytest.mark.asyncio
    async def test_drift_warns(self, caplog):
        """Verify drift beyond the window logs a warning at level warn"""
        manager, _ = manager_for(-1.0)
        with caplog.at_level(logging.WARNING):
            await manager.check_time()

        assert not manager.in_sync
        assert any("Time out of sync" in r.message and r.levelno == logging.WARNING for r in caplog.records)

    @pytest.mark.asyncio
    async def test_drift_alerts(self, caplog):
        """Verify drift logs at ERROR at level alert"""
        manager, _ = manager_for(2.0, level=NTPLevel.ALERT)
        with caplog.at_level(logging.WARNING):
            await manager.check_time()

        assert any(r.levelno == logging.ERROR for r in caplog.records)


class TestLifecycle:
    """Tests for start behaviour per level"""

    @pytest.mark.asyncio
    async def test_disabled_refuses_to_start(self):
        """Verify level disabled cannot be started"""
        manager, _ = manager_for(0.0, level=NTPLevel.DISABLED)
        with pytest.raises(StartFailedError, match="disabled"):
            await manager.start()

    @pytest.mark.asyncio
    async def test_prompt_once_retries_initial_check(self):
        """Verify the initial check is retried up to retry_limit times"""
        manager, calls = manager_for(0.0, level=NTPLevel.PROMPT_ONCE, failures=2)
        await manager.start()
        try:
            assert calls["fetch"] == 3
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_prompt_once_gives_up(self):
        """Verify start fails when every initial attempt fails"""
        manager, calls = manager_for(0.0, level=NTPLevel.PROMPT_ONCE, failures=5, retry_limit=2)
        with pytest.raises(StartFailedError):
            await manager.start()
        assert calls["fetch"] == 2

    @pytest.mark.asyncio
    async def test_prompt_answer_disables_checks(self):
        """Verify answering 'disable' turns later ticks into no-ops"""
        answers = []

        def prompt(offset):
            answers.append(offset)
            return "disable"

        manager, calls = manager_for(5.0, level=NTPLevel.PROMPT_ONCE, prompt=prompt)
        await manager.start()
        try:
            assert answers == [pytest.approx(5.0)]
            assert manager.level == NTPLevel.DISABLED
            assert manager.is_running()

            await manager._tick()
            assert calls["fetch"] == 1
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_prompt_asked_once(self):
        """Verify the operator is only asked on the first drift"""
        answers = []

        def prompt(offset):
            answers.append(offset)
            return "alert"

        manager, _ = manager_for(5.0, level=NTPLevel.PROMPT_ONCE, prompt=prompt)
        await manager.start()
        try:
            await manager._tick()
            assert len(answers) == 1
            assert manager.level == NTPLevel.ALERT
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_no_prompt_falls_back_to_warn(self):
        """Verify a missing prompt keeps the subsystem running at level warn"""
        manager, _ = manager_for(5.0, level=NTPLevel.PROMPT_ONCE)
        await manager.start()
        try:
            assert manager.level == NTPLevel.WARN
        finally:
            await manager.stop()


class TestDecodeTransmitTime:
    """Tests for the SNTP reply decoder"""

    def test_decode(self):
        """Verify the transmit timestamp is converted from the NTP epoch"""
        seconds = int(LOCAL.timestamp()) + NTP_EPOCH_OFFSET
        packet = bytearray(48)
        packet[40:44] = seconds.to_bytes(4, "big")
        packet[44:48] = (2 ** 31).to_bytes(4, "big")

        assert decode_transmit_time(bytes(packet)) == LOCAL + timedelta(seconds=0.5)

    def test_short_packet(self):
        """Verify truncated replies are rejected"""
        with pytest.raises(ValueError):
            decode_transmit_time(b"\x00" * 10)
