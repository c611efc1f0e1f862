"""
Tests for the concurrency gate and memory-pressure monitor.
"""

import asyncio

import pytest

from memory_graph.embeddings.throttling import ConcurrencyGate, MemoryPressureMonitor


class TestConcurrencyGate:
    def test_rejects_limit_above_hard_ceiling(self):
        with pytest.raises(ValueError):
            ConcurrencyGate(11)

    def test_rejects_zero(self):
        with pytest.raises(ValueError):
            ConcurrencyGate(0)

    @pytest.mark.asyncio
    async def test_tracks_peak(self):
        gate = ConcurrencyGate(3)

        async def work():
            async with gate.slot():
                await asyncio.sleep(0.01)

        await asyncio.gather(*(work() for _ in range(8)))
        assert gate.peak_in_flight == 3
        assert gate.in_flight == 0

    @pytest.mark.asyncio
    async def test_slot_released_on_error(self):
        gate = ConcurrencyGate(1)
        with pytest.raises(RuntimeError):
            async with gate.slot():
                raise RuntimeError("boom")
        assert gate.in_flight == 0


class TestMemoryPressureMonitor:
    def test_soft_limit(self):
        monitor = MemoryPressureMonitor(max_bytes=1000, threshold=0.8)
        assert monitor.soft_limit_bytes == 800
        monitor.reserve(799)
        assert not monitor.under_pressure
        monitor.reserve(1)
        assert monitor.under_pressure

    def test_release_never_goes_negative(self):
        monitor = MemoryPressureMonitor(max_bytes=1000)
        monitor.reserve(10)
        monitor.release(50)
        assert monitor.usage_bytes == 0

    @pytest.mark.asyncio
    async def test_no_wait_without_pressure(self):
        monitor = MemoryPressureMonitor(max_bytes=1000)
        assert await monitor.wait_for_headroom() == 0
        assert monitor.stall_count == 0

    @pytest.mark.asyncio
    async def test_waits_until_released(self):
        monitor = MemoryPressureMonitor(max_bytes=100, threshold=0.5, poll_interval=0.01, gc_hint=True)
        monitor.reserve(60)

        async def relieve():
            await asyncio.sleep(0.03)
            monitor.release(60)

        task = asyncio.create_task(relieve())
        polls = await monitor.wait_for_headroom()
        await task

        assert polls >= 1
        assert monitor.stall_count == 1
        assert not monitor.under_pressure

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            MemoryPressureMonitor(max_bytes=100, threshold=0.0)
