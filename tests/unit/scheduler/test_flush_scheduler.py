"""
Tests for the flush scheduler.

Tests tick cadence, overlap policies and stop behavior.
"""

import asyncio

import pytest

from conftest import wait_until
from shiplog.core.scheduler import FlushScheduler, FlushState


class GatedFlush:
    """Flush coroutine that blocks until released."""

    def __init__(self) -> None:
        self.calls = 0
        self.completed = 0
        self.cancelled = False
        self.gate = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        try:
            await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        self.completed += 1
        return self.calls


class TestOverlapPolicy:
    """Test ticks arriving while a cycle is in flight."""

    @pytest.mark.asyncio
    async def test_state_transitions(self):
        flush = GatedFlush()
        scheduler = FlushScheduler(flush, interval_seconds=60)

        task = scheduler.trigger()
        await asyncio.sleep(0)
        assert scheduler.state is FlushState.FLUSHING

        flush.gate.set()
        await task
        assert scheduler.state is FlushState.IDLE

    @pytest.mark.asyncio
    async def test_skip_policy_drops_overlapping_trigger(self):
        flush = GatedFlush()
        scheduler = FlushScheduler(flush, interval_seconds=60, overlap_policy="skip")

        first = scheduler.trigger()
        await asyncio.sleep(0)
        second = scheduler.trigger()

        assert second is first
        flush.gate.set()
        await first

        assert flush.calls == 1
        assert scheduler.skipped_ticks == 1

    @pytest.mark.asyncio
    async def test_coalesce_policy_runs_one_extra_cycle(self):
        flush = GatedFlush()
        scheduler = FlushScheduler(flush, interval_seconds=60, overlap_policy="coalesce")

        first = scheduler.trigger()
        await asyncio.sleep(0)
        scheduler.trigger()
        scheduler.trigger()

        flush.gate.set()
        result = await first

        assert flush.calls == 2
        assert result == 2
        assert scheduler.state is FlushState.IDLE

    @pytest.mark.asyncio
    async def test_trigger_after_cycle_starts_new_cycle(self):
        flush = GatedFlush()
        flush.gate.set()
        scheduler = FlushScheduler(flush, interval_seconds=60)

        await scheduler.trigger()
        await scheduler.trigger()

        assert flush.calls == 2

    @pytest.mark.asyncio
    async def test_flush_error_returns_to_idle(self):
        async def broken():
            raise RuntimeError("boom")

        scheduler = FlushScheduler(broken, interval_seconds=60)

        result = await scheduler.trigger()

        assert result is None
        assert scheduler.state is FlushState.IDLE


class TestTimer:
    """Test the periodic timer."""

    @pytest.mark.asyncio
    async def test_start_flushes_immediately(self):
        flush = GatedFlush()
        flush.gate.set()
        scheduler = FlushScheduler(flush, interval_seconds=60)

        await scheduler.start()
        await wait_until(lambda: flush.completed == 1)
        await scheduler.stop()

        assert flush.calls == 1

    @pytest.mark.asyncio
    async def test_ticks_repeat_on_interval(self):
        flush = GatedFlush()
        flush.gate.set()
        scheduler = FlushScheduler(flush, interval_seconds=0.01)

        await scheduler.start(immediate=False)
        await wait_until(lambda: flush.completed >= 3)
        await scheduler.stop()

        assert scheduler.ticks >= 3

    @pytest.mark.asyncio
    async def test_ticks_fire_while_cycle_in_flight_without_overlap(self):
        flush = GatedFlush()
        scheduler = FlushScheduler(flush, interval_seconds=0.01)

        await scheduler.start()
        await wait_until(lambda: scheduler.skipped_ticks >= 2)

        assert flush.calls == 1
        flush.gate.set()
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_on_tick_hook_called(self):
        flush = GatedFlush()
        flush.gate.set()
        ticks = []
        scheduler = FlushScheduler(flush, interval_seconds=0.01, on_tick=lambda: ticks.append(1))

        await scheduler.start(immediate=False)
        await wait_until(lambda: len(ticks) >= 2)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        flush = GatedFlush()
        flush.gate.set()
        scheduler = FlushScheduler(flush, interval_seconds=60)

        await scheduler.start()
        await scheduler.start()
        await wait_until(lambda: flush.completed == 1)
        await scheduler.stop()

        assert flush.calls == 1

    def test_invalid_configuration(self):
        async def noop():
            return None

        with pytest.raises(ValueError):
            FlushScheduler(noop, interval_seconds=0)
        with pytest.raises(ValueError):
            FlushScheduler(noop, interval_seconds=1, overlap_policy="queue")


class TestStop:
    """Test drain and abort on stop."""

    @pytest.mark.asyncio
    async def test_stop_drain_waits_for_in_flight_cycle(self):
        flush = GatedFlush()
        scheduler = FlushScheduler(flush, interval_seconds=60)
        await scheduler.start()
        await wait_until(lambda: flush.calls == 1)

        stopping = asyncio.create_task(scheduler.stop(drain=True))
        await asyncio.sleep(0.01)
        assert not stopping.done()

        flush.gate.set()
        await stopping

        assert flush.completed == 1
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_stop_abort_cancels_in_flight_cycle(self):
        flush = GatedFlush()
        scheduler = FlushScheduler(flush, interval_seconds=60)
        await scheduler.start()
        await wait_until(lambda: flush.calls == 1)

        await scheduler.stop(drain=False)

        assert flush.cancelled
        assert flush.completed == 0
        assert scheduler.state is FlushState.IDLE

    @pytest.mark.asyncio
    async def test_no_ticks_after_stop(self):
        flush = GatedFlush()
        flush.gate.set()
        scheduler = FlushScheduler(flush, interval_seconds=0.01)
        await scheduler.start()
        await wait_until(lambda: flush.completed >= 2)

        await scheduler.stop()
        calls = flush.calls
        await asyncio.sleep(0.05)

        assert flush.calls == calls

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        async def noop():
            return None

        scheduler = FlushScheduler(noop, interval_seconds=1)
        await scheduler.stop()

        assert not scheduler.running
