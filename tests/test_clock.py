"""Tests for the clock synchronizer."""

import asyncio

import pytest

from mpp_client.clock import ClockSynchronizer, now_ms


def fixed_clock(value: float = 1000.0):
    return lambda: value


class TestWithoutLoop:
    def test_sample_snaps_immediately(self):
        clock = ClockSynchronizer(clock=fixed_clock())
        clock.sample(1500)
        assert clock.offset == 500
        assert clock.target == 500
        assert clock.is_adjusting is False

    def test_negative_offset(self):
        clock = ClockSynchronizer(clock=fixed_clock())
        clock.sample(400)
        assert clock.offset == -600

    def test_server_now_and_to_local(self):
        clock = ClockSynchronizer(clock=fixed_clock())
        clock.sample(1500)
        assert clock.server_now() == 1500
        assert clock.to_local(2500) == 2000

    def test_latency_from_echo(self):
        clock = ClockSynchronizer(clock=fixed_clock())
        clock.sample(1500, echoed_time=900)
        assert clock.last_latency_ms == 100

    def test_implausible_echo_ignored(self):
        clock = ClockSynchronizer(clock=fixed_clock())
        clock.sample(1500, echoed_time=5000)  # in the future
        assert clock.last_latency_ms is None

    def test_reset(self):
        clock = ClockSynchronizer(clock=fixed_clock())
        clock.sample(1500, echoed_time=900)
        clock.reset()
        assert clock.offset == 0
        assert clock.target is None
        assert clock.samples == 0
        assert clock.last_latency_ms is None

    def test_steps_must_be_positive(self):
        with pytest.raises(ValueError):
            ClockSynchronizer(steps=0)

    def test_now_ms_is_epoch_millis(self):
        assert now_ms() > 1_600_000_000_000


class TestSmoothing:
    @pytest.mark.asyncio
    async def test_converges_to_exact_target(self):
        clock = ClockSynchronizer(steps=5, duration=0.05, clock=fixed_clock())
        clock.sample(1500)
        assert clock.is_adjusting is True
        assert clock.offset == 0
        await asyncio.sleep(0.2)
        assert clock.is_adjusting is False
        assert clock.offset == 500

    @pytest.mark.asyncio
    async def test_intermediate_values_stay_between_start_and_target(self):
        clock = ClockSynchronizer(steps=10, duration=0.1, clock=fixed_clock())
        clock.sample(1500)
        seen = []
        while clock.is_adjusting:
            seen.append(clock.offset)
            await asyncio.sleep(0.005)
        seen.append(clock.offset)
        assert all(0 <= value <= 500 for value in seen)
        assert seen == sorted(seen)
        assert seen[-1] == 500

    @pytest.mark.asyncio
    async def test_new_sample_restarts_from_partial_offset(self):
        clock = ClockSynchronizer(steps=20, duration=0.2, clock=fixed_clock())
        clock.sample(1500)
        await asyncio.sleep(0.05)
        partial = clock.offset
        assert 0 < partial < 500

        clock.sample(1000)  # target 0
        assert clock.offset == partial
        assert clock.target == 0
        seen = []
        while clock.is_adjusting:
            seen.append(clock.offset)
            await asyncio.sleep(0.005)
        # Moving down from the partial value, never past the new target
        assert all(0 <= value <= partial for value in seen)
        assert clock.offset == 0

    @pytest.mark.asyncio
    async def test_cancel_keeps_partial_offset(self):
        clock = ClockSynchronizer(steps=20, duration=0.2, clock=fixed_clock())
        clock.sample(1500)
        await asyncio.sleep(0.05)
        clock.cancel()
        frozen = clock.offset
        await asyncio.sleep(0.05)
        assert clock.offset == frozen
        assert clock.is_adjusting is False

    @pytest.mark.asyncio
    async def test_single_step_snaps(self):
        clock = ClockSynchronizer(steps=1, duration=0.01, clock=fixed_clock())
        clock.sample(1250)
        await asyncio.sleep(0.05)
        assert clock.offset == 250

    @pytest.mark.asyncio
    async def test_samples_counted(self):
        clock = ClockSynchronizer(steps=2, duration=0.01, clock=fixed_clock())
        clock.sample(1100)
        clock.sample(1200)
        assert clock.samples == 2
        clock.reset()
