# =============================================================================
# MPP Python Client -- Clock Synchronizer
# =============================================================================
#
# Tracks ``server_time - local_time`` in milliseconds. Raw samples are noisy,
# so each new sample is eased in over a fixed number of sub-ticks instead of
# being applied at once; the final sub-tick snaps to the exact target.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import Callable

from ._logging import logger
from .constants import CLOCK_SYNC_DURATION, CLOCK_SYNC_STEPS


def now_ms() -> float:
    """Local wall clock in epoch milliseconds."""
    return time.time() * 1000


class ClockSynchronizer:
    """Smoothed estimate of the server clock offset.

    Args:
        steps: Sub-ticks per smoothing run (default 50).
        duration: Seconds per smoothing run (default 1.0).
        clock: Local clock in epoch milliseconds, injectable for tests.
    """

    def __init__(
        self,
        steps: int = CLOCK_SYNC_STEPS,
        duration: float = CLOCK_SYNC_DURATION,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        if steps < 1:
            raise ValueError("steps must be >= 1")
        self._steps = steps
        self._duration = duration
        self._clock = clock

        self._offset = 0.0
        self._target: float | None = None
        self._task: asyncio.Task[None] | None = None
        self._samples = 0
        self._last_latency_ms: float | None = None

    # -- Properties -----------------------------------------------------------

    @property
    def offset(self) -> float:
        return self._offset

    @property
    def target(self) -> float | None:
        """Offset the current (or last) smoothing run converges to."""
        return self._target

    @property
    def is_adjusting(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_latency_ms(self) -> float | None:
        return self._last_latency_ms

    @property
    def samples(self) -> int:
        return self._samples

    def server_now(self) -> float:
        """Best estimate of the server clock right now."""
        return self._clock() + self._offset

    def to_local(self, server_time: float) -> float:
        """Convert a server timestamp to the local clock."""
        return server_time - self._offset

    # -- Samples --------------------------------------------------------------

    def sample(self, server_time: float, echoed_time: float | None = None) -> None:
        """Feed one ``(server_time, echoed_local_time)`` reading."""
        local_now = self._clock()
        target = server_time - local_now
        self._samples += 1

        if echoed_time is not None:
            rtt = local_now - echoed_time
            if 0 <= rtt < 60_000:
                self._last_latency_ms = rtt

        self.cancel()
        self._target = target

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to run sub-ticks on
            self._offset = target
            return

        self._task = loop.create_task(self._smooth(target))

    async def _smooth(self, target: float) -> None:
        start = self._offset
        delta = target - start
        interval = self._duration / self._steps
        logger.debug(
            "Clock: adjusting offset %.1fms -> %.1fms over %d steps",
            start,
            target,
            self._steps,
        )
        try:
            for step in range(1, self._steps + 1):
                await asyncio.sleep(interval)
                if step == self._steps:
                    self._offset = target
                else:
                    self._offset = start + delta * step / self._steps
        except asyncio.CancelledError:
            return

    def cancel(self) -> None:
        """Stop an in-flight smoothing run, keeping the partial offset."""
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            self._task = None

    def reset(self) -> None:
        self.cancel()
        self._offset = 0.0
        self._target = None
        self._samples = 0
        self._last_latency_ms = None
