"""
Time source shared by the control loops, so tests can drive them with a fake clock.
"""

import asyncio
import time


class SystemClock:
    def now(self) -> float:
        return time.monotonic()

    def wall(self) -> float:
        return time.time()

    async def sleep(self, seconds: float):
        await asyncio.sleep(seconds)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def wall(self) -> float:
        return self._now

    def advance(self, seconds: float):
        self._now += seconds

    async def sleep(self, seconds: float):
        self._now += seconds
        await asyncio.sleep(0)
