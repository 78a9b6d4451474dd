"""Per-transfer bandwidth limiting."""

import asyncio
import re
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Tuple

_RATE_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}


def parse_rate(value: str) -> int:
    """Convert a wget style rate like ``"100m"`` to bytes per second.

    :param value: Rate with optional k/m/g suffix (binary multiples)
    :type value: str
    :returns: Bytes per second, 0 for an empty or zero rate
    :rtype: int
    :raises ValueError: If the value is not a valid rate
    """
    value = str(value).strip().lower()
    if not value:
        return 0
    match = re.fullmatch(r'(\d+(?:\.\d+)?)\s*([kmg]?)b?', value)
    if not match:
        raise ValueError(f"Invalid rate: {value}")
    number, unit = match.groups()
    return int(float(number) * _RATE_UNITS[unit])


class BandwidthThrottle:
    """Token accounting rate limiter for exactly one transfer.

    Every delivered chunk is recorded with its arrival time. When the bytes
    seen during the trailing window (one second by default) exceed
    ``rate``, the caller is paused until enough of the oldest chunks have
    left the window. Any window of that length therefore carries at most
    ``rate`` plus the chunk that crossed the limit. A rate of zero or less
    disables throttling.
    """

    def __init__(
        self,
        rate: int,
        window: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rate = rate
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._chunks: Deque[Tuple[float, int]] = deque()
        self._window_bytes = 0

    @property
    def enabled(self) -> bool:
        return self.rate > 0

    def _expire(self, now: float):
        while self._chunks and self._chunks[0][0] + self.window <= now:
            _, nbytes = self._chunks.popleft()
            self._window_bytes -= nbytes

    async def consume(self, nbytes: int):
        """Account for ``nbytes`` delivered, pausing while the window is full."""
        if not self.enabled:
            return

        now = self._clock()
        self._expire(now)
        self._chunks.append((now, nbytes))
        self._window_bytes += nbytes

        # The chunk just delivered never has to wait for itself
        while self._window_bytes > self.rate and len(self._chunks) > 1:
            await self._sleep(self._chunks[0][0] + self.window - now)
            now = self._clock()
            self._expire(now)
