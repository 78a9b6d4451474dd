"""Bounded concurrency for asynchronous operations."""

import asyncio
from typing import Any, Awaitable, Callable


class ConcurrencyPool:
    """Admit at most ``limit`` operations at once.

    Callers beyond the limit wait in FIFO order until a slot frees up.
    Admitted work is never preempted or cancelled by the pool.
    """

    def __init__(self, limit: int):
        self.limit = max(1, limit)
        self._semaphore = asyncio.Semaphore(self.limit)
        self.active = 0
        self.pending = 0
        self.peak = 0

    async def run(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``fn(*args, **kwargs)`` once a slot is available.

        :param fn: Coroutine function to call
        :returns: Whatever the coroutine returns
        """
        self.pending += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.pending -= 1

        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            return await fn(*args, **kwargs)
        finally:
            self.active -= 1
            self._semaphore.release()
