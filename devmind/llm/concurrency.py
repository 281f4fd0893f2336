"""Global concurrency bound shared by all providers."""

from __future__ import annotations

import asyncio
from collections import deque


class ConcurrencySemaphore:
    """Counting semaphore with a strict FIFO wait queue.

    ``release()`` hands the slot directly to the oldest waiter, so a task
    arriving later can never overtake one that is already queued.
    """

    def __init__(self, limit: int = 5) -> None:
        if limit < 1:
            raise ValueError("concurrency limit must be at least 1")
        self.limit = limit
        self.active_requests = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if self.active_requests < self.limit and not self.waiting:
            self.active_requests += 1
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was handed over just before cancellation: pass it on
                self.release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # Slot ownership moves to the waiter; the count is unchanged
                fut.set_result(None)
                return
        if self.active_requests > 0:
            self.active_requests -= 1

    async def __aenter__(self) -> ConcurrencySemaphore:
        await self.acquire()
        return self

    async def __aexit__(self, *exc) -> None:
        self.release()
