"""Rate limiters: sliding window (requests), token budget, token bucket.

All limiters are asyncio-cooperative: state is only mutated between
awaits, so no locking is needed on a single event loop.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Optional

from loguru import logger

from devmind.llm.config import RateLimitConfig

WINDOW_MS = 60_000


def _now_ms() -> float:
    return time.monotonic() * 1000


class SlidingWindowRateLimiter:
    """At most ``max_requests`` admissions in any rolling ``window_ms``."""

    def __init__(self, max_requests: int, window_ms: int = WINDOW_MS) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._timestamps: deque[float] = deque()

    async def acquire(self) -> None:
        while True:
            self._prune()
            if len(self._timestamps) < self.max_requests:
                self._timestamps.append(_now_ms())
                return
            wait_ms = self._timestamps[0] + self.window_ms - _now_ms()
            if wait_ms > 0:
                logger.debug(f"RateLimiter: window full ({self.max_requests}), waiting {wait_ms:.0f}ms")
                await asyncio.sleep(wait_ms / 1000)

    def _prune(self) -> None:
        cutoff = _now_ms() - self.window_ms
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def get_request_count(self) -> int:
        self._prune()
        return len(self._timestamps)

    def get_remaining_requests(self) -> int:
        return max(0, self.max_requests - self.get_request_count())

    def get_reset_time(self) -> float:
        """Milliseconds until the oldest admission leaves the window."""
        self._prune()
        if not self._timestamps:
            return 0
        return max(0.0, self._timestamps[0] + self.window_ms - _now_ms())

    def reset(self) -> None:
        self._timestamps.clear()


class TokenRateLimiter:
    """Sliding window over estimated token cost instead of request count."""

    def __init__(self, max_tokens_per_minute: int, window_ms: int = WINDOW_MS) -> None:
        self.max_tokens = max_tokens_per_minute
        self.window_ms = window_ms
        self._entries: deque[tuple[float, int]] = deque()

    async def acquire(self, tokens: int) -> None:
        while True:
            self._prune()
            # An oversized request is admitted once the window is empty
            if not self._entries or self.get_current_usage() + tokens <= self.max_tokens:
                self._entries.append((_now_ms(), tokens))
                return
            wait_ms = self.get_wait_time(tokens)
            logger.debug(f"TokenRateLimiter: {tokens} tokens over budget, waiting {wait_ms:.0f}ms")
            await asyncio.sleep(max(wait_ms, 1) / 1000)

    def _prune(self) -> None:
        cutoff = _now_ms() - self.window_ms
        while self._entries and self._entries[0][0] <= cutoff:
            self._entries.popleft()

    def get_current_usage(self) -> int:
        self._prune()
        return sum(count for _, count in self._entries)

    def get_remaining_tokens(self) -> int:
        return max(0, self.max_tokens - self.get_current_usage())

    def get_wait_time(self, tokens: int) -> float:
        """Milliseconds until ``tokens`` more would fit in the window."""
        excess = self.get_current_usage() + tokens - self.max_tokens
        if excess <= 0 or not self._entries:
            return 0
        for ts, count in self._entries:
            excess -= count
            if excess <= 0:
                return max(0.0, ts + self.window_ms - _now_ms())
        # Only reachable for an oversized request: wait for the whole window to drain
        return max(0.0, self._entries[-1][0] + self.window_ms - _now_ms())

    def reset(self) -> None:
        self._entries.clear()


class CombinedRateLimiter:
    """Request window plus optional token budget for one provider."""

    def __init__(self, config: RateLimitConfig, window_ms: int = WINDOW_MS) -> None:
        self.config = config
        self.request_limiter = SlidingWindowRateLimiter(config.requests_per_minute, window_ms)
        self.token_limiter: Optional[TokenRateLimiter] = (
            TokenRateLimiter(config.tokens_per_minute, window_ms) if config.tokens_per_minute else None
        )

    async def acquire(self, estimated_tokens: int | None = None) -> None:
        await self.request_limiter.acquire()
        if self.token_limiter and estimated_tokens:
            await self.token_limiter.acquire(estimated_tokens)

    def get_status(self) -> dict[str, Any]:
        return {
            "remaining_requests": self.request_limiter.get_remaining_requests(),
            "remaining_tokens": self.token_limiter.get_remaining_tokens() if self.token_limiter else None,
            "reset_time_ms": self.request_limiter.get_reset_time(),
        }

    def reset(self) -> None:
        self.request_limiter.reset()
        if self.token_limiter:
            self.token_limiter.reset()


class TokenBucketRateLimiter:
    """Classic token bucket: ``requests_per_minute`` capacity, continuous refill.

    Waiters are served in arrival order.
    """

    def __init__(self, requests_per_minute: int) -> None:
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        self.capacity = requests_per_minute
        self._tokens = float(requests_per_minute)
        self._last_refill = _now_ms()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = _now_ms()
        elapsed = now - self._last_refill
        self._tokens = min(self.capacity, self._tokens + elapsed / WINDOW_MS * self.capacity)
        self._last_refill = now

    async def acquire(self) -> None:
        # asyncio.Lock wakes waiters in FIFO order
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait_ms = (1 - self._tokens) * WINDOW_MS / self.capacity
                await asyncio.sleep(wait_ms / 1000)

    def get_available_tokens(self) -> int:
        self._refill()
        return int(self._tokens)

    def reset(self) -> None:
        self._tokens = float(self.capacity)
        self._last_refill = _now_ms()
