"""Retry with exponential backoff, timeouts, and a circuit breaker.

Circuit breaker state machine::

    CLOSED    -> (failures >= threshold)        -> OPEN
    OPEN      -> (reset timeout since failure)  -> HALF_OPEN  (one trial call)
    HALF_OPEN -> (trial succeeds)                -> CLOSED
    HALF_OPEN -> (trial fails)                   -> OPEN
"""

from __future__ import annotations

import asyncio
import random
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from loguru import logger

from devmind.llm.config import RetryConfig
from devmind.llm.errors import CircuitOpenError, LLMError, LLMTimeoutError, RateLimitError, is_retryable_error

T = TypeVar("T")

OnRetry = Callable[[int, BaseException, float], None]


# ── Retry ─────────────────────────────────────────────────────────


def add_jitter(delay_ms: float, factor: float = 0.1) -> float:
    """Perturb ``delay_ms`` by up to ±``factor``."""
    jitter = delay_ms * factor * (random.random() * 2 - 1)
    return max(0.0, delay_ms + jitter)


async def sleep_ms(ms: float) -> None:
    await asyncio.sleep(ms / 1000)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    on_retry: OnRetry | None = None,
) -> T:
    """Call ``fn`` until it succeeds, a non-retryable error occurs, or retries run out.

    Args:
        fn: Zero-argument coroutine factory.
        config: Retry budget and backoff shape.
        on_retry: Called as ``on_retry(attempt, error, delay_ms)`` before each sleep.
    """
    delay = float(config.initial_delay_ms)

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except Exception as e:
            if not is_retryable_error(e) or attempt >= config.max_retries:
                raise
            if isinstance(e, LLMError) and config.retryable_errors is not None:
                if e.code.value not in config.retryable_errors:
                    raise

            wait = delay
            if isinstance(e, RateLimitError) and e.retry_after_ms:
                wait = min(max(wait, float(e.retry_after_ms)), float(config.max_delay_ms))

            if on_retry:
                on_retry(attempt + 1, e, wait)
            await sleep_ms(wait)

            delay = add_jitter(min(delay * config.backoff_multiplier, config.max_delay_ms))

    # range() always runs at least once and every path above returns or raises
    raise RuntimeError("with_retry: retry loop exited unexpectedly")


async def with_timeout(
    fn: Callable[[], Awaitable[T]],
    timeout_ms: int,
    provider: str = "",
) -> T:
    try:
        return await asyncio.wait_for(fn(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as e:
        raise LLMTimeoutError(provider, timeout_ms, e) from e


async def with_retry_and_timeout(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    timeout_ms: int,
    on_retry: OnRetry | None = None,
    provider: str = "",
) -> T:
    """Each attempt gets its own ``timeout_ms``; timeouts are retried."""
    return await with_retry(lambda: with_timeout(fn, timeout_ms, provider), config, on_retry)


# ── Circuit breaker ───────────────────────────────────────────────


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Per-provider circuit breaker.

    Example::

        breaker = CircuitBreaker(failure_threshold=5, reset_timeout_ms=60000, name="openai")
        response = await breaker.execute(lambda: provider.chat(request))

    ``counts_as_failure`` decides which exceptions trip the breaker; by
    default every exception does. Exceptions it rejects are still re-raised
    but are recorded as a response from a healthy provider.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60000,
        name: str = "",
        counts_as_failure: Optional[Callable[[BaseException], bool]] = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self.name = name
        self._counts_as_failure = counts_as_failure or (lambda e: True)

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure: float | None = None
        self._trial_in_flight = False
        self._total_rejections = 0

    def get_state(self) -> str:
        return self._state.value

    @property
    def state(self) -> CircuitState:
        return self._state

    def _transition_to(self, new_state: CircuitState) -> None:
        if new_state != self._state:
            logger.warning(f"CircuitBreaker[{self.name}]: {self._state.value} → {new_state.value}")
        self._state = new_state
        if new_state == CircuitState.CLOSED:
            self._failures = 0

    def _allow_request(self) -> bool:
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            elapsed_ms = (time.monotonic() - (self._last_failure or 0.0)) * 1000
            if elapsed_ms >= self.reset_timeout_ms:
                self._transition_to(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                return True
            return False
        # HALF_OPEN: only the single trial call may run
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        self._trial_in_flight = False
        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.CLOSED)
        else:
            self._failures = 0

    def record_failure(self) -> None:
        self._trial_in_flight = False
        self._failures += 1
        self._last_failure = time.monotonic()
        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
            self._transition_to(CircuitState.OPEN)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` under breaker protection.

        Raises:
            CircuitOpenError: The breaker is open (``fn`` is not called).
        """
        if not self._allow_request():
            self._total_rejections += 1
            raise CircuitOpenError(self.name)

        try:
            result = await fn()
        except BaseException as e:
            if isinstance(e, Exception) and self._counts_as_failure(e):
                self.record_failure()
            elif isinstance(e, Exception):
                self.record_success()
            else:
                # cancelled: give the trial slot back without judging the provider
                self._trial_in_flight = False
            raise
        self.record_success()
        return result

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "failures": self._failures,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_ms": self.reset_timeout_ms,
            "rejections": self._total_rejections,
        }

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure = None
        self._trial_in_flight = False
