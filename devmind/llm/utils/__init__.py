"""Codecs and resilience primitives used by the gateway."""

from devmind.llm.utils.rate_limit import (
    CombinedRateLimiter,
    SlidingWindowRateLimiter,
    TokenBucketRateLimiter,
    TokenRateLimiter,
)
from devmind.llm.utils.retry import (
    CircuitBreaker,
    CircuitState,
    add_jitter,
    with_retry,
    with_retry_and_timeout,
    with_timeout,
)
from devmind.llm.utils.streaming import (
    StreamProcessor,
    collect_stream,
    filter_stream,
    map_stream,
    merge_streams,
    parse_ndjson,
    parse_sse,
    stream_to_text,
    text_chunks,
)

__all__ = [
    "CombinedRateLimiter",
    "SlidingWindowRateLimiter",
    "TokenBucketRateLimiter",
    "TokenRateLimiter",
    "CircuitBreaker",
    "CircuitState",
    "add_jitter",
    "with_retry",
    "with_retry_and_timeout",
    "with_timeout",
    "StreamProcessor",
    "collect_stream",
    "filter_stream",
    "map_stream",
    "merge_streams",
    "parse_ndjson",
    "parse_sse",
    "stream_to_text",
    "text_chunks",
]
