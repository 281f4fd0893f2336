"""Wire codecs and stream accumulation.

- parse_sse / parse_ndjson decode an ``httpx.Response`` body into JSON records.
- StreamProcessor folds a StreamChunk sequence into text, tool calls,
  thinking and usage.
- Small async-iterator helpers for working with chunk streams.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable, TypeVar

import httpx
from loguru import logger

from devmind.llm.types import StreamCallbacks, StreamChunk, TokenUsage, ToolCall

T = TypeVar("T")
U = TypeVar("U")


# ── Wire codecs ───────────────────────────────────────────────────


async def parse_sse(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Yield the JSON payload of every ``data:`` line; stop at ``[DONE]``.

    ``event:``/``id:`` lines and comments are ignored (vendors repeat the
    event type inside the payload). Lines that are not valid JSON are skipped.
    """
    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if not payload:
            continue
        if payload == "[DONE]":
            return
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, ValueError):
            logger.debug(f"parse_sse: skipping malformed line: {payload[:120]}")
            continue
        if isinstance(data, dict):
            yield data


async def parse_ndjson(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Yield one JSON object per non-empty line."""
    async for line in response.aiter_lines():
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except (json.JSONDecodeError, ValueError):
            logger.debug(f"parse_ndjson: skipping malformed line: {line[:120]}")
            continue
        if isinstance(data, dict):
            yield data


# ── Stream processor ──────────────────────────────────────────────


class StreamProcessor:
    """Accumulate a chunk stream into a single result.

    Tool calls are keyed by id; a later chunk with the same id merges its
    arguments into the earlier ones key by key. Calls are reported through
    ``on_tool_call`` when the ``done`` chunk arrives.
    """

    def __init__(self, callbacks: StreamCallbacks | None = None) -> None:
        self._callbacks = callbacks or StreamCallbacks()
        self.reset()

    def reset(self) -> None:
        self._text: list[str] = []
        self._thinking: list[str] = []
        self._tool_calls: dict[str, dict[str, Any]] = {}
        self._usage: TokenUsage | None = None
        self._error: str | None = None
        self._finalized = False

    def process_chunk(self, chunk: StreamChunk) -> None:
        cb = self._callbacks
        if chunk.type == "text" and chunk.content:
            self._text.append(chunk.content)
            if cb.on_text:
                cb.on_text(chunk.content)
        elif chunk.type == "tool_call" and chunk.tool_call:
            self._merge_tool_call(chunk.tool_call)
        elif chunk.type == "thinking" and chunk.content:
            self._thinking.append(chunk.content)
            if cb.on_thinking:
                cb.on_thinking(chunk.content)
        elif chunk.type == "usage" and chunk.usage:
            self._usage = chunk.usage
            if cb.on_usage:
                cb.on_usage(chunk.usage)
        elif chunk.type == "error":
            self._error = chunk.error or "Unknown stream error"
            if cb.on_error:
                cb.on_error(RuntimeError(self._error))
        elif chunk.type == "done":
            self._finalize()

    def _merge_tool_call(self, call: ToolCall) -> None:
        if not call.id:
            return
        entry = self._tool_calls.setdefault(call.id, {"name": None, "arguments": None})
        if call.name:
            entry["name"] = call.name
        if call.arguments is not None:
            if entry["arguments"] is None:
                entry["arguments"] = dict(call.arguments)
            else:
                entry["arguments"].update(call.arguments)

    def _finalize(self) -> None:
        if self._finalized:
            return
        self._finalized = True
        if self._callbacks.on_tool_call:
            for call in self.get_tool_calls():
                self._callbacks.on_tool_call(call)

    def get_text(self) -> str:
        return "".join(self._text)

    def get_thinking(self) -> str:
        return "".join(self._thinking)

    def get_tool_calls(self) -> list[ToolCall]:
        return [
            ToolCall(id=call_id, name=entry["name"], arguments=entry["arguments"])
            for call_id, entry in self._tool_calls.items()
            if entry["name"] and entry["arguments"] is not None
        ]

    def get_usage(self) -> TokenUsage | None:
        return self._usage

    def get_error(self) -> str | None:
        return self._error


# ── Iterator helpers ──────────────────────────────────────────────


async def collect_stream(stream: AsyncIterator[T]) -> list[T]:
    return [item async for item in stream]


async def map_stream(stream: AsyncIterator[T], fn: Callable[[T], U]) -> AsyncIterator[U]:
    async for item in stream:
        yield fn(item)


async def filter_stream(stream: AsyncIterator[T], predicate: Callable[[T], bool]) -> AsyncIterator[T]:
    async for item in stream:
        if predicate(item):
            yield item


async def merge_streams(*streams: AsyncIterator[T]) -> AsyncIterator[T]:
    """Interleave several streams, yielding items as soon as any produces one."""
    iterators = [s.__aiter__() for s in streams]
    pending: dict[asyncio.Task, int] = {
        asyncio.ensure_future(it.__anext__()): i for i, it in enumerate(iterators)
    }
    try:
        while pending:
            done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                index = pending.pop(task)
                try:
                    item = task.result()
                except StopAsyncIteration:
                    continue
                pending[asyncio.ensure_future(iterators[index].__anext__())] = index
                yield item
    finally:
        for task in pending:
            task.cancel()


async def text_chunks(stream: AsyncIterator[StreamChunk]) -> AsyncIterator[str]:
    async for chunk in stream:
        if chunk.type == "text" and chunk.content:
            yield chunk.content


async def stream_to_text(stream: AsyncIterator[StreamChunk]) -> str:
    return "".join([text async for text in text_chunks(stream)])
