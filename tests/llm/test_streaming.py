"""Tests for the SSE/NDJSON codecs, StreamProcessor and stream helpers."""

import asyncio

import httpx
import pytest

from devmind.llm.types import StreamCallbacks, StreamChunk, TokenUsage, ToolCall
from devmind.llm.utils.streaming import (
    StreamProcessor,
    collect_stream,
    filter_stream,
    map_stream,
    merge_streams,
    parse_ndjson,
    parse_sse,
    stream_to_text,
)


async def _items(*values, delay: float = 0):
    for v in values:
        if delay:
            await asyncio.sleep(delay)
        yield v


# ── Codecs ──


@pytest.mark.asyncio
async def test_parse_sse_stops_at_done():
    body = (
        "event: message\n"
        "data: {\"n\": 1}\n\n"
        ": keep-alive comment\n"
        "data: {\"n\": 2}\n\n"
        "data: [DONE]\n\n"
        "data: {\"n\": 3}\n\n"
    )
    records = [r async for r in parse_sse(httpx.Response(200, content=body.encode()))]
    assert records == [{"n": 1}, {"n": 2}]


@pytest.mark.asyncio
async def test_parse_sse_skips_malformed():
    body = "data: {not json\n\ndata: {\"ok\": true}\n\n"
    records = [r async for r in parse_sse(httpx.Response(200, content=body.encode()))]
    assert records == [{"ok": True}]


@pytest.mark.asyncio
async def test_parse_ndjson():
    body = '{"a": 1}\n\n{"a": 2}\ngarbage\n{"a": 3}'
    records = [r async for r in parse_ndjson(httpx.Response(200, content=body.encode()))]
    assert [r["a"] for r in records] == [1, 2, 3]


# ── StreamProcessor ──


def test_processor_accumulates():
    texts, thoughts, usages = [], [], []
    proc = StreamProcessor(StreamCallbacks(
        on_text=texts.append, on_thinking=thoughts.append, on_usage=usages.append,
    ))
    usage = TokenUsage(prompt_tokens=3, completion_tokens=2, total_tokens=5)
    for chunk in (
        StreamChunk.thinking("hmm"),
        StreamChunk.text("Hel"),
        StreamChunk.text("lo"),
        StreamChunk.of_usage(usage),
        StreamChunk.done(),
    ):
        proc.process_chunk(chunk)

    assert proc.get_text() == "Hello"
    assert proc.get_thinking() == "hmm"
    assert proc.get_usage() == usage
    assert texts == ["Hel", "lo"]
    assert thoughts == ["hmm"]
    assert usages == [usage]
    assert proc.get_error() is None


def test_processor_merges_tool_call_arguments_by_id():
    reported = []
    proc = StreamProcessor(StreamCallbacks(on_tool_call=reported.append))
    proc.process_chunk(StreamChunk.of_tool_call(ToolCall(id="c1", name="edit", arguments={"path": "a.py"})))
    proc.process_chunk(StreamChunk.of_tool_call(ToolCall(id="c1", name="", arguments={"line": 3})))
    assert reported == []

    proc.process_chunk(StreamChunk.done())
    calls = proc.get_tool_calls()
    assert len(calls) == 1
    assert calls[0].name == "edit"
    assert calls[0].arguments == {"path": "a.py", "line": 3}
    assert reported == calls


def test_processor_error_invokes_callback():
    errors = []
    proc = StreamProcessor(StreamCallbacks(on_error=errors.append))
    proc.process_chunk(StreamChunk.failure("connection reset"))
    assert proc.get_error() == "connection reset"
    assert str(errors[0]) == "connection reset"


def test_processor_reset():
    proc = StreamProcessor()
    proc.process_chunk(StreamChunk.text("x"))
    proc.reset()
    assert proc.get_text() == ""
    assert proc.get_tool_calls() == []


# ── Helpers ──


@pytest.mark.asyncio
async def test_collect_map_filter():
    assert await collect_stream(_items(1, 2, 3)) == [1, 2, 3]
    assert await collect_stream(map_stream(_items(1, 2), lambda x: x * 10)) == [10, 20]
    assert await collect_stream(filter_stream(_items(1, 2, 3, 4), lambda x: x % 2 == 0)) == [2, 4]


@pytest.mark.asyncio
async def test_merge_streams_yields_everything():
    merged = await collect_stream(merge_streams(_items("a", "b", delay=0.01), _items(1, 2, 3)))
    assert sorted(map(str, merged)) == ["1", "2", "3", "a", "b"]


@pytest.mark.asyncio
async def test_stream_to_text():
    chunks = _items(StreamChunk.text("a"), StreamChunk.thinking("z"), StreamChunk.text("b"), StreamChunk.done())
    assert await stream_to_text(chunks) == "ab"
