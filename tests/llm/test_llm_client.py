"""Tests for LLMClient: routing, resilience, tools and agent loops."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from devmind.llm.client import MAX_ITERATIONS_SUFFIX, LLMClient, create_client
from devmind.llm.config import ClientConfig, ConfigBuilder, ConfigError, ProviderConfig
from devmind.llm.errors import (
    CircuitOpenError,
    InvalidRequestError,
    LLMError,
    ProviderError,
    ProviderNotConfiguredError,
)
from devmind.llm.providers.ollama import OllamaProvider
from devmind.llm.types import (
    CancelToken,
    ChatRequest,
    ChatResponse,
    Message,
    ProviderName,
    StreamCallbacks,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)


def _config(**overrides) -> ClientConfig:
    builder = (
        ConfigBuilder()
        .add_ollama()
        .add_openai("sk-test")
        .set_retry_config(max_retries=0, initial_delay_ms=1)
    )
    if "threshold" in overrides:
        builder.set_circuit_breaker(failure_threshold=overrides["threshold"], reset_timeout_ms=60_000)
    if "concurrency" in overrides:
        builder.set_concurrency_limit(overrides["concurrency"])
    return builder.build()


def _response(content="", tool_calls=None, total=0) -> ChatResponse:
    return ChatResponse(
        id="resp_1",
        model="llama3.2",
        content=content,
        provider="ollama",
        usage=TokenUsage(total_tokens=total),
        finish_reason="tool_calls" if tool_calls else "stop",
        tool_calls=tool_calls,
    )


def _ndjson(*records) -> str:
    return "\n".join(json.dumps(r) for r in records) + "\n"


async def _weather(args, context):
    return f"Sunny in {args['city']}"


WEATHER = ToolDefinition(
    name="get_weather",
    description="Weather by city",
    parameters={"type": "object", "properties": {"city": {"type": "string"}}},
    execute=_weather,
)


@pytest.fixture
def client():
    return LLMClient(_config())


# ── Construction & provider management ──


def test_invalid_config_rejected():
    with pytest.raises(ConfigError, match="API key required for provider 'openai'"):
        LLMClient(ClientConfig(providers=[ProviderConfig(name="openai")]))


def test_provider_management(client):
    assert client.get_available_providers() == ["ollama", "openai"]
    assert client.get_active_provider_name() == "ollama"
    assert client.has_provider("openai")
    assert not client.has_provider("anthropic")
    assert not client.has_provider("not-a-provider")

    client.set_provider("openai")
    assert client.get_active_provider_name() == "openai"
    assert client.get_provider().name == ProviderName.OPENAI


def test_unknown_provider(client):
    with pytest.raises(ProviderNotConfiguredError, match="Provider 'anthropic' is not configured"):
        client.get_provider("anthropic")
    with pytest.raises(ProviderNotConfiguredError):
        client.set_provider("gemini")


def test_default_model_override_applies_to_default_provider():
    config = ConfigBuilder().add_ollama().add_openai("sk").set_default_model("mistral").build()
    client = create_client(config)
    assert client.get_provider("ollama").config.default_model == "mistral"
    assert client.get_provider("openai").config.default_model == "gpt-4o"


# ── Chat ──


@pytest.mark.asyncio
async def test_chat_over_http(client, http_response):
    data = {
        "model": "llama3.2",
        "message": {"role": "assistant", "content": "hi there"},
        "done": True,
        "prompt_eval_count": 4,
        "eval_count": 6,
    }
    with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock, return_value=http_response(data)):
        resp = await client.chat(ChatRequest(messages=[Message.user("hi")]))
        await client.chat(ChatRequest(messages=[Message.user("again")]))

    assert resp.content == "hi there"
    stats = client.get_stats()
    assert stats["ollama"]["requests"] == 2
    assert stats["ollama"]["total_tokens"] == 20
    assert stats["ollama"]["circuit"] == "closed"
    assert client.get_rate_limit_status()["remaining_requests"] == 998


@pytest.mark.asyncio
async def test_chat_with_routes_to_named_provider(client):
    chat = AsyncMock(return_value=_response("from openai"))
    with patch.object(client.get_provider("openai"), "chat", chat):
        resp = await client.chat_with("openai", ChatRequest(messages=[Message.user("hi")]))
    assert resp.content == "from openai"
    assert client.get_active_provider_name() == "ollama"


@pytest.mark.asyncio
async def test_breaker_opens_and_rejects_without_calling_provider():
    client = LLMClient(_config(threshold=2))
    chat = AsyncMock(side_effect=ProviderError("ollama", "down", 503))

    with patch.object(client.get_provider(), "chat", chat):
        for _ in range(2):
            with pytest.raises(ProviderError):
                await client.chat(ChatRequest(messages=[Message.user("hi")]))
        with pytest.raises(CircuitOpenError):
            await client.chat(ChatRequest(messages=[Message.user("hi")]))

    assert chat.await_count == 2
    assert client.get_circuit_state() == "open"
    assert client.get_circuit_state("openai") == "closed"
    assert client.get_stats()["ollama"]["errors"] == 3

    client.reset("ollama")
    assert client.get_circuit_state() == "closed"


@pytest.mark.asyncio
async def test_caller_errors_do_not_trip_breaker():
    client = LLMClient(_config(threshold=1))
    chat = AsyncMock(side_effect=InvalidRequestError("ollama", "bad schema"))

    with patch.object(client.get_provider(), "chat", chat):
        for _ in range(3):
            with pytest.raises(InvalidRequestError):
                await client.chat(ChatRequest(messages=[Message.user("hi")]))

    assert chat.await_count == 3
    assert client.get_circuit_state() == "closed"


@pytest.mark.asyncio
async def test_concurrency_limit_bounds_in_flight_calls():
    client = LLMClient(_config(concurrency=2))
    in_flight = 0
    peak = 0
    admitted = []

    async def slow_chat(request):
        nonlocal in_flight, peak
        admitted.append(request.messages[0].content)
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.02)
        in_flight -= 1
        return _response("ok")

    with patch.object(client.get_provider(), "chat", AsyncMock(side_effect=slow_chat)):
        results = await asyncio.gather(*(
            client.chat(ChatRequest(messages=[Message.user(str(i))])) for i in range(5)
        ))

    assert len(results) == 5
    assert peak == 2
    assert admitted == ["0", "1", "2", "3", "4"]


@pytest.mark.asyncio
async def test_slot_released_after_failure():
    client = LLMClient(_config(concurrency=1))
    chat = AsyncMock(side_effect=[InvalidRequestError("ollama", "bad"), _response("recovered")])

    with patch.object(client.get_provider(), "chat", chat):
        with pytest.raises(InvalidRequestError):
            await client.chat(ChatRequest(messages=[Message.user("1")]))
        resp = await asyncio.wait_for(client.chat(ChatRequest(messages=[Message.user("2")])), timeout=1)

    assert resp.content == "recovered"


@pytest.mark.asyncio
async def test_unexpected_exception_is_normalized(client):
    with patch.object(client.get_provider(), "chat", AsyncMock(side_effect=KeyError("candidates"))):
        with pytest.raises(LLMError) as exc:
            await client.chat(ChatRequest(messages=[Message.user("hi")]))
    assert exc.value.provider == "ollama"


# ── Streaming ──


@pytest.mark.asyncio
async def test_stream_with_unknown_provider_yields_error(client):
    chunks = [c async for c in client.stream_with("anthropic", ChatRequest(messages=[Message.user("hi")]))]
    assert len(chunks) == 1
    assert chunks[0].type == "error"
    assert "not configured" in chunks[0].error


@pytest.mark.asyncio
async def test_stream_over_http(client, stream_client):
    body = _ndjson(
        {"message": {"content": "Hel"}, "done": False},
        {"message": {"content": "lo"}, "done": True, "prompt_eval_count": 2, "eval_count": 3},
    )
    client.register_provider(OllamaProvider(
        ProviderConfig(name="ollama"), client.config.retry_config, http_client=stream_client(body)
    ))

    chunks = [c async for c in client.stream(ChatRequest(messages=[Message.user("hi")]))]

    assert [c.type for c in chunks] == ["text", "text", "usage", "done"]
    assert client.get_stats()["ollama"]["total_tokens"] == 5
    assert client._semaphore.active_requests == 0


@pytest.mark.asyncio
async def test_stream_closed_early_releases_slot():
    client = LLMClient(_config(concurrency=1))

    async def endless(request):
        while True:
            yield StreamChunk.text("tick")

    with patch.object(client.get_provider(), "stream", endless):
        gen = client.stream(ChatRequest(messages=[Message.user("hi")]))
        first = await gen.__anext__()
        await gen.aclose()

        assert first.content == "tick"
        assert client._semaphore.active_requests == 0
        chunks = client.stream(ChatRequest(messages=[Message.user("again")]))
        assert (await asyncio.wait_for(chunks.__anext__(), timeout=1)).content == "tick"
        await chunks.aclose()


@pytest.mark.asyncio
async def test_stream_with_callbacks_assembles_response(client, stream_client):
    body = _ndjson(
        {"message": {"content": "Looking up"}, "done": False},
        {"message": {"content": "", "tool_calls": [
            {"function": {"name": "get_weather", "arguments": {"city": "Tokyo"}}},
        ]}, "done": False},
        {"message": {"content": ""}, "done": True, "prompt_eval_count": 1, "eval_count": 1},
    )
    client.register_provider(OllamaProvider(
        ProviderConfig(name="ollama"), client.config.retry_config, http_client=stream_client(body)
    ))
    texts, calls = [], []

    resp = await client.stream_with_callbacks(
        ChatRequest(messages=[Message.user("weather?")]),
        StreamCallbacks(on_text=texts.append, on_tool_call=calls.append),
    )

    assert resp.id.startswith("stream_")
    assert resp.content == "Looking up"
    assert resp.finish_reason == "tool_calls"
    assert resp.tool_calls[0].arguments == {"city": "Tokyo"}
    assert resp.usage.total_tokens == 2
    assert texts == ["Looking up"]
    assert [c.name for c in calls] == ["get_weather"]


@pytest.mark.asyncio
async def test_stream_with_callbacks_error_raises(client):
    async def failing_stream(request):
        yield StreamChunk.text("partial")
        yield StreamChunk.failure("connection reset")

    errors = []
    with patch.object(client.get_provider(), "stream", failing_stream):
        with pytest.raises(ProviderError, match="connection reset"):
            await client.stream_with_callbacks(
                ChatRequest(messages=[Message.user("hi")]), StreamCallbacks(on_error=errors.append)
            )
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_stream_with_callbacks_cancel(client):
    async def long_stream(request):
        for word in ("one", "two", "three"):
            yield StreamChunk.text(word)
        yield StreamChunk.done()

    token = CancelToken()

    def on_text(text):
        token.cancel()

    with patch.object(client.get_provider(), "stream", long_stream):
        resp = await client.stream_with_callbacks(
            ChatRequest(messages=[Message.user("hi")]), StreamCallbacks(on_text=on_text), cancel=token
        )

    assert resp.content == "one"
    assert resp.finish_reason == "stop"
    assert client._semaphore.active_requests == 0


# ── Tools ──


@pytest.mark.asyncio
async def test_execute_tools_isolates_failures(client):
    async def explode(args, context):
        raise RuntimeError("disk full")

    tools = [
        WEATHER,
        ToolDefinition(name="write_file", description="write", execute=explode),
        ToolDefinition(name="advertised_only", description="no executor"),
    ]
    response = _response(tool_calls=[
        ToolCall(id="c1", name="write_file", arguments={}),
        ToolCall(id="c2", name="missing", arguments={}),
        ToolCall(id="c3", name="advertised_only", arguments={}),
        ToolCall(id="c4", name="get_weather", arguments={"city": "Oslo"}),
    ])

    results = await client.execute_tools(response, tools)

    assert [r.tool_call_id for r in results] == ["c1", "c2", "c3", "c4"]
    assert results[0].is_error and results[0].result == "Error: disk full"
    assert results[1].is_error and results[1].result == "Error: Tool 'missing' not found or has no executor"
    assert results[2].is_error and results[2].result == "Error: Tool 'advertised_only' not found or has no executor"
    assert not results[3].is_error and results[3].result == "Sunny in Oslo"


@pytest.mark.asyncio
async def test_execute_tools_passes_context(client):
    seen = {}

    async def whoami(args, context):
        seen.update(context)
        return "ok"

    response = _response(tool_calls=[ToolCall(id="c1", name="whoami")])
    await client.execute_tools(response, [ToolDefinition(name="whoami", description="", execute=whoami)],
                               {"session_id": "s-1"})
    assert seen == {"session_id": "s-1"}


# ── Agent loop ──


@pytest.mark.asyncio
async def test_agent_loop_single_tool_round(client):
    chat = AsyncMock(side_effect=[
        _response(tool_calls=[ToolCall(id="call_1", name="get_weather", arguments={"city": "Tokyo"})]),
        _response("It is sunny in Tokyo."),
    ])
    tool_calls, tool_results, iterations = [], [], []

    with patch.object(client.get_provider(), "chat", chat):
        resp = await client.run_agent_loop(
            ChatRequest(messages=[Message.user("Weather in Tokyo?")]),
            [WEATHER],
            on_tool_call=lambda name, args: tool_calls.append((name, args)),
            on_tool_result=lambda name, result: tool_results.append((name, result)),
            on_iteration=lambda i, r: iterations.append(i),
        )

    assert resp.content == "It is sunny in Tokyo."
    assert chat.await_count == 2
    assert tool_calls == [("get_weather", {"city": "Tokyo"})]
    assert tool_results == [("get_weather", "Sunny in Tokyo")]
    assert iterations == [0, 1]

    second = chat.await_args_list[1].args[0]
    assert [m.role for m in second.messages] == ["user", "assistant", "tool"]
    assert second.messages[1].tool_calls[0].id == "call_1"
    assert second.messages[2].tool_call_id == "call_1"
    assert second.messages[2].name == "get_weather"
    assert second.messages[2].content == "Sunny in Tokyo"
    assert second.tools == [WEATHER]


@pytest.mark.asyncio
async def test_agent_loop_max_iterations(client):
    looping = _response("thinking", tool_calls=[ToolCall(id="c", name="get_weather", arguments={"city": "Rome"})])
    chat = AsyncMock(return_value=looping)

    with patch.object(client.get_provider(), "chat", chat):
        resp = await client.run_agent_loop(
            ChatRequest(messages=[Message.user("loop")]), [WEATHER], max_iterations=3
        )

    assert chat.await_count == 3
    assert resp.content == "thinking" + MAX_ITERATIONS_SUFFIX
    assert resp.content.endswith("\n\n[Max iterations reached]")


@pytest.mark.asyncio
async def test_agent_loop_rejects_zero_iterations(client):
    with pytest.raises(ValueError):
        await client.run_agent_loop(ChatRequest(messages=[Message.user("x")]), [WEATHER], max_iterations=0)


@pytest.mark.asyncio
async def test_agent_loop_propagates_chat_errors(client):
    with patch.object(client.get_provider(), "chat", AsyncMock(side_effect=InvalidRequestError("ollama", "bad"))):
        with pytest.raises(InvalidRequestError):
            await client.run_agent_loop(ChatRequest(messages=[Message.user("x")]), [WEATHER])


@pytest.mark.asyncio
async def test_streaming_agent_loop(client):
    turns = []

    async def fake_stream(request):
        turns.append(request)
        if len(turns) == 1:
            yield StreamChunk.text("Let me check. ")
            yield StreamChunk.of_tool_call(ToolCall(id="c1", name="get_weather", arguments={"city": "Tokyo"}))
            yield StreamChunk.done()
        else:
            yield StreamChunk.text("Sunny.")
            yield StreamChunk.done()

    with patch.object(client.get_provider(), "stream", fake_stream):
        events = [e async for e in client.run_agent_loop_streaming(
            ChatRequest(messages=[Message.user("Weather?")]), [WEATHER]
        )]

    assert [e.type for e in events] == ["text", "tool_call", "tool_result", "text", "done"]
    assert events[1].tool_name == "get_weather"
    assert events[1].tool_args == {"city": "Tokyo"}
    assert events[2].tool_result == "Sunny in Tokyo"
    assert not events[-1].is_error
    assert [m.role for m in turns[1].messages] == ["user", "assistant", "tool"]
    assert turns[1].messages[1].content == "Let me check. "


@pytest.mark.asyncio
async def test_streaming_agent_loop_error(client):
    async def broken_stream(request):
        yield StreamChunk.text("Hmm")
        yield StreamChunk.failure("Cannot connect to Ollama. Is it running?")

    with patch.object(client.get_provider(), "stream", broken_stream):
        events = [e async for e in client.run_agent_loop_streaming(
            ChatRequest(messages=[Message.user("hi")]), [WEATHER]
        )]

    assert [e.type for e in events] == ["text", "done"]
    assert events[-1].is_error
    assert events[-1].content == "Cannot connect to Ollama. Is it running?"


@pytest.mark.asyncio
async def test_streaming_agent_loop_max_iterations(client):
    async def always_tools(request):
        yield StreamChunk.of_tool_call(ToolCall(id="c", name="get_weather", arguments={"city": "Rome"}))
        yield StreamChunk.done()

    with patch.object(client.get_provider(), "stream", always_tools):
        events = [e async for e in client.run_agent_loop_streaming(
            ChatRequest(messages=[Message.user("loop")]), [WEATHER], max_iterations=2
        )]

    assert [e.type for e in events].count("tool_call") == 2
    assert events[-1].type == "done"
    assert events[-1].content == "[Max iterations reached]"


# ── Convenience & utilities ──


@pytest.mark.asyncio
async def test_ask_helpers(client):
    chat = AsyncMock(return_value=_response("42"))
    with patch.object(client.get_provider(), "chat", chat):
        assert await client.ask("meaning?", temperature=0) == "42"
        assert await client.ask_with_system("Be terse.", "meaning?") == "42"
        resp = await client.complete([Message.user("a"), Message.assistant("b"), Message.user("c")])

    assert resp.content == "42"
    first, second, third = (c.args[0] for c in chat.await_args_list)
    assert first.temperature == 0
    assert second.system_prompt == "Be terse."
    assert len(third.messages) == 3


@pytest.mark.asyncio
async def test_utilities(client):
    assert await client.count_tokens("abcdefgh") == 2
    assert "llama3.2" in [m.id for m in client.get_models()]
    assert "gpt-4o" in [m.id for m in client.get_models("openai")]


@pytest.mark.asyncio
async def test_async_context_manager_closes_providers():
    client = LLMClient(_config())
    close = AsyncMock()
    with patch.object(client.get_provider(), "close", close):
        async with client:
            pass
    close.assert_awaited_once()
