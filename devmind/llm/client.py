"""LLM client — one entry point over every configured provider.

Call path for ``chat``::

    global concurrency slot → provider rate limiter → circuit breaker → adapter

``stream`` takes the same slot and rate-limit token but bypasses the
circuit breaker. The client also executes tools and runs the agentic
tool-call loop (single-shot and streaming).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

from loguru import logger

from devmind.llm.concurrency import ConcurrencySemaphore
from devmind.llm.config import DEFAULT_RATE_LIMITS, ClientConfig, ConfigError, RateLimitConfig, validate_config
from devmind.llm.errors import (
    ErrorCode,
    LLMError,
    ProviderError,
    ProviderNotConfiguredError,
    normalize_error,
)
from devmind.llm.providers import PROVIDER_CLASSES, BaseProvider
from devmind.llm.types import (
    AgentEvent,
    CancelToken,
    ChatRequest,
    ChatResponse,
    FinishReason,
    Message,
    ModelInfo,
    ProviderName,
    StreamCallbacks,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolContext,
    ToolDefinition,
    ToolResult,
)
from devmind.llm.utils.rate_limit import CombinedRateLimiter
from devmind.llm.utils.retry import CircuitBreaker
from devmind.llm.utils.streaming import StreamProcessor

MAX_ITERATIONS_SUFFIX = "\n\n[Max iterations reached]"

# Errors caused by the request itself; the provider answered, so they do not trip the breaker
_CALLER_ERRORS = frozenset({
    ErrorCode.INVALID_REQUEST,
    ErrorCode.CONTEXT_LENGTH_EXCEEDED,
    ErrorCode.CONTENT_FILTERED,
    ErrorCode.MODEL_NOT_FOUND,
})


def _trips_breaker(error: BaseException) -> bool:
    if isinstance(error, LLMError):
        return error.code not in _CALLER_ERRORS
    return True


@dataclass
class _ProviderSlot:
    """A registered adapter plus the resilience state that guards it."""

    provider: BaseProvider
    limiter: CombinedRateLimiter
    breaker: CircuitBreaker
    requests: int = 0
    errors: int = 0
    total_latency_ms: int = 0
    total_tokens: int = 0


class LLMClient:
    """Multi-provider LLM client.

    Usage::

        client = LLMClient(create_config(gemini_key="AI...", ollama_url=""))
        resp = await client.chat(ChatRequest(messages=[Message.user("Hi")]))
        async for chunk in client.stream_with("ollama", request):
            ...
    """

    def __init__(self, config: ClientConfig) -> None:
        errors = validate_config(config)
        if errors:
            raise ConfigError(errors)

        self.config = config
        self._slots: dict[ProviderName, _ProviderSlot] = {}
        self._semaphore = ConcurrencySemaphore(config.concurrency_limit)

        default = config.resolved_default_provider()
        for provider_config in config.providers:
            if config.default_model and provider_config.name == default:
                provider_config = provider_config.model_copy(update={"default_model": config.default_model})
            try:
                adapter = PROVIDER_CLASSES[provider_config.name](
                    provider_config, config.retry_config, config.debug
                )
            except LLMError as e:
                logger.error(f"LLMClient: failed to initialize provider '{provider_config.name.value}': {e}")
                continue
            self.register_provider(adapter, provider_config.rate_limit)

        if default not in self._slots:
            raise ConfigError([f"Default provider '{default.value}' not found"])
        self._active = default
        logger.info(
            f"LLMClient initialized with providers: {[p.value for p in self._slots]} "
            f"(active: {self._active.value})"
        )

    # ── Provider management ───────────────────────────────────────

    def register_provider(self, provider: BaseProvider, rate_limit: RateLimitConfig | None = None) -> None:
        """Add (or replace) an adapter with fresh limiter and breaker state."""
        cb = self.config.circuit_breaker
        self._slots[provider.name] = _ProviderSlot(
            provider=provider,
            limiter=CombinedRateLimiter(rate_limit or DEFAULT_RATE_LIMITS[provider.name]),
            breaker=CircuitBreaker(
                cb.failure_threshold, cb.reset_timeout_ms, provider.name.value, _trips_breaker
            ),
        )
        logger.debug(f"LLMClient: registered provider '{provider.name.value}' → {provider.base_url}")

    def set_provider(self, name: ProviderName | str) -> None:
        self._active = self._slot(name).provider.name

    def get_provider(self, name: ProviderName | str | None = None) -> BaseProvider:
        return self._slot(name).provider

    def get_active_provider_name(self) -> str:
        return self._active.value

    def get_available_providers(self) -> list[str]:
        return [name.value for name in self._slots]

    def has_provider(self, name: ProviderName | str) -> bool:
        try:
            return ProviderName(name) in self._slots
        except ValueError:
            return False

    def _slot(self, name: ProviderName | str | None = None) -> _ProviderSlot:
        if name is None:
            return self._slots[self._active]
        try:
            slot = self._slots.get(ProviderName(name))
        except ValueError:
            slot = None
        if slot is None:
            raise ProviderNotConfiguredError(str(getattr(name, "value", name)), self.get_available_providers())
        return slot

    # ── Chat ──────────────────────────────────────────────────────

    async def chat(self, request: ChatRequest) -> ChatResponse:
        return await self.chat_with(self._active, request)

    async def chat_with(self, provider: ProviderName | str, request: ChatRequest) -> ChatResponse:
        slot = self._slot(provider)
        name = slot.provider.name.value

        await self._semaphore.acquire()
        t0 = time.monotonic()
        try:
            await slot.limiter.acquire(slot.provider.estimate_request_tokens(request))
            response = await slot.breaker.execute(lambda: slot.provider.chat(request))
        except LLMError:
            slot.errors += 1
            raise
        except Exception as e:
            slot.errors += 1
            raise normalize_error(e, name) from e
        finally:
            self._semaphore.release()

        slot.requests += 1
        slot.total_latency_ms += int((time.monotonic() - t0) * 1000)
        slot.total_tokens += response.usage.total_tokens
        return response

    # ── Streaming ─────────────────────────────────────────────────

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        chunks = self.stream_with(self._active, request)
        try:
            async for chunk in chunks:
                yield chunk
        finally:
            await chunks.aclose()

    async def stream_with(
        self, provider: ProviderName | str, request: ChatRequest
    ) -> AsyncIterator[StreamChunk]:
        """Stream from one provider. Never raises; failures arrive as an ``error`` chunk.

        The concurrency slot is held until the stream ends or the generator is closed.
        """
        try:
            slot = self._slot(provider)
        except LLMError as e:
            yield StreamChunk.failure(e.message)
            return

        await self._semaphore.acquire()
        try:
            try:
                await slot.limiter.acquire(slot.provider.estimate_request_tokens(request))
            except Exception as e:
                yield StreamChunk.failure(normalize_error(e, slot.provider.name.value).message)
                return

            slot.requests += 1
            chunks = slot.provider.stream(request)
            try:
                async for chunk in chunks:
                    if chunk.type == "usage" and chunk.usage:
                        slot.total_tokens += chunk.usage.total_tokens
                    elif chunk.type == "error":
                        slot.errors += 1
                    yield chunk
            finally:
                await chunks.aclose()
        finally:
            self._semaphore.release()

    async def stream_with_callbacks(
        self,
        request: ChatRequest,
        callbacks: StreamCallbacks | None = None,
        cancel: CancelToken | None = None,
        provider: ProviderName | str | None = None,
    ) -> ChatResponse:
        """Consume a stream through callbacks and return the assembled response.

        ``cancel`` is checked once per received chunk. A terminal ``error``
        chunk raises :class:`ProviderError` after ``on_error`` is called.
        """
        slot = self._slot(provider)
        processor = StreamProcessor(callbacks)

        stream = self.stream_with(slot.provider.name, request)
        try:
            async for chunk in stream:
                if cancel is not None and cancel.cancelled:
                    break
                processor.process_chunk(chunk)
        finally:
            await stream.aclose()

        if processor.get_error():
            raise ProviderError(slot.provider.name.value, processor.get_error(), retryable=False)

        tool_calls = processor.get_tool_calls()
        return ChatResponse(
            id=f"stream_{int(time.time() * 1000)}",
            model=slot.provider.get_model(request),
            content=processor.get_text(),
            provider=slot.provider.name.value,
            usage=processor.get_usage() or TokenUsage(),
            finish_reason=FinishReason.TOOL_CALLS.value if tool_calls else FinishReason.STOP.value,
            tool_calls=tool_calls or None,
            thinking=processor.get_thinking() or None,
        )

    # ── Tools ─────────────────────────────────────────────────────

    async def execute_tools(
        self,
        response: ChatResponse,
        tools: list[ToolDefinition],
        context: ToolContext | None = None,
    ) -> list[ToolResult]:
        """Run every tool call in ``response``; one failing tool never stops the rest."""
        return await self._run_tools(response.tool_calls or [], tools, context)

    async def _run_tools(
        self, calls: list[ToolCall], tools: list[ToolDefinition], context: ToolContext | None
    ) -> list[ToolResult]:
        by_name = {tool.name: tool for tool in tools}
        return [await self._run_tool(call, by_name.get(call.name), context) for call in calls]

    @staticmethod
    async def _run_tool(
        call: ToolCall, tool: ToolDefinition | None, context: ToolContext | None
    ) -> ToolResult:
        if tool is None or tool.execute is None:
            logger.warning(f"Tool '{call.name}' requested but not available")
            return ToolResult(
                tool_call_id=call.id,
                result=f"Error: Tool '{call.name}' not found or has no executor",
                is_error=True,
            )
        try:
            output = await tool.execute(call.arguments, context)
        except Exception as e:
            logger.warning(f"Tool '{call.name}' failed: {e}")
            return ToolResult(tool_call_id=call.id, result=f"Error: {e}", is_error=True)
        return ToolResult(tool_call_id=call.id, result=str(output))

    # ── Agent loops ───────────────────────────────────────────────

    async def run_agent_loop(
        self,
        request: ChatRequest,
        tools: list[ToolDefinition],
        *,
        max_iterations: int = 10,
        context: ToolContext | None = None,
        on_tool_call: Optional[Callable[[str, dict[str, Any]], None]] = None,
        on_tool_result: Optional[Callable[[str, str], None]] = None,
        on_iteration: Optional[Callable[[int, ChatResponse], None]] = None,
    ) -> ChatResponse:
        """Call the model, run the tools it asks for, feed results back, repeat.

        Stops when a turn requests no tools. After ``max_iterations`` tool
        turns the last response is returned with a ``[Max iterations reached]``
        suffix; exhaustion is not an error.
        """
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

        messages = list(request.messages)
        last: ChatResponse | None = None

        for iteration in range(max_iterations):
            response = await self.chat(request.with_changes(messages=list(messages), tools=tools or None))
            last = response
            if on_iteration:
                on_iteration(iteration, response)

            if not response.tool_calls:
                return response

            messages.append(Message.assistant(response.content, list(response.tool_calls)))
            for call in response.tool_calls:
                if on_tool_call:
                    on_tool_call(call.name, call.arguments)

            results = await self.execute_tools(response, tools, context)
            for call, result in zip(response.tool_calls, results):
                if on_tool_result:
                    on_tool_result(call.name, result.result)
                messages.append(Message.tool(result, name=call.name))

        logger.warning(f"Agent loop stopped after {max_iterations} iterations")
        last.content = last.content + MAX_ITERATIONS_SUFFIX
        return last

    async def run_agent_loop_streaming(
        self,
        request: ChatRequest,
        tools: list[ToolDefinition],
        *,
        max_iterations: int = 10,
        context: ToolContext | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Streaming agent loop yielding text, tool_call, tool_result and done events.

        The stream pauses while tools run. A stream error ends the loop with a
        ``done`` event carrying the error text and ``is_error=True``.
        """
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

        messages = list(request.messages)

        for _ in range(max_iterations):
            text: list[str] = []
            tool_calls: list[ToolCall] = []

            turn = self.stream(request.with_changes(messages=list(messages), tools=tools or None))
            try:
                async for chunk in turn:
                    if chunk.type == "text" and chunk.content:
                        text.append(chunk.content)
                        yield AgentEvent(type="text", content=chunk.content)
                    elif chunk.type == "tool_call" and chunk.tool_call and chunk.tool_call.name:
                        tool_calls.append(chunk.tool_call)
                        yield AgentEvent(
                            type="tool_call", tool_name=chunk.tool_call.name, tool_args=chunk.tool_call.arguments
                        )
                    elif chunk.type == "error":
                        yield AgentEvent(type="done", content=chunk.error, is_error=True)
                        return
            finally:
                await turn.aclose()

            if not tool_calls:
                yield AgentEvent(type="done")
                return

            messages.append(Message.assistant("".join(text), tool_calls))
            results = await self._run_tools(tool_calls, tools, context)
            for call, result in zip(tool_calls, results):
                yield AgentEvent(
                    type="tool_result", tool_name=call.name, tool_result=result.result, is_error=result.is_error
                )
                messages.append(Message.tool(result, name=call.name))

        logger.warning(f"Streaming agent loop stopped after {max_iterations} iterations")
        yield AgentEvent(type="done", content=MAX_ITERATIONS_SUFFIX.strip())

    # ── Utilities ─────────────────────────────────────────────────

    async def count_tokens(self, text: str, model: str | None = None) -> int:
        return await self._slot().provider.count_tokens(text, model)

    async def validate_api_key(self, provider: ProviderName | str | None = None) -> bool:
        return await self._slot(provider).provider.validate_api_key()

    def get_models(self, provider: ProviderName | str | None = None) -> list[ModelInfo]:
        return self._slot(provider).provider.models

    async def list_models(self, provider: ProviderName | str | None = None) -> list[ModelInfo]:
        return await self._slot(provider).provider.list_models()

    def get_rate_limit_status(self, provider: ProviderName | str | None = None) -> dict[str, Any]:
        return self._slot(provider).limiter.get_status()

    def get_circuit_state(self, provider: ProviderName | str | None = None) -> str:
        return self._slot(provider).breaker.get_state()

    def reset(self, provider: ProviderName | str | None = None) -> None:
        """Reset breaker and limiter state for one provider, or for all of them."""
        slots = [self._slot(provider)] if provider is not None else list(self._slots.values())
        for slot in slots:
            slot.breaker.reset()
            slot.limiter.reset()

    def get_stats(self) -> dict[str, dict[str, Any]]:
        """Per-provider stats (requests, errors, avg latency, tokens, breaker state)."""
        return {
            name.value: {
                "requests": s.requests,
                "errors": s.errors,
                "avg_latency_ms": int(s.total_latency_ms / max(s.requests, 1)),
                "total_tokens": s.total_tokens,
                "circuit": s.breaker.get_state(),
            }
            for name, s in self._slots.items()
        }

    # ── Convenience ───────────────────────────────────────────────

    async def ask(self, prompt: str, **options: Any) -> str:
        response = await self.chat(ChatRequest(messages=[Message.user(prompt)], **options))
        return response.content

    async def ask_with_system(self, system_prompt: str, user_prompt: str, **options: Any) -> str:
        response = await self.chat(
            ChatRequest(messages=[Message.user(user_prompt)], system_prompt=system_prompt, **options)
        )
        return response.content

    async def complete(self, messages: list[Message], **options: Any) -> ChatResponse:
        return await self.chat(ChatRequest(messages=list(messages), **options))

    # ── Lifecycle ─────────────────────────────────────────────────

    async def close(self) -> None:
        for slot in self._slots.values():
            await slot.provider.close()

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


def create_client(config: ClientConfig) -> LLMClient:
    return LLMClient(config)
