"""OpenAI Chat Completions adapter."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx
from loguru import logger

from devmind.llm.errors import ProviderError
from devmind.llm.providers.base import BaseProvider, generate_response_id, generate_tool_call_id
from devmind.llm.types import (
    ChatRequest,
    ChatResponse,
    ContentPart,
    FinishReason,
    Message,
    ProviderName,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolChoice,
    ToolDefinition,
)
from devmind.llm.utils.streaming import parse_sse

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def is_reasoning_model(model: str) -> bool:
    """o1-family models reject system prompts, temperature and tools."""
    return model.startswith("o1")


class OpenAIProvider(BaseProvider):
    name = ProviderName.OPENAI

    def endpoint(self, model: str, stream: bool) -> str:
        return f"{self.base_url}/chat/completions"

    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }

    # ── Request building ──────────────────────────────────────────

    def build_request_body(self, request: ChatRequest, model: str, stream: bool) -> dict[str, Any]:
        reasoning = is_reasoning_model(model)
        body: dict[str, Any] = {
            "model": model,
            "messages": self.convert_messages(request, reasoning),
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}

        if reasoning:
            if request.max_tokens is not None:
                body["max_completion_tokens"] = request.max_tokens
            return body

        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.stop_sequences:
            body["stop"] = request.stop_sequences

        if request.tools:
            body["tools"] = self.convert_tools(request.tools)
            if request.tool_choice:
                body["tool_choice"] = self._convert_tool_choice(request.tool_choice)

        fmt = request.response_format
        if fmt and fmt.type == "json_object":
            body["response_format"] = {"type": "json_object"}
        elif fmt and fmt.type == "json_schema":
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": fmt.schema or {}},
            }
        return body

    def convert_messages(self, request: ChatRequest, reasoning: bool = False) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        system_prompt = self.extract_system_prompt(request)
        conversation = self.filter_non_system_messages(request.messages)

        if system_prompt and not reasoning:
            result.append({"role": "system", "content": system_prompt})

        folded = False
        for message in conversation:
            converted = self._convert_message(message)
            if reasoning and system_prompt and not folded and message.role == "user":
                # No system role for o1: prefix the first user turn instead
                converted["content"] = f"{system_prompt}\n\n{message.text()}"
                folded = True
            result.append(converted)
        return result

    def _convert_message(self, message: Message) -> dict[str, Any]:
        if message.role == "tool":
            return {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.text()}

        if message.role == "assistant" and message.tool_calls:
            return {
                "role": "assistant",
                "content": message.text() or None,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                    }
                    for tc in message.tool_calls
                ],
            }

        converted: dict[str, Any] = {"role": message.role}
        if isinstance(message.content, str):
            converted["content"] = message.content
        else:
            converted["content"] = [_convert_part(part) for part in message.content]
        if message.name:
            converted["name"] = message.name
        return converted

    def convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [{"type": "function", "function": tool.to_schema()} for tool in tools]

    @staticmethod
    def _convert_tool_choice(choice: ToolChoice) -> Any:
        if isinstance(choice, dict) and choice.get("name"):
            return {"type": "function", "function": {"name": choice["name"]}}
        return choice if choice in ("none", "auto", "required") else "auto"

    # ── Response parsing ──────────────────────────────────────────

    def parse_response(self, data: dict[str, Any], model: str) -> ChatResponse:
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}

        tool_calls = [
            ToolCall(
                id=tc.get("id") or generate_tool_call_id(),
                name=(tc.get("function") or {}).get("name", ""),
                arguments=_parse_arguments((tc.get("function") or {}).get("arguments")),
            )
            for tc in message.get("tool_calls") or []
        ]

        return ChatResponse(
            id=data.get("id") or generate_response_id(),
            model=data.get("model") or model,
            content=message.get("content") or "",
            provider=self.name.value,
            usage=_usage(data.get("usage")),
            finish_reason=self.map_finish_reason(choice.get("finish_reason"), _FINISH_REASONS),
            tool_calls=tool_calls or None,
        )

    async def parse_stream(self, response: httpx.Response, model: str) -> AsyncIterator[StreamChunk]:
        # index -> {"id", "name", "arguments": [raw fragments]}
        buffers: dict[int, dict[str, Any]] = {}
        usage: TokenUsage | None = None

        async for data in parse_sse(response):
            if data.get("error"):
                raise self._error_from_event(data["error"])

            for choice in data.get("choices") or []:
                delta = choice.get("delta") or {}
                if delta.get("content"):
                    yield StreamChunk.text(delta["content"])
                for tc in delta.get("tool_calls") or []:
                    buf = buffers.setdefault(tc.get("index", 0), {"id": None, "name": None, "arguments": []})
                    if tc.get("id"):
                        buf["id"] = tc["id"]
                    fn = tc.get("function") or {}
                    if fn.get("name"):
                        buf["name"] = fn["name"]
                    if fn.get("arguments"):
                        buf["arguments"].append(fn["arguments"])

            if data.get("usage"):
                usage = _usage(data["usage"])

        for index in sorted(buffers):
            buf = buffers[index]
            if not buf["name"]:
                continue
            yield StreamChunk.of_tool_call(ToolCall(
                id=buf["id"] or generate_tool_call_id(),
                name=buf["name"],
                arguments=_parse_arguments("".join(buf["arguments"])),
            ))
        if usage:
            yield StreamChunk.of_usage(usage)

    def _error_from_event(self, error: Any) -> ProviderError:
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
        return ProviderError(self.name.value, message)


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError, ValueError):
        logger.warning(f"openai: could not parse tool arguments: {str(raw)[:200]}")
        return {}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _convert_part(part: ContentPart) -> dict[str, Any]:
    if part.type == "image":
        if part.image_base64:
            url = f"data:{part.mime_type or 'image/jpeg'};base64,{part.image_base64}"
        else:
            url = part.image_url or ""
        return {"type": "image_url", "image_url": {"url": url}}
    return {"type": "text", "text": part.text or ""}


def _usage(raw: dict[str, Any] | None) -> TokenUsage:
    if not raw:
        return TokenUsage()
    details = raw.get("completion_tokens_details") or {}
    return TokenUsage(
        prompt_tokens=raw.get("prompt_tokens", 0),
        completion_tokens=raw.get("completion_tokens", 0),
        total_tokens=raw.get("total_tokens", 0),
        thinking_tokens=details.get("reasoning_tokens"),
    )
