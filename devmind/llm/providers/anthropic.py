"""Anthropic Messages API adapter."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx
from loguru import logger

from devmind.llm.errors import ProviderError, RateLimitError
from devmind.llm.providers.base import BaseProvider, generate_response_id
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

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_FINISH_REASONS = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.CONTENT_FILTER,
}


class AnthropicProvider(BaseProvider):
    name = ProviderName.ANTHROPIC

    def endpoint(self, model: str, stream: bool) -> str:
        return f"{self.base_url}/messages"

    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    # ── Request building ──────────────────────────────────────────

    def build_request_body(self, request: ChatRequest, model: str, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": [self._convert_message(m) for m in self.filter_non_system_messages(request.messages)],
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": stream,
        }
        system_prompt = self.extract_system_prompt(request)
        if system_prompt:
            body["system"] = system_prompt
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.top_k is not None:
            body["top_k"] = request.top_k
        if request.stop_sequences:
            body["stop_sequences"] = request.stop_sequences
        if request.tools:
            body["tools"] = self.convert_tools(request.tools)
            if request.tool_choice:
                body["tool_choice"] = self._convert_tool_choice(request.tool_choice)
        return body

    def _convert_message(self, message: Message) -> dict[str, Any]:
        if message.role == "tool":
            return {
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.text(),
                }],
            }

        role = "assistant" if message.role == "assistant" else "user"

        if message.role == "assistant" and message.tool_calls:
            content: list[dict[str, Any]] = []
            if message.text():
                content.append({"type": "text", "text": message.text()})
            content += [
                {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
                for tc in message.tool_calls
            ]
            return {"role": role, "content": content}

        if isinstance(message.content, str):
            return {"role": role, "content": message.content}
        return {"role": role, "content": [_convert_part(p) for p in message.content]}

    def convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "input_schema": t.parameters}
            for t in tools
        ]

    @staticmethod
    def _convert_tool_choice(choice: ToolChoice) -> dict[str, Any]:
        if isinstance(choice, dict) and choice.get("name"):
            return {"type": "tool", "name": choice["name"]}
        return {"type": {"none": "none", "auto": "auto", "required": "any"}.get(str(choice), "auto")}

    # ── Response parsing ──────────────────────────────────────────

    def parse_response(self, data: dict[str, Any], model: str) -> ChatResponse:
        text: list[str] = []
        thinking: list[str] = []
        tool_calls: list[ToolCall] = []

        for block in data.get("content") or []:
            kind = block.get("type")
            if kind == "text":
                text.append(block.get("text", ""))
            elif kind == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.get("id", ""), name=block.get("name", ""), arguments=block.get("input") or {}
                ))
            elif kind == "thinking":
                thinking.append(block.get("thinking", ""))

        raw_usage = data.get("usage") or {}
        prompt = raw_usage.get("input_tokens", 0)
        completion = raw_usage.get("output_tokens", 0)

        return ChatResponse(
            id=data.get("id") or generate_response_id(),
            model=data.get("model") or model,
            content="".join(text),
            provider=self.name.value,
            usage=TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion),
            finish_reason=self.map_finish_reason(data.get("stop_reason"), _FINISH_REASONS),
            tool_calls=tool_calls or None,
            thinking="".join(thinking) or None,
        )

    async def parse_stream(self, response: httpx.Response, model: str) -> AsyncIterator[StreamChunk]:
        usage = TokenUsage()
        # content block index -> {"id", "name", "json": [partial_json fragments]}
        blocks: dict[int, dict[str, Any]] = {}

        async for event in parse_sse(response):
            kind = event.get("type")

            if kind == "message_start":
                raw = (event.get("message") or {}).get("usage") or {}
                usage.prompt_tokens = raw.get("input_tokens", 0)
                usage.total_tokens = usage.prompt_tokens + usage.completion_tokens

            elif kind == "content_block_start":
                block = event.get("content_block") or {}
                if block.get("type") == "tool_use":
                    blocks[event.get("index", 0)] = {"id": block.get("id"), "name": block.get("name"), "json": []}

            elif kind == "content_block_delta":
                delta = event.get("delta") or {}
                dtype = delta.get("type")
                if dtype == "text_delta" and delta.get("text"):
                    yield StreamChunk.text(delta["text"])
                elif dtype == "thinking_delta" and delta.get("thinking"):
                    yield StreamChunk.thinking(delta["thinking"])
                elif dtype == "input_json_delta":
                    buf = blocks.get(event.get("index", 0))
                    if buf is not None:
                        buf["json"].append(delta.get("partial_json", ""))

            elif kind == "content_block_stop":
                buf = blocks.pop(event.get("index", 0), None)
                if buf is not None:
                    yield StreamChunk.of_tool_call(ToolCall(
                        id=buf["id"] or "", name=buf["name"] or "", arguments=_parse_input("".join(buf["json"]))
                    ))

            elif kind == "message_delta":
                raw = event.get("usage") or {}
                if "output_tokens" in raw:
                    usage.completion_tokens = raw["output_tokens"]
                    usage.total_tokens = usage.prompt_tokens + usage.completion_tokens

            elif kind == "message_stop":
                yield StreamChunk.of_usage(usage)
                return

            elif kind == "error":
                err = event.get("error") or {}
                if err.get("type") == "overloaded_error":
                    raise ProviderError(self.name.value, err.get("message", "overloaded"), 529)
                if err.get("type") == "rate_limit_error":
                    raise RateLimitError(self.name.value)
                raise ProviderError(self.name.value, err.get("message", "stream error"))

        # Connection closed without message_stop
        yield StreamChunk.of_usage(usage)


def _parse_input(raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        logger.warning(f"anthropic: could not parse tool input: {raw[:200]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _convert_part(part: ContentPart) -> dict[str, Any]:
    if part.type == "image":
        if part.image_base64:
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": part.mime_type or "image/jpeg", "data": part.image_base64},
            }
        if part.image_url:
            return {"type": "image", "source": {"type": "url", "url": part.image_url}}
        return {"type": "text", "text": "[Image]"}
    return {"type": "text", "text": part.text or ""}
