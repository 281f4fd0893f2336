"""Ollama adapter (local models, NDJSON streaming, no auth)."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Callable, Optional

import httpx

from devmind.llm.errors import ErrorCode, InvalidRequestError, LLMError, ProviderError
from devmind.llm.providers.base import BaseProvider, generate_response_id, generate_tool_call_id
from devmind.llm.types import (
    ChatRequest,
    ChatResponse,
    FinishReason,
    Message,
    ModelInfo,
    ProviderName,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)
from devmind.llm.utils.streaming import parse_ndjson

CONNECT_ERROR_MESSAGE = "Cannot connect to Ollama. Is it running?"


class OllamaProvider(BaseProvider):
    name = ProviderName.OLLAMA
    requires_api_key = False

    def endpoint(self, model: str, stream: bool) -> str:
        return f"{self.base_url}/api/chat"

    # ── Request building ──────────────────────────────────────────

    def build_request_body(self, request: ChatRequest, model: str, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": self.convert_messages(request),
            "stream": stream,
        }
        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.top_p is not None:
            options["top_p"] = request.top_p
        if request.top_k is not None:
            options["top_k"] = request.top_k
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if request.stop_sequences:
            options["stop"] = request.stop_sequences
        if options:
            body["options"] = options

        if request.tools:
            body["tools"] = self.convert_tools(request.tools)

        fmt = request.response_format
        if fmt and fmt.type == "json_object":
            body["format"] = "json"
        elif fmt and fmt.type == "json_schema" and fmt.schema:
            body["format"] = fmt.schema
        return body

    def convert_messages(self, request: ChatRequest) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        system_prompt = self.extract_system_prompt(request)
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages += [self._convert_message(m) for m in self.filter_non_system_messages(request.messages)]
        return messages

    @staticmethod
    def _convert_message(message: Message) -> dict[str, Any]:
        if message.role == "tool":
            return {"role": "tool", "content": message.text()}

        if message.role == "assistant" and message.tool_calls:
            return {
                "role": "assistant",
                "content": message.text(),
                "tool_calls": [
                    {"function": {"name": tc.name, "arguments": tc.arguments}} for tc in message.tool_calls
                ],
            }

        converted: dict[str, Any] = {"role": message.role, "content": message.text()}
        if not isinstance(message.content, str):
            images = [p.image_base64 for p in message.content if p.type == "image" and p.image_base64]
            if images:
                converted["images"] = images
        return converted

    def convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [{"type": "function", "function": tool.to_schema()} for tool in tools]

    # ── Response parsing ──────────────────────────────────────────

    def parse_response(self, data: dict[str, Any], model: str) -> ChatResponse:
        message = data.get("message") or {}
        tool_calls = [_tool_call(tc) for tc in message.get("tool_calls") or []]

        if tool_calls:
            finish = FinishReason.TOOL_CALLS.value
        elif data.get("done_reason") == "length":
            finish = FinishReason.LENGTH.value
        else:
            finish = FinishReason.STOP.value

        return ChatResponse(
            id=generate_response_id(),
            model=data.get("model") or model,
            content=message.get("content") or "",
            provider=self.name.value,
            usage=_usage(data),
            finish_reason=finish,
            tool_calls=tool_calls or None,
        )

    async def parse_stream(self, response: httpx.Response, model: str) -> AsyncIterator[StreamChunk]:
        pending_calls: list[ToolCall] = []
        final: dict[str, Any] | None = None

        async for data in parse_ndjson(response):
            if data.get("error"):
                raise ProviderError(self.name.value, str(data["error"]))

            message = data.get("message") or {}
            if message.get("content"):
                yield StreamChunk.text(message["content"])
            if message.get("thinking"):
                yield StreamChunk.thinking(message["thinking"])
            pending_calls += [_tool_call(tc) for tc in message.get("tool_calls") or []]

            if data.get("done"):
                final = data
                break

        for call in pending_calls:
            yield StreamChunk.of_tool_call(call)
        if final is not None:
            yield StreamChunk.of_usage(_usage(final))

    def stream_error_message(self, error: LLMError) -> str:
        if error.code == ErrorCode.NETWORK_ERROR:
            return CONNECT_ERROR_MESSAGE
        return error.message

    # ── Local model management ────────────────────────────────────

    async def list_models(self) -> list[ModelInfo]:
        """Installed models from ``/api/tags``; the static catalog if unreachable."""
        try:
            data = await self._get_json(f"{self.base_url}/api/tags")
        except (LLMError, ValueError) as e:
            self.log(f"list_models failed, using catalog: {e}")
            return self.models

        installed = data.get("models") or []
        if not installed:
            return self.models
        self.models = [
            ModelInfo(
                id=m["name"],
                name=m["name"],
                context_window=128_000,
                supports_vision="llava" in m["name"] or "vision" in m["name"],
            )
            for m in installed
            if m.get("name")
        ]
        return self.models

    async def pull_model(
        self,
        model_name: str,
        on_progress: Optional[Callable[[dict[str, Any]], None]] = None,
    ) -> None:
        """Download a model, reporting each NDJSON progress record."""
        body = {"name": model_name}
        try:
            async with self._open_stream(f"{self.base_url}/api/pull", body) as resp:
                async for progress in parse_ndjson(resp):
                    if progress.get("error"):
                        raise InvalidRequestError(self.name.value, f"Failed to pull model: {model_name}")
                    self.log(f"pull {model_name}: {json.dumps(progress)}")
                    if on_progress:
                        on_progress(progress)
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise InvalidRequestError(self.name.value, f"Failed to pull model: {model_name}", e) from e

    async def is_available(self) -> bool:
        client = await self._get_client()
        try:
            resp = await client.get(f"{self.base_url}/api/tags", timeout=5.0)
        except httpx.HTTPError:
            return False
        return resp.status_code < 400


def _tool_call(tc: dict[str, Any]) -> ToolCall:
    fn = tc.get("function") or {}
    args = fn.get("arguments") or {}
    if isinstance(args, str):
        try:
            args = json.loads(args)
        except (json.JSONDecodeError, ValueError):
            args = {}
    return ToolCall(id=tc.get("id") or generate_tool_call_id(), name=fn.get("name", ""), arguments=args)


def _usage(data: dict[str, Any]) -> TokenUsage:
    prompt = data.get("prompt_eval_count") or 0
    completion = data.get("eval_count") or 0
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
