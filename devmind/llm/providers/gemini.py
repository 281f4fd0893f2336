"""Google Gemini adapter (generativelanguage REST API)."""

from __future__ import annotations

from typing import Any, AsyncIterator

import httpx

from devmind.llm.providers.base import BaseProvider, estimate_tokens, generate_response_id, generate_tool_call_id
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
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "TOOL_CODE": FinishReason.TOOL_CALLS,
}


class GeminiProvider(BaseProvider):
    name = ProviderName.GEMINI

    def endpoint(self, model: str, stream: bool) -> str:
        if stream:
            return f"{self.base_url}/models/{model}:streamGenerateContent?key={self.config.api_key}&alt=sse"
        return f"{self.base_url}/models/{model}:generateContent?key={self.config.api_key}"

    # ── Request building ──────────────────────────────────────────

    def build_request_body(self, request: ChatRequest, model: str, stream: bool) -> dict[str, Any]:
        generation: dict[str, Any] = {}
        for key, value in (
            ("temperature", request.temperature),
            ("maxOutputTokens", request.max_tokens),
            ("topP", request.top_p),
            ("topK", request.top_k),
            ("stopSequences", request.stop_sequences or None),
        ):
            if value is not None:
                generation[key] = value
        if request.response_format and request.response_format.type in ("json_object", "json_schema"):
            generation["responseMimeType"] = "application/json"
            if request.response_format.schema:
                generation["responseSchema"] = request.response_format.schema

        body: dict[str, Any] = {"contents": self.convert_messages(request.messages)}
        if generation:
            body["generationConfig"] = generation

        system_prompt = self.extract_system_prompt(request)
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        if request.tools:
            body["tools"] = [{"functionDeclarations": self.convert_tools(request.tools)}]
            if request.tool_choice:
                body["toolConfig"] = self._convert_tool_choice(request.tool_choice)
        return body

    def convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        for message in self.filter_non_system_messages(messages):
            if message.role == "tool":
                contents.append({
                    "role": "function",
                    "parts": [{
                        "functionResponse": {
                            "name": message.name or "unknown",
                            "response": {"result": message.text()},
                        },
                    }],
                })
                continue

            parts = self._convert_content(message)
            if message.role == "assistant" and message.tool_calls:
                if not message.text():
                    parts = []
                parts += [{"functionCall": {"name": tc.name, "args": tc.arguments}} for tc in message.tool_calls]
                contents.append({"role": "model", "parts": parts})
                continue

            contents.append({"role": "model" if message.role == "assistant" else "user", "parts": parts})
        return contents

    @staticmethod
    def _convert_content(message: Message) -> list[dict[str, Any]]:
        if isinstance(message.content, str):
            return [{"text": message.content}]
        return [_convert_part(part) for part in message.content]

    def convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [tool.to_schema() for tool in tools]

    @staticmethod
    def _convert_tool_choice(choice: ToolChoice) -> dict[str, Any]:
        if isinstance(choice, dict) and choice.get("name"):
            return {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [choice["name"]]}}
        mode = {"none": "NONE", "auto": "AUTO", "required": "ANY"}.get(str(choice), "AUTO")
        return {"functionCallingConfig": {"mode": mode}}

    # ── Response parsing ──────────────────────────────────────────

    def parse_response(self, data: dict[str, Any], model: str) -> ChatResponse:
        candidate = (data.get("candidates") or [{}])[0]
        text: list[str] = []
        thinking: list[str] = []
        tool_calls: list[ToolCall] = []

        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("thought") is True and part.get("text"):
                # thinking models flag reasoning parts with "thought": true
                thinking.append(part["text"])
                continue
            if part.get("text"):
                text.append(part["text"])
            if part.get("functionCall"):
                tool_calls.append(_tool_call(part["functionCall"]))
            if isinstance(part.get("thought"), str):
                thinking.append(part["thought"])

        finish = self.map_finish_reason(candidate.get("finishReason"), _FINISH_REASONS)
        if tool_calls:
            finish = FinishReason.TOOL_CALLS.value

        return ChatResponse(
            id=data.get("responseId") or generate_response_id(),
            model=data.get("modelVersion") or model,
            content="".join(text),
            provider=self.name.value,
            usage=_usage(data.get("usageMetadata")),
            finish_reason=finish,
            tool_calls=tool_calls or None,
            thinking="".join(thinking) or None,
        )

    async def parse_stream(self, response: httpx.Response, model: str) -> AsyncIterator[StreamChunk]:
        usage = TokenUsage()
        # Gemini sends each functionCall whole; hold them until the stream ends
        pending_calls: list[ToolCall] = []

        async for data in parse_sse(response):
            candidate = (data.get("candidates") or [{}])[0]
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("thought") is True and part.get("text"):
                    yield StreamChunk.thinking(part["text"])
                    continue
                if part.get("text"):
                    yield StreamChunk.text(part["text"])
                if part.get("functionCall"):
                    pending_calls.append(_tool_call(part["functionCall"]))
                if isinstance(part.get("thought"), str):
                    yield StreamChunk.thinking(part["thought"])
            if data.get("usageMetadata"):
                usage = _usage(data["usageMetadata"])

        for call in pending_calls:
            yield StreamChunk.of_tool_call(call)
        yield StreamChunk.of_usage(usage)

    # ── Token counting ────────────────────────────────────────────

    async def count_tokens(self, text: str, model: str | None = None) -> int:
        model_id = model or self.get_model(ChatRequest(messages=[]))
        url = f"{self.base_url}/models/{model_id}:countTokens?key={self.config.api_key}"
        client = await self._get_client()
        try:
            resp = await client.post(
                url, json={"contents": [{"parts": [{"text": text}]}]}, headers=self.headers()
            )
            if resp.status_code >= 400:
                return estimate_tokens(text)
            return int(resp.json().get("totalTokens", 0)) or estimate_tokens(text)
        except (httpx.HTTPError, ValueError) as e:
            self.log(f"countTokens failed, estimating: {e}")
            return estimate_tokens(text)


def _convert_part(part: ContentPart) -> dict[str, Any]:
    if part.type == "text":
        return {"text": part.text or ""}
    if part.type == "image":
        if part.image_base64:
            return {"inlineData": {"mimeType": part.mime_type or "image/jpeg", "data": part.image_base64}}
        if part.image_url:
            return {"fileData": {"mimeType": part.mime_type or "image/jpeg", "fileUri": part.image_url}}
        return {"text": "[Image]"}
    return {"text": ""}


def _tool_call(fc: dict[str, Any]) -> ToolCall:
    return ToolCall(id=generate_tool_call_id(), name=fc.get("name", ""), arguments=fc.get("args") or {})


def _usage(meta: dict[str, Any] | None) -> TokenUsage:
    if not meta:
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=meta.get("promptTokenCount", 0),
        completion_tokens=meta.get("candidatesTokenCount", 0),
        total_tokens=meta.get("totalTokenCount", 0),
        thinking_tokens=meta.get("thoughtsTokenCount"),
    )
