"""Provider adapter contract and shared plumbing.

Each vendor adapter subclasses :class:`BaseProvider` and supplies four
hooks: the endpoint URL, the request body, the response parser and the
stream parser. The base class owns the HTTP client, retry, error
classification and the streaming guarantees:

- ``chat()`` raises a typed :class:`LLMError`.
- ``stream()`` never raises; it always ends with exactly one ``done`` or
  ``error`` chunk.
"""

from __future__ import annotations

import json
import math
import random
import string
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx
from loguru import logger

from devmind.llm.config import DEFAULT_TIMEOUTS, PROVIDER_BASE_URLS, ProviderConfig, RetryConfig
from devmind.llm.errors import (
    AuthenticationError,
    ErrorCode,
    LLMError,
    error_from_response,
    normalize_error,
)
from devmind.llm.models import catalog_for
from devmind.llm.types import (
    ChatRequest,
    ChatResponse,
    FinishReason,
    Message,
    ModelInfo,
    ProviderName,
    StreamChunk,
    ToolDefinition,
)
from devmind.llm.utils.retry import with_retry


def generate_response_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"resp_{int(time.time() * 1000)}_{suffix}"


def generate_tool_call_id() -> str:
    return "call_" + "".join(random.choices(string.ascii_lowercase + string.digits, k=9))


def estimate_tokens(text: str) -> int:
    """Rough estimate: ~4 characters per token."""
    return math.ceil(len(text) / 4)


IMAGE_TOKEN_ESTIMATE = 500


class BaseProvider(ABC):
    """Common base for the four vendor adapters."""

    name: ProviderName
    requires_api_key: bool = True

    def __init__(
        self,
        config: ProviderConfig,
        retry_config: RetryConfig | None = None,
        debug: bool = False,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if self.requires_api_key and not config.api_key:
            raise AuthenticationError(self.name.value)

        self.config = config
        self.retry_config = retry_config or RetryConfig()
        self.debug = debug
        self.base_url = (config.base_url or PROVIDER_BASE_URLS[self.name]).rstrip("/")
        self.models: list[ModelInfo] = catalog_for(self.name)
        self._timeout = (config.timeout or DEFAULT_TIMEOUTS[self.name]) / 1000
        self._client = http_client
        self._owns_client = http_client is None

    # ── Vendor hooks ──────────────────────────────────────────────

    @abstractmethod
    def endpoint(self, model: str, stream: bool) -> str:
        """Full URL for a chat call."""

    @abstractmethod
    def build_request_body(self, request: ChatRequest, model: str, stream: bool) -> dict[str, Any]:
        ...

    @abstractmethod
    def parse_response(self, data: dict[str, Any], model: str) -> ChatResponse:
        ...

    @abstractmethod
    def parse_stream(self, response: httpx.Response, model: str) -> AsyncIterator[StreamChunk]:
        """Yield content chunks (text/tool_call/thinking/usage) from an open response.

        Must not yield ``done``; raising ends the stream with an ``error`` chunk.
        """

    @abstractmethod
    def convert_tools(self, tools: list[ToolDefinition]) -> Any:
        ...

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    # ── Public contract ───────────────────────────────────────────

    async def chat(self, request: ChatRequest) -> ChatResponse:
        model = self.get_model(request)
        body = self.build_request_body(request, model, stream=False)
        self.log(f"Request: {json.dumps(body)[:2000]}")

        data = await self._post_json(self.endpoint(model, stream=False), body, model=model)
        response = self.parse_response(data, model)
        self.log(f"Response: finish={response.finish_reason} usage={response.usage}")
        return response

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        try:
            model = self.get_model(request)
            body = self.build_request_body(request, model, stream=True)
            self.log(f"Stream request: {json.dumps(body)[:2000]}")
            async with self._open_stream(self.endpoint(model, stream=True), body, model) as resp:
                async for chunk in self.parse_stream(resp, model):
                    yield chunk
        except Exception as e:
            err = normalize_error(e, self.name.value)
            logger.warning(f"{self.name.value}: stream failed: {err}")
            yield StreamChunk.failure(self.stream_error_message(err))
            return
        yield StreamChunk.done()

    async def count_tokens(self, text: str, model: str | None = None) -> int:
        return estimate_tokens(text)

    async def validate_api_key(self) -> bool:
        """Send a minimal request; False only when the vendor rejects the key."""
        try:
            await self.chat(ChatRequest(messages=[Message.user("Hi")], max_tokens=1))
            return True
        except LLMError as e:
            if e.code == ErrorCode.INVALID_API_KEY:
                return False
            raise

    async def list_models(self) -> list[ModelInfo]:
        return self.models

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    def stream_error_message(self, error: LLMError) -> str:
        return error.message

    # ── Request helpers ───────────────────────────────────────────

    def get_model(self, request: ChatRequest) -> str:
        if request.model:
            return request.model
        if self.config.default_model:
            return self.config.default_model
        return self.models[0].id if self.models else ""

    def get_model_info(self, model_id: str) -> Optional[ModelInfo]:
        return next((m for m in self.models if m.id == model_id), None)

    @staticmethod
    def extract_system_prompt(request: ChatRequest) -> str | None:
        """Explicit ``system_prompt`` wins over the first string system message."""
        if request.system_prompt:
            return request.system_prompt
        for message in request.messages:
            if message.role == "system" and isinstance(message.content, str):
                return message.content
        return None

    @staticmethod
    def filter_non_system_messages(messages: list[Message]) -> list[Message]:
        return [m for m in messages if m.role != "system"]

    @staticmethod
    def get_last_user_message(messages: list[Message]) -> str:
        for message in reversed(messages):
            if message.role == "user":
                return message.text()
        return ""

    def estimate_request_tokens(self, request: ChatRequest) -> int:
        total = 0
        if request.system_prompt:
            total += estimate_tokens(request.system_prompt)
        for message in request.messages:
            if isinstance(message.content, str):
                total += estimate_tokens(message.content)
                continue
            for part in message.content:
                if part.text:
                    total += estimate_tokens(part.text)
                if part.has_image:
                    total += IMAGE_TOKEN_ESTIMATE
        for tool in request.tools or []:
            total += estimate_tokens(json.dumps(tool.to_schema()))
        return total

    def map_finish_reason(self, raw: str | None, table: dict[str, FinishReason]) -> str:
        if raw in table:
            return table[raw].value
        if raw:
            self.log(f"unknown finish reason '{raw}', treating as stop")
        return FinishReason.STOP.value

    def log(self, message: str) -> None:
        if self.debug:
            logger.debug(f"[{self.name.value}] {message}")

    # ── HTTP ──────────────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        if not self._client:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def _post_json(
        self,
        url: str,
        body: dict[str, Any],
        *,
        model: str | None = None,
    ) -> dict[str, Any]:
        """POST with retry; non-2xx responses become typed errors."""
        client = await self._get_client()
        headers = self.headers()

        async def send() -> dict[str, Any]:
            try:
                resp = await client.post(url, json=body, headers=headers, timeout=self._timeout)
            except httpx.HTTPError as e:
                raise normalize_error(e, self.name.value) from e
            if resp.status_code >= 400:
                raise self._error_from(resp, _safe_json(resp), model)
            return resp.json()

        return await with_retry(send, self.retry_config, on_retry=self._on_retry)

    async def _get_json(self, url: str) -> dict[str, Any]:
        client = await self._get_client()
        try:
            resp = await client.get(url, headers=self.headers(), timeout=self._timeout)
        except httpx.HTTPError as e:
            raise normalize_error(e, self.name.value) from e
        if resp.status_code >= 400:
            raise self._error_from(resp, _safe_json(resp), None)
        return resp.json()

    @asynccontextmanager
    async def _open_stream(self, url: str, body: dict[str, Any], model: str | None = None):
        client = await self._get_client()
        async with client.stream(
            "POST", url, json=body, headers=self.headers(), timeout=self._timeout
        ) as resp:
            if resp.status_code >= 400:
                await resp.aread()
                raise self._error_from(resp, _safe_json(resp), model)
            yield resp

    def _error_from(self, resp: httpx.Response, payload: Any, model: str | None) -> LLMError:
        return error_from_response(
            self.name.value,
            resp.status_code,
            payload,
            model=model,
            retry_after=resp.headers.get("retry-after"),
        )

    def _on_retry(self, attempt: int, error: BaseException, delay_ms: float) -> None:
        logger.warning(
            f"{self.name.value}: retry {attempt}/{self.retry_config.max_retries} "
            f"in {delay_ms:.0f}ms after: {error}"
        )


def _safe_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text
