"""Unified request/response model shared by every provider adapter.

Everything the gateway passes around is a plain dataclass:

- Message / ContentPart — conversation turns (text or multimodal)
- ChatRequest / ChatResponse — one model call in provider-neutral form
- ToolDefinition / ToolCall / ToolResult — function calling
- StreamChunk — one unit of a streamed response
- AgentEvent — flattened event emitted by the streaming agent loop
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union


class ProviderName(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


# Opaque bag handed to tool executors (filesystem handle, terminal, session id…)
ToolContext = dict[str, Any]
ToolExecutor = Callable[[dict[str, Any], Optional[ToolContext]], Awaitable[str]]

# "none" | "auto" | "required" | {"name": "<tool>"}
ToolChoice = Union[str, dict[str, str]]


# ── Messages ──────────────────────────────────────────────────────


@dataclass
class ContentPart:
    """One piece of multimodal content. Only the field matching ``type`` is used."""

    type: str = "text"  # text | image | audio
    text: str | None = None
    image_url: str | None = None
    image_base64: str | None = None
    mime_type: str | None = None

    @classmethod
    def from_text(cls, text: str) -> ContentPart:
        return cls(type="text", text=text)

    @classmethod
    def from_image(
        cls,
        *,
        url: str | None = None,
        base64: str | None = None,
        mime_type: str = "image/jpeg",
    ) -> ContentPart:
        return cls(type="image", image_url=url, image_base64=base64, mime_type=mime_type)

    @property
    def has_image(self) -> bool:
        return bool(self.image_url or self.image_base64)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    tool_call_id: str
    result: str
    is_error: bool = False


@dataclass
class Message:
    """A single conversation turn."""

    role: str
    content: Union[str, list[ContentPart]] = ""
    name: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.role, Role):
            self.role = self.role.value

    def text(self) -> str:
        """Plain-text view of the content (text parts joined by newlines)."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text or "" for p in self.content if p.type == "text")

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: Union[str, list[ContentPart]]) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(role="assistant", content=content, tool_calls=tool_calls)

    @classmethod
    def tool(cls, result: ToolResult, name: str | None = None) -> Message:
        return cls(role="tool", content=result.result, tool_call_id=result.tool_call_id, name=name)


# ── Tools ─────────────────────────────────────────────────────────


@dataclass
class ToolDefinition:
    """A tool the model may call.

    ``execute`` is optional: a tool without one is still advertised to the
    model, but the agent loop reports an error result instead of running it.
    """

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    execute: ToolExecutor | None = None

    def to_schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


# ── Requests / responses ──────────────────────────────────────────


@dataclass
class ResponseFormat:
    type: str = "text"  # text | json_object | json_schema
    schema: dict[str, Any] | None = None


@dataclass
class ChatRequest:
    messages: list[Message]
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    tools: list[ToolDefinition] | None = None
    tool_choice: ToolChoice | None = None
    system_prompt: str | None = None
    response_format: ResponseFormat | None = None
    stop_sequences: list[str] | None = None

    def with_changes(self, **changes: Any) -> ChatRequest:
        return dataclasses.replace(self, **changes)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    thinking_tokens: int | None = None


@dataclass
class ChatResponse:
    id: str
    model: str
    content: str
    provider: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = FinishReason.STOP.value
    tool_calls: list[ToolCall] | None = None
    thinking: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


# ── Streaming ─────────────────────────────────────────────────────


@dataclass
class StreamChunk:
    """One streamed unit. ``done`` or ``error`` always terminates a stream."""

    type: str  # text | tool_call | thinking | usage | done | error
    content: str | None = None
    tool_call: ToolCall | None = None
    usage: TokenUsage | None = None
    error: str | None = None

    @classmethod
    def text(cls, content: str) -> StreamChunk:
        return cls(type="text", content=content)

    @classmethod
    def thinking(cls, content: str) -> StreamChunk:
        return cls(type="thinking", content=content)

    @classmethod
    def of_tool_call(cls, tool_call: ToolCall) -> StreamChunk:
        return cls(type="tool_call", tool_call=tool_call)

    @classmethod
    def of_usage(cls, usage: TokenUsage) -> StreamChunk:
        return cls(type="usage", usage=usage)

    @classmethod
    def done(cls) -> StreamChunk:
        return cls(type="done")

    @classmethod
    def failure(cls, error: str) -> StreamChunk:
        return cls(type="error", error=error)

    @property
    def is_terminal(self) -> bool:
        return self.type in ("done", "error")


@dataclass
class AgentEvent:
    type: str  # text | tool_call | tool_result | done
    content: str | None = None
    tool_name: str | None = None
    tool_args: dict[str, Any] | None = None
    tool_result: str | None = None
    is_error: bool = False


@dataclass
class StreamCallbacks:
    on_text: Callable[[str], None] | None = None
    on_tool_call: Callable[[ToolCall], None] | None = None
    on_thinking: Callable[[str], None] | None = None
    on_usage: Callable[[TokenUsage], None] | None = None
    on_error: Callable[[Exception], None] | None = None


class CancelToken:
    """Cooperative cancellation flag, checked between stream chunks."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


# ── Model catalog entries ─────────────────────────────────────────


@dataclass
class ModelInfo:
    id: str
    name: str
    context_window: int = 128_000
    max_output_tokens: int | None = None
    supports_vision: bool = False
    supports_tools: bool = True
    supports_streaming: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "context_window": self.context_window,
            "max_output_tokens": self.max_output_tokens,
            "supports_vision": self.supports_vision,
            "supports_tools": self.supports_tools,
            "supports_streaming": self.supports_streaming,
        }
