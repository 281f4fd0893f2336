"""LLM Gateway — one async interface over Gemini, OpenAI, Anthropic and Ollama."""

from devmind.llm.client import LLMClient, create_client
from devmind.llm.concurrency import ConcurrencySemaphore
from devmind.llm.config import (
    CircuitBreakerConfig,
    ClientConfig,
    ConfigBuilder,
    ConfigError,
    ProviderConfig,
    RateLimitConfig,
    RetryConfig,
    create_config,
    create_gemini_only_config,
    create_multi_provider_config,
    validate_config,
)
from devmind.llm.errors import (
    AuthenticationError,
    CircuitOpenError,
    ContentFilterError,
    ContextLengthError,
    ErrorCode,
    InvalidRequestError,
    LLMError,
    LLMTimeoutError,
    ModelNotFoundError,
    NetworkError,
    ProviderError,
    ProviderNotConfiguredError,
    RateLimitError,
    is_retryable_error,
    normalize_error,
)
from devmind.llm.types import (
    AgentEvent,
    CancelToken,
    ChatRequest,
    ChatResponse,
    ContentPart,
    FinishReason,
    Message,
    ModelInfo,
    ProviderName,
    ResponseFormat,
    Role,
    StreamCallbacks,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolDefinition,
    ToolResult,
)

__all__ = [
    "LLMClient",
    "create_client",
    "ConcurrencySemaphore",
    "CircuitBreakerConfig",
    "ClientConfig",
    "ConfigBuilder",
    "ConfigError",
    "ProviderConfig",
    "RateLimitConfig",
    "RetryConfig",
    "create_config",
    "create_gemini_only_config",
    "create_multi_provider_config",
    "validate_config",
    "AuthenticationError",
    "CircuitOpenError",
    "ContentFilterError",
    "ContextLengthError",
    "ErrorCode",
    "InvalidRequestError",
    "LLMError",
    "LLMTimeoutError",
    "ModelNotFoundError",
    "NetworkError",
    "ProviderError",
    "ProviderNotConfiguredError",
    "RateLimitError",
    "is_retryable_error",
    "normalize_error",
    "AgentEvent",
    "CancelToken",
    "ChatRequest",
    "ChatResponse",
    "ContentPart",
    "FinishReason",
    "Message",
    "ModelInfo",
    "ProviderName",
    "ResponseFormat",
    "Role",
    "StreamCallbacks",
    "StreamChunk",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
    "ToolResult",
]
