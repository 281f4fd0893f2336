"""Typed error taxonomy for the LLM gateway.

Every failure that leaves ``chat()`` is an :class:`LLMError` carrying an
:class:`ErrorCode`, the originating provider and a ``retryable`` flag.
Vendor HTTP failures are classified by :func:`error_from_response`; any
other exception goes through :func:`normalize_error`.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import httpx


class ErrorCode(str, Enum):
    RATE_LIMIT = "RATE_LIMIT"
    INVALID_API_KEY = "INVALID_API_KEY"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    CONTEXT_LENGTH_EXCEEDED = "CONTEXT_LENGTH_EXCEEDED"
    CONTENT_FILTERED = "CONTENT_FILTERED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    INVALID_REQUEST = "INVALID_REQUEST"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    UNKNOWN = "UNKNOWN"


class LLMError(Exception):
    """Base class for all gateway errors."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        provider: str = "",
        retryable: bool = False,
        status_code: int | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.provider = provider
        self.retryable = retryable
        self.status_code = status_code
        self.original_error = original_error

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code.value,
            "provider": self.provider,
            "retryable": self.retryable,
            "status_code": self.status_code,
        }


class RateLimitError(LLMError):
    def __init__(
        self,
        provider: str,
        retry_after_ms: int | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        suffix = f". Retry after {retry_after_ms}ms" if retry_after_ms else ""
        super().__init__(
            f"Rate limit exceeded for {provider}{suffix}",
            ErrorCode.RATE_LIMIT, provider, True, 429, original_error,
        )
        self.retry_after_ms = retry_after_ms


class AuthenticationError(LLMError):
    def __init__(self, provider: str, original_error: BaseException | None = None) -> None:
        super().__init__(
            f"Invalid API key for {provider}",
            ErrorCode.INVALID_API_KEY, provider, False, 401, original_error,
        )


class ModelNotFoundError(LLMError):
    def __init__(
        self, provider: str, model_id: str, original_error: BaseException | None = None
    ) -> None:
        super().__init__(
            f"Model '{model_id}' not found for {provider}",
            ErrorCode.MODEL_NOT_FOUND, provider, False, 404, original_error,
        )
        self.model_id = model_id


class ContextLengthError(LLMError):
    def __init__(
        self,
        provider: str,
        token_count: int = 0,
        max_tokens: int = 0,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(
            f"Context length exceeded for {provider}: {token_count} tokens (max: {max_tokens})",
            ErrorCode.CONTEXT_LENGTH_EXCEEDED, provider, False, 400, original_error,
        )
        self.token_count = token_count
        self.max_tokens = max_tokens


class ContentFilterError(LLMError):
    def __init__(
        self, provider: str, reason: str | None = None, original_error: BaseException | None = None
    ) -> None:
        suffix = f": {reason}" if reason else ""
        super().__init__(
            f"Content filtered by {provider}{suffix}",
            ErrorCode.CONTENT_FILTERED, provider, False, 400, original_error,
        )
        self.reason = reason


class NetworkError(LLMError):
    def __init__(
        self, provider: str, original_error: BaseException | None = None, detail: str = ""
    ) -> None:
        message = f"Network error connecting to {provider}"
        if detail:
            message += f": {detail}"
        super().__init__(message, ErrorCode.NETWORK_ERROR, provider, True, None, original_error)


class LLMTimeoutError(LLMError):
    def __init__(
        self, provider: str, timeout_ms: int = 0, original_error: BaseException | None = None
    ) -> None:
        super().__init__(
            f"Request to {provider} timed out after {timeout_ms}ms",
            ErrorCode.TIMEOUT, provider, True, 408, original_error,
        )
        self.timeout_ms = timeout_ms


class InvalidRequestError(LLMError):
    def __init__(
        self,
        provider: str,
        message: str,
        original_error: BaseException | None = None,
        status_code: int = 400,
    ) -> None:
        super().__init__(
            f"Invalid request to {provider}: {message}",
            ErrorCode.INVALID_REQUEST, provider, False, status_code, original_error,
        )


class ProviderError(LLMError):
    """Vendor-side failure (5xx, malformed payload, error event in a stream)."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        retryable: bool | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        if retryable is None:
            retryable = status_code is not None and status_code >= 500
        super().__init__(
            f"{provider} error: {message}",
            ErrorCode.PROVIDER_ERROR, provider, retryable, status_code, original_error,
        )


class CircuitOpenError(ProviderError):
    def __init__(self, provider: str) -> None:
        super().__init__(provider, "circuit breaker is open", retryable=False)


class ProviderNotConfiguredError(LLMError):
    def __init__(self, provider: str, available: list[str] | None = None) -> None:
        super().__init__(
            f"Provider '{provider}' is not configured. Available: {available or []}",
            ErrorCode.INVALID_REQUEST, provider, False,
        )


# ── Classification ────────────────────────────────────────────────

_RETRYABLE_HINTS = ("network", "timeout", "timed out", "econnreset", "econnrefused", "socket hang up")
_CONTEXT_HINTS = ("context length", "too many tokens", "prompt is too long", "maximum context")


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, LLMError):
        return error.retryable
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    message = str(error).lower()
    return any(hint in message for hint in _RETRYABLE_HINTS)


def normalize_error(error: BaseException, provider: str) -> LLMError:
    """Map an arbitrary exception to a typed :class:`LLMError`."""
    if isinstance(error, LLMError):
        return error
    if isinstance(error, httpx.TimeoutException):
        return LLMTimeoutError(provider, 0, error)
    if isinstance(error, httpx.TransportError):
        return NetworkError(provider, error, detail=str(error))
    return _classify_message(str(error) or type(error).__name__, provider, error)


def error_from_response(
    provider: str,
    status_code: int,
    body: Any = None,
    *,
    model: str | None = None,
    retry_after: str | None = None,
) -> LLMError:
    """Classify a failed HTTP response.

    Status codes and explicit vendor error fields are checked first; the
    error message is sniffed only when neither is conclusive.
    """
    message, vendor_type = _extract_vendor_error(body)
    vendor_type = vendor_type.lower()
    reasons = _vendor_reasons(body)
    lowered = message.lower()

    if status_code == 429 or vendor_type in ("rate_limit_error", "resource_exhausted", "rate_limit_exceeded"):
        return RateLimitError(provider, _parse_retry_after(retry_after))
    if status_code in (401, 403) or vendor_type in (
        "authentication_error", "permission_error", "invalid_api_key", "unauthenticated",
    ) or "api_key_invalid" in reasons:
        return AuthenticationError(provider)
    if status_code == 404 or vendor_type in ("not_found_error", "model_not_found", "not_found"):
        return ModelNotFoundError(provider, model or "unknown")
    if status_code == 408:
        return LLMTimeoutError(provider)
    if vendor_type == "context_length_exceeded" or any(hint in lowered for hint in _CONTEXT_HINTS):
        return ContextLengthError(provider)
    if vendor_type == "content_filter" or "safety" in lowered or "content filter" in lowered:
        return ContentFilterError(provider, message or None)
    if vendor_type == "overloaded_error" or status_code >= 500:
        return ProviderError(provider, message or f"HTTP {status_code}", status_code, retryable=True)
    if 400 <= status_code < 500:
        if "api key" in lowered:
            return AuthenticationError(provider)
        return InvalidRequestError(provider, message or f"HTTP {status_code}", status_code=status_code)
    return _classify_message(message or f"HTTP {status_code}", provider, None)


def _classify_message(message: str, provider: str, error: BaseException | None) -> LLMError:
    lowered = message.lower()
    if "rate limit" in lowered or "429" in lowered:
        return RateLimitError(provider, None, error)
    if "unauthorized" in lowered or "401" in lowered or "api key" in lowered:
        return AuthenticationError(provider, error)
    if "not found" in lowered or "404" in lowered:
        return ModelNotFoundError(provider, "unknown", error)
    if "context" in lowered or "token" in lowered:
        return ContextLengthError(provider, 0, 0, error)
    if "network" in lowered or "fetch" in lowered or "connect" in lowered:
        return NetworkError(provider, error)
    if "timeout" in lowered or "timed out" in lowered:
        return LLMTimeoutError(provider, 0, error)
    return LLMError(message, ErrorCode.UNKNOWN, provider, False, None, error)


def _extract_vendor_error(body: Any) -> tuple[str, str]:
    """Return (message, vendor error type) from a vendor error payload."""
    if isinstance(body, str):
        return body[:500], ""
    if not isinstance(body, dict):
        return "", ""
    err = body.get("error")
    if isinstance(err, str):
        # Ollama: {"error": "model 'x' not found"}
        return err, ""
    if isinstance(err, dict):
        message = str(err.get("message", ""))
        vendor_type = err.get("type") or err.get("status") or err.get("code") or ""
        return message, str(vendor_type)
    return str(body.get("message", "")), str(body.get("type", ""))


def _vendor_reasons(body: Any) -> set[str]:
    """Lower-cased ``error.details[].reason`` values (Google-style error payloads)."""
    if not isinstance(body, dict) or not isinstance(body.get("error"), dict):
        return set()
    details = body["error"].get("details") or []
    return {str(d["reason"]).lower() for d in details if isinstance(d, dict) and d.get("reason")}


def _parse_retry_after(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(float(value) * 1000)
    except (TypeError, ValueError):
        return None
