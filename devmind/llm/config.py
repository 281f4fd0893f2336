"""Gateway configuration models, defaults and builders."""

from __future__ import annotations

import os
from typing import List, Optional

from pydantic import BaseModel, Field

from devmind.llm.types import ProviderName


class ConfigError(ValueError):
    """Raised when a configuration fails validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"Invalid configuration: {', '.join(self.errors)}")


class RateLimitConfig(BaseModel):
    """Per-provider request and token budget (per rolling minute)."""

    requests_per_minute: int = 60
    tokens_per_minute: Optional[int] = None


class RetryConfig(BaseModel):
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    retryable_errors: Optional[List[str]] = Field(
        default_factory=lambda: ["RATE_LIMIT", "NETWORK_ERROR", "TIMEOUT"]
    )


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = 5
    reset_timeout_ms: int = 60000


class ProviderConfig(BaseModel):
    """Configuration for a single provider."""

    name: ProviderName
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    default_model: Optional[str] = None
    rate_limit: Optional[RateLimitConfig] = None
    timeout: Optional[int] = None  # milliseconds


class ClientConfig(BaseModel):
    """Complete gateway configuration.

    ``default_provider`` may be omitted; the first configured provider is
    used in that case.
    """

    providers: List[ProviderConfig] = Field(default_factory=list)
    default_provider: Optional[ProviderName] = None
    default_model: Optional[str] = None
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    debug: bool = False
    concurrency_limit: int = 5

    def resolved_default_provider(self) -> Optional[ProviderName]:
        if self.default_provider is not None:
            return self.default_provider
        if self.providers:
            return self.providers[0].name
        return None


# ── Defaults ──────────────────────────────────────────────────────

DEFAULT_RETRY_CONFIG = RetryConfig()

DEFAULT_RATE_LIMITS: dict[ProviderName, RateLimitConfig] = {
    ProviderName.GEMINI: RateLimitConfig(requests_per_minute=60, tokens_per_minute=1_000_000),
    ProviderName.OPENAI: RateLimitConfig(requests_per_minute=60, tokens_per_minute=150_000),
    ProviderName.ANTHROPIC: RateLimitConfig(requests_per_minute=60, tokens_per_minute=100_000),
    ProviderName.OLLAMA: RateLimitConfig(requests_per_minute=1000),  # local, no real limit
}

DEFAULT_MODELS: dict[ProviderName, str] = {
    ProviderName.GEMINI: "gemini-2.5-pro",
    ProviderName.OPENAI: "gpt-4o",
    ProviderName.ANTHROPIC: "claude-3-5-sonnet-20241022",
    ProviderName.OLLAMA: "llama3.2",
}

# milliseconds
DEFAULT_TIMEOUTS: dict[ProviderName, int] = {
    ProviderName.GEMINI: 120_000,
    ProviderName.OPENAI: 60_000,
    ProviderName.ANTHROPIC: 60_000,
    ProviderName.OLLAMA: 300_000,  # local models can be slow
}

PROVIDER_BASE_URLS: dict[ProviderName, str] = {
    ProviderName.GEMINI: "https://generativelanguage.googleapis.com/v1beta",
    ProviderName.OPENAI: "https://api.openai.com/v1",
    ProviderName.ANTHROPIC: "https://api.anthropic.com/v1",
    ProviderName.OLLAMA: "http://localhost:11434",
}

API_KEY_ENV_VARS: dict[ProviderName, str] = {
    ProviderName.GEMINI: "GEMINI_API_KEY",
    ProviderName.OPENAI: "OPENAI_API_KEY",
    ProviderName.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderName.OLLAMA: "",  # no key needed
}

KEYLESS_PROVIDERS = frozenset({ProviderName.OLLAMA})


# ── Validation ────────────────────────────────────────────────────


def validate_config(config: ClientConfig) -> list[str]:
    """Return human-readable configuration problems (empty list = valid)."""
    errors: list[str] = []

    if not config.providers:
        errors.append("At least one provider must be configured")

    names = [p.name for p in config.providers]
    default = config.resolved_default_provider()
    if default is not None and default not in names:
        errors.append(f"Default provider '{_name(default)}' is not in the providers list")

    seen: set[ProviderName] = set()
    for provider in config.providers:
        if provider.name in seen:
            errors.append(f"Duplicate provider '{_name(provider.name)}'")
        seen.add(provider.name)
        if provider.name not in KEYLESS_PROVIDERS and not provider.api_key:
            errors.append(f"API key required for provider '{_name(provider.name)}'")

    if config.concurrency_limit < 1:
        errors.append("concurrency_limit must be at least 1")

    return errors


def _name(provider: ProviderName | str) -> str:
    return provider.value if isinstance(provider, ProviderName) else str(provider)


# ── Builder ───────────────────────────────────────────────────────


class ConfigBuilder:
    """Fluent builder that fills in per-provider defaults.

    Usage::

        config = (
            ConfigBuilder()
            .add_gemini("AI...")
            .add_ollama()
            .set_default_provider("ollama")
            .build()
        )
    """

    def __init__(self) -> None:
        self._providers: list[ProviderConfig] = []
        self._default_provider: ProviderName | None = None
        self._default_model: str | None = None
        self._retry = RetryConfig()
        self._circuit_breaker = CircuitBreakerConfig()
        self._debug = False
        self._concurrency_limit = 5

    def set_default_provider(self, provider: ProviderName | str) -> ConfigBuilder:
        self._default_provider = ProviderName(provider)
        return self

    def set_default_model(self, model: str) -> ConfigBuilder:
        self._default_model = model
        return self

    def set_retry_config(self, **overrides) -> ConfigBuilder:
        self._retry = RetryConfig(**{**DEFAULT_RETRY_CONFIG.model_dump(), **overrides})
        return self

    def set_circuit_breaker(self, failure_threshold: int = 5, reset_timeout_ms: int = 60000) -> ConfigBuilder:
        self._circuit_breaker = CircuitBreakerConfig(
            failure_threshold=failure_threshold, reset_timeout_ms=reset_timeout_ms
        )
        return self

    def set_debug(self, debug: bool = True) -> ConfigBuilder:
        self._debug = debug
        return self

    def set_concurrency_limit(self, limit: int) -> ConfigBuilder:
        self._concurrency_limit = limit
        return self

    def add_provider(self, config: ProviderConfig) -> ConfigBuilder:
        self._providers.append(config.model_copy(update={
            "rate_limit": config.rate_limit or DEFAULT_RATE_LIMITS[config.name],
            "timeout": config.timeout or DEFAULT_TIMEOUTS[config.name],
            "default_model": config.default_model or DEFAULT_MODELS[config.name],
        }))
        return self

    def add_gemini(self, api_key: str | None = None, **kwargs) -> ConfigBuilder:
        return self.add_provider(ProviderConfig(
            name=ProviderName.GEMINI, api_key=api_key or _env_key(ProviderName.GEMINI), **kwargs
        ))

    def add_openai(self, api_key: str | None = None, **kwargs) -> ConfigBuilder:
        return self.add_provider(ProviderConfig(
            name=ProviderName.OPENAI, api_key=api_key or _env_key(ProviderName.OPENAI), **kwargs
        ))

    def add_anthropic(self, api_key: str | None = None, **kwargs) -> ConfigBuilder:
        return self.add_provider(ProviderConfig(
            name=ProviderName.ANTHROPIC, api_key=api_key or _env_key(ProviderName.ANTHROPIC), **kwargs
        ))

    def add_ollama(self, base_url: str | None = None, **kwargs) -> ConfigBuilder:
        return self.add_provider(ProviderConfig(
            name=ProviderName.OLLAMA,
            base_url=base_url or PROVIDER_BASE_URLS[ProviderName.OLLAMA],
            **kwargs,
        ))

    def build(self) -> ClientConfig:
        if not self._providers:
            raise ConfigError(["At least one provider must be configured"])
        return ClientConfig(
            providers=list(self._providers),
            default_provider=self._default_provider or self._providers[0].name,
            default_model=self._default_model,
            retry_config=self._retry,
            circuit_breaker=self._circuit_breaker,
            debug=self._debug,
            concurrency_limit=self._concurrency_limit,
        )


def _env_key(provider: ProviderName) -> str | None:
    env_var = API_KEY_ENV_VARS[provider]
    return os.environ.get(env_var) if env_var else None


# ── Quick helpers ─────────────────────────────────────────────────


def create_config(
    *,
    gemini_key: str | None = None,
    openai_key: str | None = None,
    anthropic_key: str | None = None,
    ollama_url: str | None = None,
    default_provider: ProviderName | str | None = None,
    debug: bool = False,
) -> ClientConfig:
    """Build a config from explicit credentials.

    Passing ``ollama_url=""`` registers Ollama at its default address.
    """
    builder = ConfigBuilder().set_debug(debug)
    if gemini_key:
        builder.add_gemini(gemini_key)
    if openai_key:
        builder.add_openai(openai_key)
    if anthropic_key:
        builder.add_anthropic(anthropic_key)
    if ollama_url is not None:
        builder.add_ollama(ollama_url or None)
    if default_provider:
        builder.set_default_provider(default_provider)
    return builder.build()


def create_gemini_only_config(api_key: str) -> ClientConfig:
    return ConfigBuilder().add_gemini(api_key).set_default_provider(ProviderName.GEMINI).build()


def create_multi_provider_config(
    *,
    gemini: str | None = None,
    openai: str | None = None,
    anthropic: str | None = None,
) -> ClientConfig:
    builder = ConfigBuilder()
    if gemini:
        builder.add_gemini(gemini)
    if openai:
        builder.add_openai(openai)
    if anthropic:
        builder.add_anthropic(anthropic)
    return builder.build()
