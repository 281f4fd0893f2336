"""Static model catalogs per provider.

These are the models each adapter advertises through ``list_models()``
when the vendor offers no discovery endpoint (or it is unreachable).
Ollama replaces its catalog with whatever ``/api/tags`` reports.
"""

from __future__ import annotations

from typing import Optional

from devmind.llm.types import ModelInfo, ProviderName

GEMINI_MODELS: list[ModelInfo] = [
    ModelInfo("gemini-2.5-pro", "Gemini 2.5 Pro", 1_000_000, 8192, supports_vision=True),
    ModelInfo("gemini-2.5-flash", "Gemini 2.5 Flash", 1_000_000, 8192, supports_vision=True),
    ModelInfo("gemini-3-pro-preview", "Gemini 3 Pro Preview", 2_000_000, 65536, supports_vision=True),
]

OPENAI_MODELS: list[ModelInfo] = [
    ModelInfo("gpt-4o", "GPT-4o", 128_000, 16384, supports_vision=True),
    ModelInfo("gpt-4o-mini", "GPT-4o Mini", 128_000, 16384, supports_vision=True),
    ModelInfo("gpt-4-turbo", "GPT-4 Turbo", 128_000, 4096, supports_vision=True),
    # o1 family: no tools, no system prompt, no temperature
    ModelInfo("o1", "o1", 200_000, 100_000, supports_tools=False),
    ModelInfo("o1-mini", "o1 Mini", 128_000, 65536, supports_tools=False),
]

ANTHROPIC_MODELS: list[ModelInfo] = [
    ModelInfo("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", 200_000, 8192, supports_vision=True),
    ModelInfo("claude-3-5-haiku-20241022", "Claude 3.5 Haiku", 200_000, 8192),
    ModelInfo("claude-3-opus-20240229", "Claude 3 Opus", 200_000, 4096, supports_vision=True),
    ModelInfo("claude-3-haiku-20240307", "Claude 3 Haiku", 200_000, 4096, supports_vision=True),
]

OLLAMA_MODELS: list[ModelInfo] = [
    ModelInfo("llama3.2", "Llama 3.2", 128_000),
    ModelInfo("llama3.2:1b", "Llama 3.2 1B", 128_000),
    ModelInfo("codellama", "Code Llama", 16_000, supports_tools=False),
    ModelInfo("mistral", "Mistral", 32_000),
    ModelInfo("mixtral", "Mixtral", 32_000),
    ModelInfo("llava", "LLaVA", 4096, supports_vision=True, supports_tools=False),
]

CATALOGS: dict[ProviderName, list[ModelInfo]] = {
    ProviderName.GEMINI: GEMINI_MODELS,
    ProviderName.OPENAI: OPENAI_MODELS,
    ProviderName.ANTHROPIC: ANTHROPIC_MODELS,
    ProviderName.OLLAMA: OLLAMA_MODELS,
}


def catalog_for(provider: ProviderName | str) -> list[ModelInfo]:
    """Fresh copy of a provider's catalog (adapters may replace entries)."""
    return list(CATALOGS[ProviderName(provider)])


def find_model(model_id: str, provider: ProviderName | str | None = None) -> Optional[ModelInfo]:
    providers = [ProviderName(provider)] if provider else list(CATALOGS)
    for name in providers:
        for info in CATALOGS[name]:
            if info.id == model_id:
                return info
    return None

