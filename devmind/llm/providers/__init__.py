"""Vendor adapters behind one provider contract."""

from devmind.llm.providers.anthropic import AnthropicProvider
from devmind.llm.providers.base import BaseProvider
from devmind.llm.providers.gemini import GeminiProvider
from devmind.llm.providers.ollama import OllamaProvider
from devmind.llm.providers.openai import OpenAIProvider
from devmind.llm.types import ProviderName

PROVIDER_CLASSES: dict[ProviderName, type[BaseProvider]] = {
    ProviderName.GEMINI: GeminiProvider,
    ProviderName.OPENAI: OpenAIProvider,
    ProviderName.ANTHROPIC: AnthropicProvider,
    ProviderName.OLLAMA: OllamaProvider,
}

__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "GeminiProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "PROVIDER_CLASSES",
]
