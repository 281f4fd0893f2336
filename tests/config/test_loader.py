"""Tests for environment and JSON config loading."""

import json

import pytest

from devmind.config.loader import (
    camel_to_snake,
    config_from_env,
    convert_keys,
    convert_to_camel,
    get_config_path,
    load_client_config,
    save_client_config,
    snake_to_camel,
)
from devmind.llm.config import ConfigBuilder, ConfigError
from devmind.llm.types import ProviderName


def test_camel_snake_helpers():
    assert camel_to_snake("requestsPerMinute") == "requests_per_minute"
    assert snake_to_camel("reset_timeout_ms") == "resetTimeoutMs"
    assert convert_keys({"apiKey": "k", "rateLimit": {"tokensPerMinute": 5}}) == {
        "api_key": "k", "rate_limit": {"tokens_per_minute": 5},
    }
    assert convert_to_camel([{"base_url": "x"}]) == [{"baseUrl": "x"}]


def test_default_config_path():
    path = get_config_path()
    assert path.name == "llm.json"
    assert path.parent.name == ".devmind"


def test_config_from_env():
    config = config_from_env({
        "GEMINI_API_KEY": "AI-test",
        "ANTHROPIC_API_KEY": "sk-ant",
        "OLLAMA_BASE_URL": "http://gpu-box:11434",
        "DEVMIND_DEFAULT_PROVIDER": "Anthropic",
        "DEVMIND_DEBUG": "true",
    })
    assert [p.name for p in config.providers] == [ProviderName.GEMINI, ProviderName.ANTHROPIC, ProviderName.OLLAMA]
    assert config.default_provider == ProviderName.ANTHROPIC
    assert config.debug is True
    assert config.providers[2].base_url == "http://gpu-box:11434"


def test_config_from_env_defaults_to_first_provider():
    config = config_from_env({"OPENAI_API_KEY": "sk"})
    assert config.default_provider == ProviderName.OPENAI
    assert config.debug is False


def test_config_from_env_empty():
    with pytest.raises(ConfigError):
        config_from_env({})


def test_save_and_load_roundtrip(tmp_path):
    path = tmp_path / "nested" / "llm.json"
    original = (
        ConfigBuilder()
        .add_gemini("AI-key")
        .add_ollama()
        .set_default_provider("ollama")
        .set_concurrency_limit(3)
        .build()
    )
    save_client_config(original, path)

    raw = json.loads(path.read_text())
    assert raw["defaultProvider"] == "ollama"
    assert raw["concurrencyLimit"] == 3
    assert raw["providers"][0]["apiKey"] == "AI-key"
    assert "requestsPerMinute" in raw["providers"][0]["rateLimit"]

    loaded = load_client_config(path)
    assert loaded.model_dump() == original.model_dump()


def test_load_camel_case_file(tmp_path):
    path = tmp_path / "llm.json"
    path.write_text(json.dumps({
        "providers": [{"name": "openai", "apiKey": "sk", "defaultModel": "gpt-4o-mini"}],
        "retryConfig": {"maxRetries": 1},
        "circuitBreaker": {"failureThreshold": 2},
    }))
    config = load_client_config(path)
    assert config.providers[0].default_model == "gpt-4o-mini"
    assert config.retry_config.max_retries == 1
    assert config.retry_config.initial_delay_ms == 1000
    assert config.circuit_breaker.failure_threshold == 2


def test_load_invalid_json(tmp_path):
    path = tmp_path / "llm.json"
    path.write_text("{not json")
    with pytest.raises(ConfigError, match="Failed to parse"):
        load_client_config(path)


def test_load_invalid_provider(tmp_path):
    path = tmp_path / "llm.json"
    path.write_text(json.dumps({"providers": [{"name": "mistral-cloud"}]}))
    with pytest.raises(ConfigError):
        load_client_config(path)


def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_client_config(tmp_path / "absent.json")
