"""Configuration loading utilities."""

import json
import os
from pathlib import Path
from typing import Any

from loguru import logger

from devmind.llm.config import (
    API_KEY_ENV_VARS,
    ClientConfig,
    ConfigBuilder,
    ConfigError,
)
from devmind.llm.types import ProviderName

_TRUTHY = ("1", "true", "yes", "on")


def get_config_path() -> Path:
    """Get the default configuration file path (~/.devmind/llm.json)."""
    return Path.home() / ".devmind" / "llm.json"


def config_from_env(env: dict[str, str] | None = None) -> ClientConfig:
    """
    Build a ClientConfig from environment variables.

    Reads GEMINI_API_KEY, OPENAI_API_KEY, ANTHROPIC_API_KEY and OLLAMA_BASE_URL;
    DEVMIND_DEFAULT_PROVIDER picks the default and DEVMIND_DEBUG enables debug logging.

    Args:
        env: Mapping to read instead of os.environ.

    Raises:
        ConfigError: No provider is configured.
    """
    env = os.environ if env is None else env
    builder = ConfigBuilder()

    for provider, add in (
        (ProviderName.GEMINI, builder.add_gemini),
        (ProviderName.OPENAI, builder.add_openai),
        (ProviderName.ANTHROPIC, builder.add_anthropic),
    ):
        key = env.get(API_KEY_ENV_VARS[provider])
        if key:
            add(key)

    ollama_url = env.get("OLLAMA_BASE_URL")
    if ollama_url:
        builder.add_ollama(ollama_url)

    default = env.get("DEVMIND_DEFAULT_PROVIDER")
    if default:
        builder.set_default_provider(default.strip().lower())

    if env.get("DEVMIND_DEBUG", "").strip().lower() in _TRUTHY:
        builder.set_debug(True)

    config = builder.build()
    logger.debug(f"config_from_env: providers={[p.name.value for p in config.providers]}")
    return config


def load_client_config(config_path: Path | None = None) -> ClientConfig:
    """
    Load a ClientConfig from a camelCase JSON file.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Raises:
        FileNotFoundError: The file does not exist.
        ConfigError: The file is not valid JSON or does not describe a valid config.
    """
    path = config_path or get_config_path()
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError([f"Failed to parse {path}: {e}"]) from e

    try:
        config = ClientConfig.model_validate(convert_keys(data))
    except ValueError as e:
        raise ConfigError([f"Failed to load config from {path}: {e}"]) from e

    logger.info(f"Loaded LLM config from {path} ({len(config.providers)} providers)")
    return config


def save_client_config(config: ClientConfig, config_path: Path | None = None) -> None:
    """
    Save configuration to file.

    Args:
        config: Configuration to save.
        config_path: Optional path to save to. Uses default if not provided.
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    # Convert to camelCase format
    data = config.model_dump(mode="json", exclude_none=True)
    data = convert_to_camel(data)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
