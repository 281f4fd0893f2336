"""Configuration loading for the devmind LLM gateway."""

from devmind.config.loader import (
    config_from_env,
    get_config_path,
    load_client_config,
    save_client_config,
)

__all__ = ["config_from_env", "get_config_path", "load_client_config", "save_client_config"]
