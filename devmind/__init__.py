"""
devmind - Multi-provider LLM gateway for the DevMind agent IDE.
"""

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy imports so `import devmind` stays light."""
    if name == "LLMClient":
        from devmind.llm.client import LLMClient
        return LLMClient
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["__version__", "LLMClient"]
