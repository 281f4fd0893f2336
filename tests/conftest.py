"""Test configuration and shared fixtures."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from devmind.llm.config import ProviderConfig, RetryConfig  # noqa: E402
from devmind.llm.types import ProviderName  # noqa: E402


@pytest.fixture(scope="session")
def project_path():
    """Return the project root path."""
    return Path(__file__).parent.parent


@pytest.fixture
def fast_retry():
    """Retry config with millisecond delays so retry tests stay fast."""
    return RetryConfig(max_retries=2, initial_delay_ms=1, max_delay_ms=5)


@pytest.fixture
def no_retry():
    return RetryConfig(max_retries=0, initial_delay_ms=1, max_delay_ms=1)


@pytest.fixture
def provider_config():
    """Factory for a ProviderConfig with a dummy key."""
    def _make(name: ProviderName, **kwargs) -> ProviderConfig:
        kwargs.setdefault("api_key", None if name == ProviderName.OLLAMA else "test-key")
        return ProviderConfig(name=name, **kwargs)
    return _make


@pytest.fixture
def http_response():
    """Factory for a mocked httpx response, as returned by a patched AsyncClient.post."""
    def _make(data, status_code: int = 200, headers: dict | None = None) -> MagicMock:
        resp = MagicMock()
        resp.status_code = status_code
        resp.json.return_value = data
        resp.text = json.dumps(data)
        resp.headers = headers or {}
        return resp
    return _make


@pytest.fixture
def stream_client():
    """Factory for an httpx.AsyncClient that answers every request with ``body``.

    Requests are appended to ``captured`` when a list is given.
    """
    def _make(body, status_code: int = 200, captured: list | None = None) -> httpx.AsyncClient:
        content = body.encode() if isinstance(body, str) else body

        def handler(request: httpx.Request) -> httpx.Response:
            if captured is not None:
                captured.append(request)
            return httpx.Response(status_code, content=content)

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return _make


def sse(*events) -> str:
    """Encode dict events as an SSE body."""
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events)


@pytest.fixture
def sse_body():
    return sse
