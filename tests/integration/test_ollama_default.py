"""Integration: an Ollama-only setup runs end to end without any API key."""

import json

import httpx
import pytest

from devmind.llm.client import LLMClient
from devmind.llm.config import ClientConfig, ProviderConfig, create_config
from devmind.llm.providers.ollama import OllamaProvider
from devmind.llm.types import ChatRequest, Message, ToolDefinition


def _ndjson(*records) -> bytes:
    return ("\n".join(json.dumps(r) for r in records) + "\n").encode()


@pytest.fixture
def ollama_server():
    """MockTransport standing in for a local Ollama daemon.

    The first chat turn asks for ``list_dir``; every later turn answers in text.
    """
    state = {"chat_calls": 0, "bodies": []}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "qwen2.5-coder:7b"}]})

        body = json.loads(request.content)
        state["bodies"].append(body)
        state["chat_calls"] += 1
        if state["chat_calls"] == 1:
            message = {"role": "assistant", "content": "", "tool_calls": [
                {"function": {"name": "list_dir", "arguments": {"path": "src"}}},
            ]}
        else:
            message = {"role": "assistant", "content": "src has main.py"}

        final = {"model": body["model"], "message": message, "done": True, "prompt_eval_count": 10, "eval_count": 5}
        if body.get("stream"):
            return httpx.Response(200, content=_ndjson(
                {"message": {"role": "assistant", "content": message["content"]}, "done": False},
                {**final, "message": {**message, "content": ""}},
            ))
        return httpx.Response(200, json=final)

    state["transport"] = httpx.MockTransport(handler)
    return state


@pytest.fixture
def client(ollama_server):
    client = LLMClient(create_config(ollama_url=""))
    client.register_provider(OllamaProvider(
        client.config.providers[0],
        client.config.retry_config,
        http_client=httpx.AsyncClient(transport=ollama_server["transport"]),
    ))
    return client


async def _list_dir(args, context):
    return "main.py"


LIST_DIR = ToolDefinition(
    name="list_dir",
    description="List a directory",
    parameters={"type": "object", "properties": {"path": {"type": "string"}}},
    execute=_list_dir,
)


def test_ollama_is_default(client):
    assert client.get_active_provider_name() == "ollama"
    assert client.get_available_providers() == ["ollama"]


def test_ollama_only_config_without_default_provider():
    config = ClientConfig(providers=[ProviderConfig(name="ollama", base_url="http://localhost:11434")])
    assert config.default_provider is None
    assert LLMClient(config).get_active_provider_name() == "ollama"


@pytest.mark.asyncio
async def test_agent_loop_end_to_end(client, ollama_server):
    resp = await client.run_agent_loop(ChatRequest(messages=[Message.user("What is in src?")]), [LIST_DIR])

    assert resp.content == "src has main.py"
    assert ollama_server["chat_calls"] == 2
    second = ollama_server["bodies"][1]
    assert second["model"] == "llama3.2"
    assert second["messages"][-1] == {"role": "tool", "content": "main.py"}
    assert second["tools"][0]["function"]["name"] == "list_dir"


@pytest.mark.asyncio
async def test_streaming_agent_loop_end_to_end(client, ollama_server):
    events = [e async for e in client.run_agent_loop_streaming(
        ChatRequest(messages=[Message.user("What is in src?")]), [LIST_DIR]
    )]

    assert [e.type for e in events] == ["tool_call", "tool_result", "text", "done"]
    assert events[1].tool_result == "main.py"
    assert events[2].content == "src has main.py"


@pytest.mark.asyncio
async def test_discovers_installed_models(client):
    models = await client.list_models()
    assert [m.id for m in models] == ["qwen2.5-coder:7b"]
    await client.close()
