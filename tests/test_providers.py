from types import SimpleNamespace

from conftest import make_config

from lanebot.providers import litellm_provider
from lanebot.providers.litellm_provider import LiteLLMProvider
from lanebot.providers.pool import ProviderPool


def _completion(content=None, tool_calls=None, finish_reason="stop"):
    message = SimpleNamespace(content=content, tool_calls=tool_calls, reasoning_content=None)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=11, completion_tokens=4, total_tokens=15),
    )


async def test_chat_maps_thinking_and_parses_tool_calls(monkeypatch):
    seen = {}

    async def fake_acompletion(**kwargs):
        seen.update(kwargs)
        call = SimpleNamespace(id="c1", function=SimpleNamespace(name="list_dir", arguments='{"path": "."}'))
        return _completion(tool_calls=[call], finish_reason="tool_calls")

    monkeypatch.setattr(litellm_provider, "acompletion", fake_acompletion)
    provider = LiteLLMProvider(default_model="openai/gpt-5.2")
    tools = [{"type": "function", "function": {"name": "list_dir"}}]

    response = await provider.chat([{"role": "user", "content": "ls"}], tools=tools, thinking="xhigh")

    assert seen["reasoning_effort"] == "high"
    assert seen["tool_choice"] == "auto"
    assert response.tool_calls[0].arguments == {"path": "."}
    assert response.finish_reason == "tool_calls"
    assert response.usage == {"prompt_tokens": 11, "completion_tokens": 4, "total_tokens": 15}


async def test_chat_without_thinking_sends_no_effort(monkeypatch):
    seen = {}

    async def fake_acompletion(**kwargs):
        seen.update(kwargs)
        return _completion(content="hi")

    monkeypatch.setattr(litellm_provider, "acompletion", fake_acompletion)
    response = await LiteLLMProvider(default_model="openai/gpt-5").chat([{"role": "user", "content": "hi"}])
    assert "reasoning_effort" not in seen
    assert response.content == "hi"


async def test_failures_become_error_responses(monkeypatch):
    async def boom(**kwargs):
        raise RuntimeError("rate limited")

    monkeypatch.setattr(litellm_provider, "acompletion", boom)
    response = await LiteLLMProvider().chat([{"role": "user", "content": "hi"}])
    assert response.is_error
    assert "rate limited" in response.content


def test_gateway_prefixes_model_refs():
    provider = LiteLLMProvider(provider_name="openrouter")
    assert provider._resolve_model("anthropic/claude-opus-4-5") == "openrouter/anthropic/claude-opus-4-5"


def test_pool_reuses_provider_per_vendor(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    config = make_config(tmp_path, providers={"openai": {"api_key": "sk-test"}})
    pool = ProviderPool(config)

    assert pool.get("openai/gpt-5") is pool.get("openai/gpt-5-mini")
    assert pool.has_credentials("openai/gpt-5")
    assert not ProviderPool(make_config(tmp_path)).has_credentials()
