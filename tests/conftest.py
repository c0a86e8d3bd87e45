"""测试公共夹具：临时会话存储、假 LLM 提供者。"""

import os
from pathlib import Path
from typing import Any

import pytest

from lanebot.config.schema import Config
from lanebot.providers.base import LLMProvider, LLMResponse
from lanebot.session.store import clear_session_store_cache


class FakeProvider(LLMProvider):
    """按顺序返回预设响应的提供者，记录每次调用的参数。"""

    def __init__(self, responses: list[LLMResponse] | None = None, model: str = "openai/gpt-5"):
        super().__init__(api_key="test")
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []
        self.model = model

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        thinking: str | None = None,
    ) -> LLMResponse:
        self.calls.append({"messages": list(messages), "model": model, "thinking": thinking})
        if not self.responses:
            return LLMResponse(content="done")
        return self.responses.pop(0)

    def get_default_model(self) -> str:
        return self.model


class FakePool:
    """按模型引用返回 FakeProvider；未登记的引用共用 default。"""

    def __init__(self, default: FakeProvider | None = None, by_ref: dict[str, FakeProvider] | None = None):
        self.default = default or FakeProvider()
        self.by_ref = by_ref or {}

    def get(self, model_ref: str) -> LLMProvider:
        return self.by_ref.get(model_ref, self.default)

    def has_credentials(self, model_ref: str | None = None) -> bool:
        return True


def make_config(tmp_path: Path, **overrides: Any) -> Config:
    """构造把会话存储和工作区都放在 tmp_path 下的配置。"""
    data: dict[str, Any] = {
        "agents": {"defaults": {"workspace": str(tmp_path / "workspace"), "model": "openai/gpt-5"}},
        "session": {"store": str(tmp_path / "agents" / "{agentId}" / "sessions" / "sessions.json")},
    }
    for section, values in overrides.items():
        target = data.setdefault(section, {})
        for key, value in values.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                target[key] = {**target[key], **value}
            else:
                target[key] = value
    return Config.model_validate(data)


@pytest.fixture(autouse=True)
def _isolate_store_cache(monkeypatch):
    for name in list(os.environ):
        if name.startswith("LANEBOT_"):
            monkeypatch.delenv(name, raising=False)
    clear_session_store_cache()
    yield
    clear_session_store_cache()


@pytest.fixture
def config(tmp_path) -> Config:
    (tmp_path / "workspace").mkdir()
    return make_config(tmp_path)


@pytest.fixture
def store_path(config) -> Path:
    return config.store_path()
