"""
基于 LiteLLM 的 LLM 提供者。

LiteLLM 把各家服务商的 API 统一成 OpenAI 兼容格式（类似 Java 的 JDBC：一套接口，多种驱动）。
服务商差异（环境变量、路由前缀、网关）全部由 registry.py 驱动。

数据流:
    runtime → chat() → _resolve_model() → acompletion() → _to_response() → LLMResponse

调用失败时返回 finish_reason="error" 的 LLMResponse 而不抛异常，
由运行时决定是否切换到备用模型。
"""

import json
import os
from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from lanebot.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from lanebot.providers.registry import ProviderSpec, find_by_model, find_gateway

# 思考等级 → reasoning_effort；off 不传
_REASONING_EFFORT = {
    "minimal": "minimal",
    "low": "low",
    "medium": "medium",
    "high": "high",
    "xhigh": "high",
}


def _tool_calls(message: Any) -> list[ToolCallRequest]:
    calls = []
    for tc in getattr(message, "tool_calls", None) or []:
        args = tc.function.arguments
        if isinstance(args, str):
            try:
                args = json.loads(args)
            except json.JSONDecodeError:
                args = {"raw": args}
        calls.append(ToolCallRequest(id=tc.id, name=tc.function.name, arguments=args))
    return calls


def _usage(response: Any) -> dict[str, int]:
    usage = getattr(response, "usage", None)
    if not usage:
        return {}
    return {
        key: getattr(usage, key, 0) or 0
        for key in ("prompt_tokens", "completion_tokens", "total_tokens")
    }


class LiteLLMProvider(LLMProvider):
    """
    LiteLLM 实现，一个实例对应一个服务商（见 ProviderPool）。

    参数:
        api_key: API 密钥
        api_base: 自定义 API 地址
        default_model: 默认模型引用
        extra_headers: 额外请求头
        provider_name: 配置中的服务商名，用于识别网关/本地部署
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "anthropic/claude-opus-4-5",
        extra_headers: dict[str, str] | None = None,
        provider_name: str | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        self._gateway: ProviderSpec | None = find_gateway(provider_name, api_key, api_base)

        spec = self._gateway or find_by_model(default_model)
        if api_key and spec:
            # 网关的 key 覆盖环境变量，直连服务商的 key 不覆盖用户已设置的
            if self._gateway:
                os.environ[spec.env_key] = api_key
            else:
                os.environ.setdefault(spec.env_key, api_key)

        litellm.suppress_debug_info = True
        litellm.drop_params = True

    def _resolve_model(self, model: str) -> str:
        """provider/model 引用 → LiteLLM 路由名（网关前缀或 registry 的 litellm_prefix）。"""
        if self._gateway:
            prefix = self._gateway.litellm_prefix
            if prefix and not model.startswith(f"{prefix}/"):
                return f"{prefix}/{model}"
            return model

        spec = find_by_model(model)
        if spec and spec.litellm_prefix and not model.startswith(spec.skip_prefixes):
            return f"{spec.litellm_prefix}/{model}"
        return model

    def _request_kwargs(self, model: str, thinking: str | None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"model": model}
        optional = {
            "reasoning_effort": _REASONING_EFFORT.get(thinking or ""),
            "api_key": self.api_key,
            "api_base": self.api_base,
            "extra_headers": self.extra_headers,
        }
        kwargs.update({k: v for k, v in optional.items() if v})
        return kwargs

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        thinking: str | None = None,
    ) -> LLMResponse:
        route = self._resolve_model(model or self.default_model)
        kwargs = self._request_kwargs(route, thinking)
        kwargs.update(messages=messages, max_tokens=max_tokens, temperature=temperature)
        if tools:
            kwargs.update(tools=tools, tool_choice="auto")

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            logger.warning(f"LLM call failed for {route}: {e}")
            return LLMResponse(content=f"Error calling LLM: {e}", finish_reason="error")
        return self._to_response(response)

    @staticmethod
    def _to_response(response: Any) -> LLMResponse:
        choice = response.choices[0]
        message = choice.message
        return LLMResponse(
            content=message.content,
            tool_calls=_tool_calls(message),
            finish_reason=choice.finish_reason or "stop",
            usage=_usage(response),
            reasoning_content=getattr(message, "reasoning_content", None),
        )

    def get_default_model(self) -> str:
        return self.default_model
