"""
按服务商缓存 LLMProvider 实例。

会话可以用 /model 切到别的服务商，运行时按 "provider/model" 引用取对应实例；
同一服务商只创建一次 LiteLLMProvider，API Key / API Base 取自 providers 配置。
"""

from lanebot.config.schema import Config
from lanebot.providers.base import LLMProvider
from lanebot.providers.litellm_provider import LiteLLMProvider


class ProviderPool:
    """
    LLMProvider 池。

    参数:
        config: 根配置
    """

    def __init__(self, config: Config):
        self.config = config
        self._providers: dict[str, LLMProvider] = {}

    def get(self, model_ref: str) -> LLMProvider:
        """
        获取能调用 model_ref 的 provider。

        参数:
            model_ref: "provider/model" 引用
        """
        name = self.config.get_provider_name(model_ref) or model_ref.split("/", 1)[0]
        provider = self._providers.get(name)
        if provider is None:
            p = self.config.get_provider(model_ref)
            provider = LiteLLMProvider(
                api_key=p.api_key if p else None,
                api_base=self.config.get_api_base(model_ref),
                default_model=model_ref,
                extra_headers=p.extra_headers if p else None,
                provider_name=name,
            )
            self._providers[name] = provider
        return provider

    def has_credentials(self, model_ref: str | None = None) -> bool:
        """默认（或指定）模型是否配置了 API Key；本地部署视为已配置。"""
        model_ref = model_ref or self.config.agents.defaults.model
        p = self.config.get_provider(model_ref)
        name = self.config.get_provider_name(model_ref)
        return bool(p and p.api_key) or name == "vllm"
