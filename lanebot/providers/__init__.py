"""
LLM 提供者层。

- base.py             : LLMProvider 接口与 LLMResponse
- litellm_provider.py : 基于 LiteLLM 的唯一实现
- registry.py         : 服务商元数据注册表
- catalog.py          : 模型目录（/model 指令的候选集合）
- pool.py             : 按服务商缓存 provider 实例
"""

from lanebot.providers.base import LLMProvider, LLMResponse
from lanebot.providers.catalog import ModelCatalogEntry, load_model_catalog
from lanebot.providers.litellm_provider import LiteLLMProvider
from lanebot.providers.pool import ProviderPool

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider", "ModelCatalogEntry", "ProviderPool", "load_model_catalog"]
