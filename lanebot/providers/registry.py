"""
LLM 服务商注册表 - 服务商元数据的集中定义。

所有服务商差异（环境变量名、LiteLLM 路由前缀、网关检测规则）都声明在 PROVIDERS 里，
代码逻辑保持通用。PROVIDERS 的顺序即匹配优先级，网关排在最前。

新增服务商：
  1. 在 PROVIDERS 中追加一条 ProviderSpec
  2. 在 config/schema.py 的 ProvidersConfig 中增加同名字段
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ProviderSpec:
    """
    单个服务商的元数据。

    属性:
        name: 配置字段名（providers.{name}），同时也是模型引用 provider/model 中的 provider
        keywords: 模型名关键词（小写），用于按模型名匹配服务商
        env_key: LiteLLM 读取的 API Key 环境变量名
        display_name: `lanebot status` 中显示的名称
        litellm_prefix: LiteLLM 路由前缀，为空表示 LiteLLM 原生识别
        skip_prefixes: 模型名已带这些前缀时不再追加
        is_gateway: 是否为可路由任意模型的网关
        is_local: 是否为本地部署
        detect_by_key_prefix: 按 API Key 前缀识别网关
        detect_by_base_keyword: 按 API Base 关键词识别网关
        default_api_base: 默认 API 地址
    """

    name: str
    keywords: tuple[str, ...]
    env_key: str
    display_name: str = ""
    litellm_prefix: str = ""
    skip_prefixes: tuple[str, ...] = ()
    is_gateway: bool = False
    is_local: bool = False
    detect_by_key_prefix: str = ""
    detect_by_base_keyword: str = ""
    default_api_base: str = ""

    @property
    def label(self) -> str:
        return self.display_name or self.name.title()


PROVIDERS: tuple[ProviderSpec, ...] = (
    # 网关：按 api_key / api_base 识别
    ProviderSpec(
        name="openrouter",
        keywords=("openrouter",),
        env_key="OPENROUTER_API_KEY",
        display_name="OpenRouter",
        litellm_prefix="openrouter",
        is_gateway=True,
        detect_by_key_prefix="sk-or-",
        detect_by_base_keyword="openrouter",
        default_api_base="https://openrouter.ai/api/v1",
    ),
    # 标准服务商：按模型名关键词识别
    ProviderSpec(
        name="anthropic",
        keywords=("anthropic", "claude"),
        env_key="ANTHROPIC_API_KEY",
        display_name="Anthropic",
    ),
    ProviderSpec(
        name="openai",
        keywords=("openai", "gpt"),
        env_key="OPENAI_API_KEY",
        display_name="OpenAI",
    ),
    ProviderSpec(
        name="deepseek",
        keywords=("deepseek",),
        env_key="DEEPSEEK_API_KEY",
        display_name="DeepSeek",
        litellm_prefix="deepseek",
        skip_prefixes=("deepseek/",),
    ),
    ProviderSpec(
        name="gemini",
        keywords=("gemini",),
        env_key="GEMINI_API_KEY",
        display_name="Gemini",
        litellm_prefix="gemini",
        skip_prefixes=("gemini/",),
    ),
    # 本地部署：按配置 key 识别
    ProviderSpec(
        name="vllm",
        keywords=("vllm",),
        env_key="HOSTED_VLLM_API_KEY",
        display_name="vLLM/Local",
        litellm_prefix="hosted_vllm",
        is_local=True,
    ),
)


def find_by_model(model: str) -> ProviderSpec | None:
    """
    按模型名匹配标准服务商（跳过网关与本地部署）。

    "provider/model" 形式优先按 provider 名匹配，其次按关键词。
    """
    model_lower = model.lower()
    if "/" in model_lower:
        spec = find_by_name(model_lower.split("/", 1)[0])
        if spec and not (spec.is_gateway or spec.is_local):
            return spec
    for spec in PROVIDERS:
        if spec.is_gateway or spec.is_local:
            continue
        if any(kw in model_lower for kw in spec.keywords):
            return spec
    return None


def find_gateway(
    provider_name: str | None = None,
    api_key: str | None = None,
    api_base: str | None = None,
) -> ProviderSpec | None:
    """
    识别网关或本地部署：配置 key 名 → API Key 前缀 → API Base 关键词。
    """
    if provider_name:
        spec = find_by_name(provider_name)
        if spec and (spec.is_gateway or spec.is_local):
            return spec
    for spec in PROVIDERS:
        if spec.detect_by_key_prefix and api_key and api_key.startswith(spec.detect_by_key_prefix):
            return spec
        if spec.detect_by_base_keyword and api_base and spec.detect_by_base_keyword in api_base:
            return spec
    return None


def find_by_name(name: str) -> ProviderSpec | None:
    """按配置字段名查找。"""
    for spec in PROVIDERS:
        if spec.name == name:
            return spec
    return None
