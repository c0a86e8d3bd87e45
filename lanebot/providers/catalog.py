"""
模型目录 (providers/catalog.py)

模块职责：
    给 /model 指令和会话管理提供候选模型集合：内置条目 + agents.defaults.models 中的配置条目。
    每个条目带别名、上下文窗口以及是否支持 xhigh 思考等级。

【二开提示】
    新模型上线时优先在配置文件 agents.defaults.models 里声明，
    内置表只放常用的几个。
"""

from dataclasses import dataclass, field, replace

from lanebot.config.schema import Config
from lanebot.providers.registry import find_by_model

DEFAULT_PROVIDER = "anthropic"


@dataclass(frozen=True)
class ModelCatalogEntry:
    """
    模型目录条目。

    属性:
        provider: 服务商名（与 registry 的 name 一致）
        model: 模型名
        aliases: 别名（小写）
        context_window: 上下文窗口 token 数
        supports_xhigh: 是否支持 xhigh 思考等级
    """
    provider: str
    model: str
    aliases: tuple[str, ...] = field(default_factory=tuple)
    context_window: int | None = None
    supports_xhigh: bool = False

    @property
    def key(self) -> str:
        return f"{self.provider}/{self.model}"


BUILTIN_MODELS: tuple[ModelCatalogEntry, ...] = (
    ModelCatalogEntry("anthropic", "claude-opus-4-5", ("opus",), 200_000),
    ModelCatalogEntry("anthropic", "claude-sonnet-4-5", ("sonnet",), 200_000),
    ModelCatalogEntry("anthropic", "claude-haiku-4-5", ("haiku",), 200_000),
    ModelCatalogEntry("openai", "gpt-5.2", (), 400_000, supports_xhigh=True),
    ModelCatalogEntry("openai", "gpt-5", ("gpt",), 400_000),
    ModelCatalogEntry("openai", "gpt-5-mini", (), 400_000),
    ModelCatalogEntry("openai", "gpt-5-nano", (), 400_000),
    ModelCatalogEntry("deepseek", "deepseek-chat", (), 128_000),
    ModelCatalogEntry("deepseek", "deepseek-reasoner", ("r1",), 128_000),
    ModelCatalogEntry("gemini", "gemini-2.5-pro", ("gemini",), 1_048_576),
    ModelCatalogEntry("gemini", "gemini-2.5-flash", ("flash",), 1_048_576),
)


def parse_model_ref(raw: str, default_provider: str = DEFAULT_PROVIDER) -> tuple[str, str] | None:
    """
    解析模型引用。

    "provider/model" 直接拆分；裸模型名按 registry 关键词推断服务商，推断不出用 default_provider。
    空串返回 None。
    """
    value = (raw or "").strip()
    if not value:
        return None
    if "/" in value:
        provider, model = value.split("/", 1)
        provider, model = provider.strip().lower(), model.strip()
        if not provider or not model:
            return None
        return provider, model
    spec = find_by_model(value)
    return (spec.name if spec else default_provider), value


def load_model_catalog(config: Config) -> list[ModelCatalogEntry]:
    """
    构建模型目录：内置条目 + 配置条目 + 默认模型。

    配置条目的别名追加到已有别名，context_window / supports_xhigh 覆盖内置值。
    """
    entries: dict[str, ModelCatalogEntry] = {e.key: e for e in BUILTIN_MODELS}

    for ref, model_cfg in config.agents.defaults.models.items():
        parsed = parse_model_ref(ref)
        if parsed is None:
            continue
        provider, model = parsed
        key = f"{provider}/{model}"
        entry = entries.get(key) or ModelCatalogEntry(provider, model)
        aliases = entry.aliases
        if model_cfg.alias and model_cfg.alias.strip():
            alias = model_cfg.alias.strip().lower()
            if alias not in aliases:
                aliases = (*aliases, alias)
        entries[key] = replace(
            entry,
            aliases=aliases,
            context_window=model_cfg.context_window or entry.context_window,
            supports_xhigh=(
                entry.supports_xhigh if model_cfg.supports_xhigh is None else model_cfg.supports_xhigh
            ),
        )

    default = parse_model_ref(config.agents.defaults.model)
    if default and f"{default[0]}/{default[1]}" not in entries:
        entries[f"{default[0]}/{default[1]}"] = ModelCatalogEntry(default[0], default[1])

    return list(entries.values())


def find_catalog_entry(catalog: list[ModelCatalogEntry], provider: str, model: str) -> ModelCatalogEntry | None:
    key = f"{provider}/{model}".lower()
    for entry in catalog:
        if entry.key.lower() == key:
            return entry
    return None


def supports_xhigh(catalog: list[ModelCatalogEntry], provider: str, model: str) -> bool:
    entry = find_catalog_entry(catalog, provider, model)
    return bool(entry and entry.supports_xhigh)


def format_xhigh_hint(catalog: list[ModelCatalogEntry]) -> str:
    """列出支持 xhigh 的模型，用于错误提示。"""
    keys = [e.key for e in catalog if e.supports_xhigh]
    return ", ".join(keys) if keys else "no configured models"
