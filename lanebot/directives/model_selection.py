"""
模型选择 (directives/model_selection.py)

模块职责：
    把 /model 指令的参数解析成具体的 provider/model。支持三种写法：
    1. 精确引用 "openai/gpt-5"
    2. 别名 "opus"（内置或 agents.defaults.models 中配置的 alias）
    3. 模糊片段 "mini"：在候选集合中打分，取最高分

    agents.defaults.models 非空时它就是白名单，白名单外的模型不参与模糊匹配，
    精确引用白名单外的模型会报 "not allowed"。

模糊打分：
    - 片段与 "provider/model"、provider、model、别名分别比较，
      完全相等 > 前缀 > 子串，各自取最高档位后累加
    - 模型名以 provider 开头 +30
    - 变体词（mini / preview / fast ...）：片段没要求变体时，候选每带一个扣 30；
      片段要求的变体每命中一个加 40，一个都没命中扣 20
    - 默认模型 +20
    同分时依次比较：是否默认模型、命中变体数（多者优先）、变体数（少者优先）、
    模型名长度（短者优先）、字典序。
"""

from dataclasses import dataclass, field

from lanebot.config.schema import Config
from lanebot.errors import DirectiveError
from lanebot.providers.catalog import ModelCatalogEntry, load_model_catalog, parse_model_ref

FUZZY_VARIANT_TOKENS = ("lightning", "preview", "mini", "fast", "turbo", "lite", "beta", "small", "nano")

_WEIGHTS = {
    "haystack": (220, 140, 110),
    "provider": (180, 120, 90),
    "model": (160, 110, 80),
    "alias": (140, 90, 60),
}


@dataclass(frozen=True)
class ModelSelection:
    """
    一次模型选择的结果。

    属性:
        provider: 服务商
        model: 模型名
        is_default: 是否为配置的默认模型（选中默认模型时清除会话覆盖）
        alias: 别名（有则用于展示）
    """
    provider: str
    model: str
    is_default: bool = False
    alias: str | None = None

    @property
    def key(self) -> str:
        return f"{self.provider}/{self.model}"

    @property
    def label(self) -> str:
        """展示用标签：有别名时为 "alias (provider/model)"。"""
        return f"{self.alias} ({self.key})" if self.alias else self.key


@dataclass
class ModelSelectionState:
    """
    模型选择所需的上下文。

    属性:
        default_provider: 默认服务商
        default_model: 默认模型
        catalog: 模型目录
        allowed_keys: 候选 provider/model 集合（小写）
        restricted: 是否配置了白名单
        aliases: 别名 → (provider, model)
    """
    default_provider: str
    default_model: str
    catalog: list[ModelCatalogEntry]
    allowed_keys: set[str] = field(default_factory=set)
    restricted: bool = False
    aliases: dict[str, tuple[str, str]] = field(default_factory=dict)

    @property
    def default_key(self) -> str:
        return f"{self.default_provider}/{self.default_model}"

    def alias_for(self, provider: str, model: str) -> str | None:
        key = f"{provider}/{model}".lower()
        for alias, ref in self.aliases.items():
            if f"{ref[0]}/{ref[1]}".lower() == key:
                return alias
        return None

    def selection(self, provider: str, model: str) -> ModelSelection:
        return ModelSelection(
            provider=provider,
            model=model,
            is_default=(provider, model) == (self.default_provider, self.default_model),
            alias=self.alias_for(provider, model),
        )

    def candidates(self) -> list[ModelCatalogEntry]:
        return [e for e in self.catalog if e.key.lower() in self.allowed_keys]


def build_model_selection(config: Config, catalog: list[ModelCatalogEntry] | None = None) -> ModelSelectionState:
    """
    根据配置构建模型选择上下文。

    参数:
        config: 根配置
        catalog: 模型目录，None 时调用 load_model_catalog

    返回:
        ModelSelectionState
    """
    catalog = catalog if catalog is not None else load_model_catalog(config)
    default = parse_model_ref(config.agents.defaults.model) or ("anthropic", "claude-opus-4-5")

    configured: set[str] = set()
    for ref in config.agents.defaults.models:
        parsed = parse_model_ref(ref)
        if parsed:
            configured.add(f"{parsed[0]}/{parsed[1]}".lower())

    restricted = bool(configured)
    allowed = configured | {f"{default[0]}/{default[1]}".lower()} if restricted else {
        e.key.lower() for e in catalog
    }

    aliases: dict[str, tuple[str, str]] = {}
    for entry in catalog:
        for alias in entry.aliases:
            aliases.setdefault(alias.lower(), (entry.provider, entry.model))

    return ModelSelectionState(
        default_provider=default[0],
        default_model=default[1],
        catalog=catalog,
        allowed_keys=allowed,
        restricted=restricted,
        aliases=aliases,
    )


def resolve_model_ref(raw: str, state: ModelSelectionState) -> ModelSelection | None:
    """
    精确解析：别名优先，其次 provider/model 或裸模型名。

    不检查白名单；空串返回 None。
    """
    value = (raw or "").strip()
    if not value:
        return None
    alias = state.aliases.get(value.lower())
    if alias:
        return state.selection(*alias)
    for entry in state.catalog:
        if entry.model.lower() == value.lower():
            return state.selection(entry.provider, entry.model)
    parsed = parse_model_ref(value, state.default_provider)
    if parsed is None:
        return None
    for entry in state.catalog:
        if entry.key.lower() == f"{parsed[0]}/{parsed[1]}".lower():
            return state.selection(entry.provider, entry.model)
    return state.selection(*parsed)


def _score_fragment(value: str, fragment: str, weights: tuple[int, int, int]) -> int:
    exact, starts, includes = weights
    score = 0
    if value == fragment:
        score = max(score, exact)
    if value.startswith(fragment):
        score = max(score, starts)
    if fragment in value:
        score = max(score, includes)
    return score


@dataclass(frozen=True)
class _Scored:
    entry: ModelCatalogEntry
    score: int
    is_default: bool
    variant_count: int
    variant_match_count: int

    def sort_key(self) -> tuple:
        return (
            -self.score,
            not self.is_default,
            -self.variant_match_count,
            self.variant_count,
            len(self.entry.model),
            self.entry.key,
        )


def _score(entry: ModelCatalogEntry, fragment: str, state: ModelSelectionState) -> _Scored:
    provider = entry.provider.lower()
    model = entry.model.lower()
    score = _score_fragment(entry.key.lower(), fragment, _WEIGHTS["haystack"])
    score += _score_fragment(provider, fragment, _WEIGHTS["provider"])
    score += _score_fragment(model, fragment, _WEIGHTS["model"])
    score += max((_score_fragment(a.lower(), fragment, _WEIGHTS["alias"]) for a in entry.aliases), default=0)
    if model.startswith(provider):
        score += 30

    fragment_variants = [t for t in FUZZY_VARIANT_TOKENS if t in fragment]
    model_variants = [t for t in FUZZY_VARIANT_TOKENS if t in model]
    matched = [t for t in fragment_variants if t in model]
    if not fragment_variants and model_variants:
        score -= 30 * len(model_variants)
    elif fragment_variants:
        score += 40 * len(matched) if matched else -20

    is_default = (entry.provider, entry.model) == (state.default_provider, state.default_model)
    if is_default:
        score += 20
    return _Scored(entry, score, is_default, len(model_variants), len(matched))


def fuzzy_match(fragment: str, state: ModelSelectionState, provider: str | None = None) -> list[ModelSelection]:
    """
    在候选集合中模糊匹配，按得分从高到低返回。

    参数:
        fragment: 用户输入的片段
        state: 模型选择上下文
        provider: 只在该服务商下匹配（用户写了 provider/片段 时）

    返回:
        list[ModelSelection]，无匹配为空列表
    """
    fragment = (fragment or "").strip().lower()
    if not fragment:
        return []

    matches: list[ModelCatalogEntry] = []
    for entry in state.candidates():
        if provider and entry.provider.lower() != provider.lower():
            continue
        if (
            fragment in entry.key.lower()
            or fragment in entry.model.lower()
            or (not provider and any(fragment in a.lower() for a in entry.aliases))
        ):
            matches.append(entry)

    if len(matches) == 1:
        return [state.selection(matches[0].provider, matches[0].model)]

    scored = sorted((_score(e, fragment, state) for e in matches), key=_Scored.sort_key)
    return [state.selection(s.entry.provider, s.entry.model) for s in scored]


def resolve_model_directive(raw: str, state: ModelSelectionState) -> ModelSelection:
    """
    解析 /model 参数。

    参数:
        raw: 指令参数
        state: 模型选择上下文

    返回:
        ModelSelection

    异常:
        DirectiveError: 无法识别或不在白名单内
    """
    value = (raw or "").strip()
    resolved = resolve_model_ref(value, state)
    if resolved is None:
        raise DirectiveError(f'Unrecognized model "{value}". Use /model to list available models.')

    if resolved.key.lower() in state.allowed_keys:
        return resolved
    if "/" in value and not state.restricted:
        return resolved

    if "/" in value:
        provider, fragment = value.split("/", 1)
        matches = fuzzy_match(fragment, state, provider=provider.strip())
        if matches:
            return matches[0]

    matches = fuzzy_match(value, state)
    if matches:
        return matches[0]

    if state.restricted:
        raise DirectiveError(f'Model "{resolved.key}" is not allowed. Use /model to list available models.')
    raise DirectiveError(f'Unrecognized model "{value}". Use /model to list available models.')


def format_model_list(state: ModelSelectionState, current: ModelSelection) -> str:
    """/model 查询的回复：当前模型 + 可选模型列表。"""
    lines = [f"Current model: {current.label}.", "Available models:"]
    for entry in sorted(state.candidates(), key=lambda e: e.key):
        alias = state.alias_for(entry.provider, entry.model)
        marker = " (default)" if entry.key == state.default_key else ""
        lines.append(f"- {entry.key}{f' [{alias}]' if alias else ''}{marker}")
    lines.append("Switch with /model <provider/model|alias|fragment>.")
    return "\n".join(lines)
