"""
指令应用 (directives/apply.py)

模块职责：
    把解析好的指令作用到会话上：
    - handle_directives()：消息只有指令时，持久化变更并返回确认文本（或查询结果）
    - persist_inline_directives()：指令夹在正文里时，静默持久化变更，继续处理正文
    - resolve_levels() / resolve_current_model()：按优先级计算本轮生效的等级与模型
          本条消息的指令 > 会话覆盖 > agents.defaults > 全局默认

    持久化一律走 update_session_store（锁内读-改-写）。
    模型切换、elevated 开关、推理可见性开关会往 SystemEventQueue 写一条系统事件。

【Java 开发者类比】
    相当于 Controller 之后的 DirectiveService：
    parse.py 是请求 DTO，这里是业务逻辑 + 持久化，返回值就是给用户的回复文本。
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from lanebot.agent.system_events import (
    SystemEventQueue,
    format_elevated_event,
    format_model_switch_event,
    format_reasoning_event,
)
from lanebot.config.schema import Config
from lanebot.directives.levels import (
    QUEUE_MODES,
    format_think_levels,
    normalize_elevated_level,
    normalize_reasoning_level,
    normalize_think_level,
    normalize_verbose_level,
)
from lanebot.directives.model_selection import (
    ModelSelection,
    ModelSelectionState,
    format_model_list,
    resolve_model_directive,
)
from lanebot.directives.parse import (
    ElevatedQuery,
    ElevatedSet,
    InvalidDirective,
    ModelQuery,
    ModelSet,
    ParsedDirectives,
    QueueQuery,
    QueueReset,
    QueueSet,
    ReasoningQuery,
    ReasoningSet,
    ThinkQuery,
    ThinkSet,
    VerboseQuery,
    VerboseSet,
)
from lanebot.errors import DirectiveError
from lanebot.providers.catalog import find_catalog_entry, format_xhigh_hint, supports_xhigh
from lanebot.session.store import update_session_store
from lanebot.utils.helpers import now_ms

DEFAULT_CONTEXT_TOKENS = 200_000
QUEUE_FIELDS = ("queueMode", "queueDebounceMs", "queueCap", "queueDrop")


@dataclass(frozen=True)
class SessionLevels:
    """本轮生效的各项等级。"""
    thinking: str = "off"
    verbose: str = "off"
    reasoning: str = "off"
    elevated: str = "off"

    def as_dict(self) -> dict[str, str]:
        return {
            "thinking": self.thinking,
            "verbose": self.verbose,
            "reasoning": self.reasoning,
            "elevated": self.elevated,
        }


@dataclass
class InlineResult:
    """
    内联指令处理结果。

    属性:
        model: 本轮使用的模型
        context_tokens: 上下文 token 上限
        entry: 持久化后的会话记录
    """
    model: ModelSelection
    context_tokens: int
    entry: dict[str, Any]


def _with_options(line: str, options: str) -> str:
    return f"{line}\nOptions: {options}."


def _format_ack(text: str) -> str:
    return f"⚙️ {text}"


def resolve_current_model(entry: dict[str, Any] | None, state: ModelSelectionState) -> ModelSelection:
    """会话覆盖的模型，没有则为默认模型。"""
    entry = entry or {}
    provider = entry.get("providerOverride")
    model = entry.get("modelOverride")
    if model:
        return state.selection(provider or state.default_provider, model)
    return state.selection(state.default_provider, state.default_model)


def resolve_context_tokens(config: Config, selection: ModelSelection, state: ModelSelectionState) -> int:
    if config.agents.defaults.context_tokens:
        return config.agents.defaults.context_tokens
    entry = find_catalog_entry(state.catalog, selection.provider, selection.model)
    if entry and entry.context_window:
        return entry.context_window
    return DEFAULT_CONTEXT_TOKENS


def resolve_levels(
    entry: dict[str, Any] | None,
    config: Config,
    parsed: ParsedDirectives | None = None,
) -> SessionLevels:
    """
    计算本轮生效的等级。

    优先级：本条消息的 Set 指令 > 会话记录 > agents.defaults > "off"。
    """
    entry = entry or {}
    defaults = config.agents.defaults

    def pick(kind: str, field_name: str, default: str | None, normalize) -> str:
        directive = parsed.get(kind) if parsed else None
        if directive is not None and hasattr(directive, "level"):
            return directive.level
        stored = normalize(entry.get(field_name)) if entry.get(field_name) else None
        if stored:
            return stored
        return normalize(default) or "off"

    return SessionLevels(
        thinking=pick("think", "thinkingLevel", defaults.thinking_default, normalize_think_level),
        verbose=pick("verbose", "verboseLevel", defaults.verbose_default, normalize_verbose_level),
        reasoning=pick("reasoning", "reasoningLevel", defaults.reasoning_default, normalize_reasoning_level),
        elevated=pick("elevated", "elevatedLevel", defaults.elevated_default, normalize_elevated_level),
    )


def _invalid_text(invalid: InvalidDirective, think_options: str) -> str:
    if invalid.kind == "think":
        return f'Unrecognized thinking level "{invalid.raw}". Valid levels: {think_options}.'
    if invalid.kind == "verbose":
        return f'Unrecognized verbose level "{invalid.raw}". Valid levels: off, on.'
    if invalid.kind == "reasoning":
        return f'Unrecognized reasoning level "{invalid.raw}". Valid levels: on, off, stream.'
    if invalid.kind == "elevated":
        return f'Unrecognized elevated level "{invalid.raw}". Valid levels: off, on.'
    return (
        f'Unrecognized queue option "{invalid.raw}". '
        f"Valid modes: {', '.join(QUEUE_MODES)}; options: debounce:<ms|s|m>, cap:<n>, drop:old|new|summarize."
    )


def _queue_status(entry: dict[str, Any], config: Config, channel: str | None) -> str:
    queue_cfg = config.session.queue
    mode = entry.get("queueMode") or queue_cfg.by_channel.get(channel or "") or queue_cfg.mode
    debounce = entry.get("queueDebounceMs", queue_cfg.debounce_ms)
    cap = entry.get("queueCap", queue_cfg.cap)
    drop = entry.get("queueDrop", queue_cfg.drop)
    return _with_options(
        f"Current queue mode: {mode} (debounce {debounce}ms, cap {cap}, drop {drop}).",
        ", ".join(QUEUE_MODES),
    )


@dataclass
class _Changes:
    sets: dict[str, Any]
    deletes: set[str]

    def apply_to(self, entry: dict[str, Any]) -> dict[str, Any]:
        for key in self.deletes:
            entry.pop(key, None)
        entry.update(self.sets)
        return entry

    @property
    def empty(self) -> bool:
        return not self.sets and not self.deletes


def _collect_changes(
    parsed: ParsedDirectives,
    selection: ModelSelection | None,
    downgrade_xhigh: bool,
    *,
    persist_queue_settings: bool,
) -> _Changes:
    changes = _Changes(sets={}, deletes=set())

    think = parsed.get("think")
    if isinstance(think, ThinkSet):
        if think.level == "off":
            changes.deletes.add("thinkingLevel")
        else:
            changes.sets["thinkingLevel"] = think.level
    if downgrade_xhigh:
        changes.sets["thinkingLevel"] = "high"

    verbose = parsed.get("verbose")
    if isinstance(verbose, VerboseSet):
        changes.sets["verboseLevel"] = verbose.level

    reasoning = parsed.get("reasoning")
    if isinstance(reasoning, ReasoningSet):
        if reasoning.level == "off":
            changes.deletes.add("reasoningLevel")
        else:
            changes.sets["reasoningLevel"] = reasoning.level

    elevated = parsed.get("elevated")
    if isinstance(elevated, ElevatedSet):
        # elevated 的 off 也显式保存，才能覆盖默认值 on
        changes.sets["elevatedLevel"] = elevated.level

    if selection is not None:
        changes.deletes.add("authProfileOverride")
        if selection.is_default:
            changes.deletes.update(("providerOverride", "modelOverride"))
        else:
            changes.sets["providerOverride"] = selection.provider
            changes.sets["modelOverride"] = selection.model

    queue = parsed.get("queue")
    if isinstance(queue, QueueReset):
        changes.deletes.update(QUEUE_FIELDS)
    elif isinstance(queue, QueueSet) and persist_queue_settings:
        if queue.mode:
            changes.sets["queueMode"] = queue.mode
        if queue.debounce_ms is not None:
            changes.sets["queueDebounceMs"] = queue.debounce_ms
        if queue.cap is not None:
            changes.sets["queueCap"] = queue.cap
        if queue.drop:
            changes.sets["queueDrop"] = queue.drop

    for key in changes.sets:
        changes.deletes.discard(key)
    return changes


async def _persist(store_path: Path, session_key: str, changes: _Changes) -> dict[str, Any]:
    def mutate(store: dict[str, Any]) -> dict[str, Any]:
        entry = dict(store.get(session_key) or {})
        changes.apply_to(entry)
        entry["updatedAt"] = max(entry.get("updatedAt") or 0, now_ms())
        store[session_key] = entry
        return entry

    return await update_session_store(store_path, mutate)


def _emit_events(
    events: SystemEventQueue | None,
    session_key: str,
    *,
    before: dict[str, Any],
    after: dict[str, Any],
    config: Config,
    selection: ModelSelection | None,
    initial_model: ModelSelection,
) -> None:
    if events is None:
        return
    if selection is not None and selection.key != initial_model.key:
        events.enqueue(
            session_key,
            format_model_switch_event(selection.key, selection.alias),
            context_key=f"model:{selection.key}",
        )
    default_elevated = normalize_elevated_level(config.agents.defaults.elevated_default) or "off"
    prev_elevated = before.get("elevatedLevel") or default_elevated
    next_elevated = after.get("elevatedLevel") or default_elevated
    if "elevatedLevel" in after and next_elevated != prev_elevated:
        events.enqueue(session_key, format_elevated_event(next_elevated), context_key="mode:elevated")
    prev_reasoning = before.get("reasoningLevel") or "off"
    next_reasoning = after.get("reasoningLevel") or "off"
    if next_reasoning != prev_reasoning:
        events.enqueue(session_key, format_reasoning_event(next_reasoning), context_key="mode:reasoning")


async def handle_directives(
    parsed: ParsedDirectives,
    *,
    entry: dict[str, Any],
    session_key: str,
    store_path: Path,
    config: Config,
    model_state: ModelSelectionState,
    events: SystemEventQueue | None = None,
    channel: str | None = None,
) -> str:
    """
    处理只含指令的消息，返回给用户的回复文本。

    参数:
        parsed: 解析结果（is_directive_only 为 True）
        entry: 当前会话记录
        session_key: 会话键
        store_path: sessions.json 路径
        config: 根配置
        model_state: 模型选择上下文
        events: 系统事件队列
        channel: 当前渠道（查询队列模式时用于渠道级默认值）

    返回:
        str: 确认文本、查询结果或错误提示；没有任何变更时为 "OK."

    异常:
        StoreLockTimeout: 持久化时锁等待超时
    """
    current = resolve_current_model(entry, model_state)
    levels = resolve_levels(entry, config)

    model_directive = parsed.get("model")
    if isinstance(model_directive, ModelQuery):
        return format_model_list(model_state, current)

    selection: ModelSelection | None = None
    if isinstance(model_directive, ModelSet):
        try:
            selection = resolve_model_directive(model_directive.raw, model_state)
        except DirectiveError as e:
            return str(e)

    target = selection or current
    xhigh_ok = supports_xhigh(model_state.catalog, target.provider, target.model)
    think_options = format_think_levels(xhigh_ok)

    if parsed.invalid:
        return _invalid_text(parsed.invalid[0], think_options)

    for directive in parsed.directives:
        if isinstance(directive, ThinkQuery):
            return _with_options(f"Current thinking level: {levels.thinking}.", think_options)
        if isinstance(directive, VerboseQuery):
            return _with_options(f"Current verbose level: {levels.verbose}.", "on, off")
        if isinstance(directive, ReasoningQuery):
            return _with_options(f"Current reasoning level: {levels.reasoning}.", "on, off, stream")
        if isinstance(directive, ElevatedQuery):
            return _with_options(f"Current elevated level: {levels.elevated}.", "on, off")
        if isinstance(directive, QueueQuery):
            return _queue_status(entry, config, channel)

    think = parsed.get("think")
    if isinstance(think, ThinkSet) and think.level == "xhigh" and not xhigh_ok:
        return f'Thinking level "xhigh" is only supported for {format_xhigh_hint(model_state.catalog)}.'

    downgrade = (
        not isinstance(think, ThinkSet)
        and entry.get("thinkingLevel") == "xhigh"
        and not xhigh_ok
    )

    changes = _collect_changes(parsed, selection, downgrade, persist_queue_settings=True)
    if not changes.empty:
        after = await _persist(store_path, session_key, changes)
        _emit_events(
            events, session_key,
            before=entry, after=after, config=config,
            selection=selection, initial_model=current,
        )
        logger.debug(f"Directives applied to {session_key}: set={sorted(changes.sets)} unset={sorted(changes.deletes)}")

    return _ack_text(parsed, selection, downgrade, target)


def _ack_text(
    parsed: ParsedDirectives,
    selection: ModelSelection | None,
    downgrade: bool,
    target: ModelSelection,
) -> str:
    parts: list[str] = []
    think = parsed.get("think")
    if isinstance(think, ThinkSet):
        parts.append("Thinking disabled." if think.level == "off" else f"Thinking level set to {think.level}.")
    verbose = parsed.get("verbose")
    if isinstance(verbose, VerboseSet):
        parts.append(_format_ack(
            "Verbose logging disabled." if verbose.level == "off" else "Verbose logging enabled."
        ))
    reasoning = parsed.get("reasoning")
    if isinstance(reasoning, ReasoningSet):
        if reasoning.level == "off":
            parts.append(_format_ack("Reasoning visibility disabled."))
        elif reasoning.level == "stream":
            parts.append(_format_ack("Reasoning stream enabled."))
        else:
            parts.append(_format_ack("Reasoning visibility enabled."))
    elevated = parsed.get("elevated")
    if isinstance(elevated, ElevatedSet):
        parts.append(_format_ack(
            "Elevated mode disabled." if elevated.level == "off" else "Elevated mode enabled."
        ))
    if downgrade:
        parts.append(f"Thinking level set to high (xhigh not supported for {target.key}).")
    if selection is not None:
        parts.append(
            f"Model reset to default ({selection.label})." if selection.is_default
            else f"Model set to {selection.label}."
        )
    queue = parsed.get("queue")
    if isinstance(queue, QueueReset):
        parts.append(_format_ack("Queue mode reset to default."))
    elif isinstance(queue, QueueSet):
        if queue.mode:
            parts.append(_format_ack(f"Queue mode set to {queue.mode}."))
        if queue.debounce_ms is not None:
            parts.append(_format_ack(f"Queue debounce set to {queue.debounce_ms}ms."))
        if queue.cap is not None:
            parts.append(_format_ack(f"Queue cap set to {queue.cap}."))
        if queue.drop:
            parts.append(_format_ack(f"Queue drop set to {queue.drop}."))
    ack = " ".join(parts).strip()
    return ack or "OK."


async def persist_inline_directives(
    parsed: ParsedDirectives,
    *,
    entry: dict[str, Any],
    session_key: str,
    store_path: Path,
    config: Config,
    model_state: ModelSelectionState,
    events: SystemEventQueue | None = None,
) -> InlineResult:
    """
    处理夹在正文里的指令：持久化等级与模型变更，不生成回复。

    内联的 /queue 设置只作用于本条消息，不落盘（/queue reset 除外）；
    无法解析的内联模型引用忽略。

    参数:
        parsed: 解析结果（正文非空）
        entry: 当前会话记录
        session_key: 会话键
        store_path: sessions.json 路径
        config: 根配置
        model_state: 模型选择上下文
        events: 系统事件队列

    返回:
        InlineResult: 本轮使用的模型、上下文上限与最新会话记录

    异常:
        DirectiveError: 显式请求 xhigh 但模型不支持
    """
    current = resolve_current_model(entry, model_state)
    selection: ModelSelection | None = None
    model_directive = parsed.get("model")
    if isinstance(model_directive, ModelSet):
        try:
            selection = resolve_model_directive(model_directive.raw, model_state)
        except DirectiveError as e:
            logger.debug(f"Ignoring inline model directive for {session_key}: {e}")

    target = selection or current
    think = parsed.get("think")
    if (
        isinstance(think, ThinkSet)
        and think.level == "xhigh"
        and not supports_xhigh(model_state.catalog, target.provider, target.model)
    ):
        raise DirectiveError(
            f'Thinking level "xhigh" is only supported for {format_xhigh_hint(model_state.catalog)}. '
            "Use /think high or switch to one of those models."
        )

    changes = _collect_changes(parsed, selection, False, persist_queue_settings=False)
    updated = entry
    if not changes.empty:
        updated = await _persist(store_path, session_key, changes)
        _emit_events(
            events, session_key,
            before=entry, after=updated, config=config,
            selection=selection, initial_model=current,
        )

    return InlineResult(
        model=target,
        context_tokens=resolve_context_tokens(config, target, model_state),
        entry=updated,
    )


async def enforce_thinking_support(
    levels: SessionLevels,
    *,
    entry: dict[str, Any],
    session_key: str,
    store_path: Path,
    model: ModelSelection,
    model_state: ModelSelectionState,
) -> tuple[SessionLevels, str | None]:
    """
    会话里保存的 xhigh 遇到不支持的模型时降为 high 并落盘。

    返回:
        (生效等级, 降级提示)；无需降级时提示为 None
    """
    if levels.thinking != "xhigh" or supports_xhigh(model_state.catalog, model.provider, model.model):
        return levels, None
    if entry.get("thinkingLevel") == "xhigh":
        await _persist(store_path, session_key, _Changes(sets={"thinkingLevel": "high"}, deletes=set()))
    downgraded = SessionLevels(
        thinking="high",
        verbose=levels.verbose,
        reasoning=levels.reasoning,
        elevated=levels.elevated,
    )
    return downgraded, f"Thinking level set to high (xhigh not supported for {model.key})."
