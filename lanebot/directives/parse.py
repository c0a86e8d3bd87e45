"""
会话指令解析模块 (directives/parse.py)

模块职责：
    从消息正文中提取会话指令，并返回去掉指令后的正文。
    每种指令都是一个封闭的数据类，区分"查询"（不带参数）与"设置"（带参数）：

        /think high   /think:high   /t high     → ThinkSet("high")
        /think                                  → ThinkQuery()
        /verbose on   /v on                      → VerboseSet("on")
        /reasoning stream   /reason on           → ReasoningSet(...)
        /elevated on  /elev off                  → ElevatedSet(...)
        /model openai/gpt-5   /model mini        → ModelSet("openai/gpt-5")
        /model   /models                         → ModelQuery()
        /queue collect debounce:2s cap:10 drop:old → QueueSet(...)
        /queue reset                             → QueueReset()

    指令可以出现在正文任意位置（前面需要是空白或行首）。
    参数无法识别时记入 invalid，由 apply.py 生成错误提示。

【Java 开发者类比】
    Directive 相当于 Java 17 的 sealed interface + 若干 record 实现，
    调用方用 isinstance 分派（相当于 switch 模式匹配），不会出现"字段可能为空"的猜测。
"""

import re
from dataclasses import dataclass, field
from typing import ClassVar, Union

from lanebot.directives.levels import (
    normalize_elevated_level,
    normalize_queue_drop,
    normalize_queue_mode,
    normalize_reasoning_level,
    normalize_think_level,
    normalize_verbose_level,
    parse_duration_ms,
    parse_positive_int,
)


# ---------------------------------------------------------------------------
# 指令类型
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ThinkQuery:
    kind: ClassVar[str] = "think"


@dataclass(frozen=True)
class ThinkSet:
    level: str
    kind: ClassVar[str] = "think"


@dataclass(frozen=True)
class VerboseQuery:
    kind: ClassVar[str] = "verbose"


@dataclass(frozen=True)
class VerboseSet:
    level: str
    kind: ClassVar[str] = "verbose"


@dataclass(frozen=True)
class ReasoningQuery:
    kind: ClassVar[str] = "reasoning"


@dataclass(frozen=True)
class ReasoningSet:
    level: str
    kind: ClassVar[str] = "reasoning"


@dataclass(frozen=True)
class ElevatedQuery:
    kind: ClassVar[str] = "elevated"


@dataclass(frozen=True)
class ElevatedSet:
    level: str
    kind: ClassVar[str] = "elevated"


@dataclass(frozen=True)
class ModelQuery:
    kind: ClassVar[str] = "model"


@dataclass(frozen=True)
class ModelSet:
    raw: str
    kind: ClassVar[str] = "model"


@dataclass(frozen=True)
class QueueQuery:
    kind: ClassVar[str] = "queue"


@dataclass(frozen=True)
class QueueReset:
    kind: ClassVar[str] = "queue"


@dataclass(frozen=True)
class QueueSet:
    mode: str | None = None
    debounce_ms: int | None = None
    cap: int | None = None
    drop: str | None = None
    kind: ClassVar[str] = "queue"


Directive = Union[
    ThinkQuery, ThinkSet,
    VerboseQuery, VerboseSet,
    ReasoningQuery, ReasoningSet,
    ElevatedQuery, ElevatedSet,
    ModelQuery, ModelSet,
    QueueQuery, QueueReset, QueueSet,
]


@dataclass(frozen=True)
class InvalidDirective:
    """
    参数无法识别的指令。

    属性:
        kind: 指令种类（think / verbose / reasoning / elevated / queue）
        raw: 用户输入的原始参数
    """
    kind: str
    raw: str


@dataclass
class ParsedDirectives:
    """
    解析结果。

    属性:
        cleaned: 去掉指令后的正文
        directives: 按出现顺序排列的指令（同种类后出现的覆盖先出现的）
        invalid: 参数非法的指令
    """
    cleaned: str
    directives: list[Directive] = field(default_factory=list)
    invalid: list[InvalidDirective] = field(default_factory=list)

    @property
    def has_any(self) -> bool:
        return bool(self.directives or self.invalid)

    @property
    def is_directive_only(self) -> bool:
        """消息里除指令外没有正文。"""
        return self.has_any and not self.cleaned.strip()

    def get(self, kind: str) -> Directive | None:
        """取某种类最后出现的指令。"""
        for directive in reversed(self.directives):
            if directive.kind == kind:
                return directive
        return None

    def without(self, *kinds: str) -> "ParsedDirectives":
        """去掉指定种类后的副本。"""
        return ParsedDirectives(
            cleaned=self.cleaned,
            directives=[d for d in self.directives if d.kind not in kinds],
            invalid=[d for d in self.invalid if d.kind not in kinds],
        )


# ---------------------------------------------------------------------------
# 解析
# ---------------------------------------------------------------------------

_NAME_TO_KIND = {
    "think": "think", "thinking": "think", "t": "think",
    "verbose": "verbose", "v": "verbose",
    "reasoning": "reasoning", "reason": "reasoning",
    "elevated": "elevated", "elev": "elevated",
    "model": "model", "models": "model",
    "queue": "queue",
}
_LEVEL_NORMALIZERS = {
    "think": normalize_think_level,
    "verbose": normalize_verbose_level,
    "reasoning": normalize_reasoning_level,
    "elevated": normalize_elevated_level,
}
_SET_TYPES = {"think": ThinkSet, "verbose": VerboseSet, "reasoning": ReasoningSet, "elevated": ElevatedSet}
_QUERY_TYPES = {"think": ThinkQuery, "verbose": VerboseQuery, "reasoning": ReasoningQuery, "elevated": ElevatedQuery}
_TOKEN_RE = re.compile(r"\S+")
_DIRECTIVE_RE = re.compile(r"^/([A-Za-z]+)(?::(.*))?$")
_QUEUE_OPTION_RE = re.compile(r"^(debounce|cap|drop):(.+)$", re.IGNORECASE)


def _parse_queue(args: list[str]) -> tuple[Directive | None, InvalidDirective | None, int]:
    """解析 /queue 后的参数，返回 (指令, 非法项, 消耗的 token 数)。"""
    if not args:
        return QueueQuery(), None, 0
    if args[0].lower() in ("reset", "default", "clear"):
        return QueueReset(), None, 1

    mode = debounce = cap = drop = None
    consumed = 0
    for token in args:
        option = _QUEUE_OPTION_RE.match(token)
        if option:
            name, value = option.group(1).lower(), option.group(2)
            if name == "debounce":
                debounce = parse_duration_ms(value)
                if debounce is None:
                    return None, InvalidDirective("queue", token), consumed + 1
            elif name == "cap":
                cap = parse_positive_int(value)
                if cap is None:
                    return None, InvalidDirective("queue", token), consumed + 1
            else:
                drop = normalize_queue_drop(value)
                if drop is None:
                    return None, InvalidDirective("queue", token), consumed + 1
            consumed += 1
            continue
        if consumed == 0 and mode is None:
            mode = normalize_queue_mode(token)
            if mode is None:
                if len(args) == 1:
                    return None, InvalidDirective("queue", token), 1
                break
            consumed += 1
            continue
        break

    if consumed == 0:
        return QueueQuery(), None, 0
    return QueueSet(mode=mode, debounce_ms=debounce, cap=cap, drop=drop), None, consumed


def parse_directives(text: str) -> ParsedDirectives:
    """
    从消息正文中提取会话指令。

    参数:
        text: 原始消息正文

    返回:
        ParsedDirectives: 去掉指令后的正文 + 指令列表 + 非法指令列表
    """
    tokens = [(m.group(0), m.start(), m.end()) for m in _TOKEN_RE.finditer(text or "")]
    directives: list[Directive] = []
    invalid: list[InvalidDirective] = []
    removed: list[tuple[int, int]] = []

    i = 0
    while i < len(tokens):
        token, start, end = tokens[i]
        match = _DIRECTIVE_RE.match(token)
        kind = _NAME_TO_KIND.get(match.group(1).lower()) if match else None
        if kind is None:
            i += 1
            continue

        inline_arg = match.group(2)
        next_tokens = [t[0] for t in tokens[i + 1:]]
        consumed = 0

        if kind in _LEVEL_NORMALIZERS:
            normalize = _LEVEL_NORMALIZERS[kind]
            if inline_arg is not None:
                level = normalize(inline_arg)
                if level:
                    directives.append(_SET_TYPES[kind](level))
                else:
                    invalid.append(InvalidDirective(kind, inline_arg))
            elif next_tokens and normalize(next_tokens[0]):
                directives.append(_SET_TYPES[kind](normalize(next_tokens[0])))
                consumed = 1
            elif len(next_tokens) == 1 and not next_tokens[0].startswith("/"):
                # "/think banana" 整条消息只有它时视为非法参数，否则后面的词属于正文
                invalid.append(InvalidDirective(kind, next_tokens[0]))
                consumed = 1
            else:
                directives.append(_QUERY_TYPES[kind]())
        elif kind == "model":
            arg = inline_arg
            if arg is None and next_tokens and not next_tokens[0].startswith("/"):
                arg = next_tokens[0]
                consumed = 1
            if arg and arg.lower() not in ("list", "ls", "status"):
                directives.append(ModelSet(arg.strip()))
            else:
                directives.append(ModelQuery())
        else:
            args = ([inline_arg] if inline_arg else []) + next_tokens
            directive, bad, used = _parse_queue(args)
            if directive is not None:
                directives.append(directive)
            if bad is not None:
                invalid.append(bad)
            consumed = used - (1 if inline_arg else 0)
            consumed = max(consumed, 0)

        last_end = tokens[i + consumed][2]
        removed.append((start, last_end))
        i += 1 + consumed

    return ParsedDirectives(
        cleaned=_remove_spans(text or "", removed),
        directives=directives,
        invalid=invalid,
    )


def _remove_spans(text: str, spans: list[tuple[int, int]]) -> str:
    if not spans:
        return text.strip()
    parts = []
    cursor = 0
    for start, end in spans:
        parts.append(text[cursor:start])
        cursor = end
    parts.append(text[cursor:])
    cleaned = "".join(parts)
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    return cleaned.strip()
