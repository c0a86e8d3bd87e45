"""
等级与队列参数的规范化 (directives/levels.py)

用户输入的各种写法（大小写、同义词）在这里统一成规范值；无法识别时返回 None，
由调用方生成 "Unrecognized ..." 提示。
"""

import re

THINK_LEVELS = ("off", "minimal", "low", "medium", "high", "xhigh")
VERBOSE_LEVELS = ("on", "off")
REASONING_LEVELS = ("on", "off", "stream")
ELEVATED_LEVELS = ("on", "off")
QUEUE_MODES = ("steer", "followup", "collect", "steer-backlog", "interrupt")
QUEUE_DROP_POLICIES = ("old", "new", "summarize")

_THINK_SYNONYMS = {
    "none": "off", "disable": "off", "disabled": "off", "0": "off",
    "on": "low", "enable": "low", "enabled": "low",
    "min": "minimal", "think": "minimal",
    "mid": "medium", "med": "medium", "harder": "medium", "think-harder": "medium",
    "max": "high", "highest": "high", "ultra": "high", "ultrathink": "high",
    "x-high": "xhigh", "extra-high": "xhigh", "extrahigh": "xhigh",
}
_ON_OFF_SYNONYMS = {
    "true": "on", "yes": "on", "1": "on", "enable": "on", "enabled": "on",
    "false": "off", "no": "off", "0": "off", "disable": "off", "disabled": "off",
}
_QUEUE_MODE_SYNONYMS = {
    "queue": "followup", "follow-up": "followup", "queued": "followup",
    "steer+backlog": "steer-backlog", "steer_backlog": "steer-backlog", "backlog": "steer-backlog",
    "interrupt-run": "interrupt", "abort": "interrupt",
}
_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m)?$")


def _clean(raw: str | None) -> str:
    return (raw or "").strip().lower()


def normalize_think_level(raw: str | None) -> str | None:
    """思考等级规范化：off/minimal/low/medium/high/xhigh。"""
    value = _clean(raw)
    if value in THINK_LEVELS:
        return value
    return _THINK_SYNONYMS.get(value)


def normalize_on_off(raw: str | None) -> str | None:
    value = _clean(raw)
    if value in ("on", "off"):
        return value
    return _ON_OFF_SYNONYMS.get(value)


def normalize_verbose_level(raw: str | None) -> str | None:
    return normalize_on_off(raw)


def normalize_elevated_level(raw: str | None) -> str | None:
    return normalize_on_off(raw)


def normalize_reasoning_level(raw: str | None) -> str | None:
    """推理可见性：on / off / stream。"""
    value = _clean(raw)
    if value in ("stream", "streaming", "live"):
        return "stream"
    return normalize_on_off(value)


def normalize_queue_mode(raw: str | None) -> str | None:
    value = _clean(raw)
    if value in QUEUE_MODES:
        return value
    return _QUEUE_MODE_SYNONYMS.get(value)


def normalize_queue_drop(raw: str | None) -> str | None:
    value = _clean(raw)
    if value in QUEUE_DROP_POLICIES:
        return value
    if value in ("oldest", "drop-old"):
        return "old"
    if value in ("newest", "drop-new"):
        return "new"
    if value in ("summary", "summarise"):
        return "summarize"
    return None


def parse_duration_ms(raw: str | None) -> int | None:
    """"500" / "500ms" / "2s" / "1m" → 毫秒；非法返回 None。"""
    match = _DURATION_RE.match(_clean(raw))
    if not match:
        return None
    value = float(match.group(1))
    unit = match.group(2) or "ms"
    factor = {"ms": 1, "s": 1000, "m": 60_000}[unit]
    return int(value * factor)


def parse_positive_int(raw: str | None) -> int | None:
    value = _clean(raw)
    if not value.isdigit():
        return None
    number = int(value)
    return number if number > 0 else None


def format_think_levels(supports_xhigh: bool) -> str:
    """列出可选思考等级（不支持 xhigh 的模型不展示 xhigh）。"""
    levels = THINK_LEVELS if supports_xhigh else THINK_LEVELS[:-1]
    return ", ".join(levels)
