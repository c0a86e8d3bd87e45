"""
会话键解析模块 (session/keys.py)

模块职责：
    把入站消息的元数据（渠道、发送者、聊天类型、线程标记、显式覆盖）映射为规范会话键。
    本模块只有纯函数，不做任何 I/O，方便单元测试。

会话键格式：
    agent:{agentId}:{mainKey}                      主会话（私聊默认合并到这里）
    agent:{agentId}:{channel}:dm:{senderId}        dm_scope=per-sender 时的私聊
    agent:{agentId}:{channel}:group:{chatId}       群组
    agent:{agentId}:{channel}:channel:{chatId}     频道（Slack 公共频道等）
    {父会话键}:thread:{threadId} / :topic:{id}     线程/话题
    global / unknown                                特殊键，原样保留

【Java 开发者类比】
    相当于一个无状态的 KeyGenerator（Spring Cache 的 keyGenerator），
    输入相同就一定得到相同的键，重启后依然稳定。
"""

import re
from dataclasses import dataclass
from typing import Any

from lanebot.config.schema import SessionConfig

DEFAULT_AGENT_ID = "main"
DEFAULT_MAIN_KEY = "main"

_THREAD_SUFFIX_RE = re.compile(r"^(.*):(?:thread|topic):[^:]+$", re.IGNORECASE)
_GROUP_MARKERS = (":group:", ":channel:")


@dataclass(frozen=True)
class MessageContext:
    """
    会话键解析的输入（入站消息的纯数据视图）。

    属性:
        channel: 渠道标识
        sender_id: 发送者 ID
        chat_id: 聊天 ID
        chat_type: direct / group / channel
        thread_id: 线程或话题 ID，None 表示非线程消息
        thread_kind: "thread" 或 "topic"
        thread_label: 线程显示名
        session_key: 显式会话键覆盖
        parent_session_key: 显式父会话键
        account_id: 多账号部署时的账号标识
        subject: 群组主题/频道名
    """
    channel: str
    sender_id: str
    chat_id: str
    chat_type: str = "direct"
    thread_id: str | None = None
    thread_kind: str = "thread"
    thread_label: str | None = None
    session_key: str | None = None
    parent_session_key: str | None = None
    account_id: str | None = None
    subject: str | None = None


def normalize_agent_id(agent_id: str | None) -> str:
    """Agent 标识规范化：去空白、小写，空值回落为 "main"。"""
    value = (agent_id or "").strip().lower()
    return value or DEFAULT_AGENT_ID


def normalize_main_key(main_key: str | None) -> str:
    """主会话别名规范化。"""
    value = (main_key or "").strip().lower()
    return value or DEFAULT_MAIN_KEY


def main_session_key(agent_id: str | None = None, main_key: str | None = None) -> str:
    """构造主会话键 agent:{agentId}:{mainKey}。"""
    return f"agent:{normalize_agent_id(agent_id)}:{normalize_main_key(main_key)}"


def resolve_main_session_key(cfg: SessionConfig, agent_id: str | None = None) -> str:
    """实际承载主会话的键：scope=global 时所有消息都落在 "global"。"""
    if cfg.scope == "global":
        return "global"
    return main_session_key(agent_id, cfg.main_key)


def canonicalize_key(raw: str, agent_id: str | None = None, main_key: str | None = None) -> str:
    """
    把任意形式的会话键规范化。

    - "global" / "unknown" 原样保留
    - "main" 或配置的主会话别名 → agent:{agentId}:{mainKey}
    - 已带 agent: 前缀的键保留，只把其中的主会话别名规范化
    - 其余键加上 agent:{agentId}: 前缀

    参数:
        raw: 原始会话键
        agent_id: 缺省 Agent 标识
        main_key: 主会话别名

    返回:
        str: 规范会话键
    """
    key = raw.strip()
    lowered = key.lower()
    if lowered in ("global", "unknown"):
        return lowered
    canonical_main = normalize_main_key(main_key)
    if lowered in (DEFAULT_MAIN_KEY, canonical_main):
        return main_session_key(agent_id, canonical_main)
    if lowered.startswith("agent:"):
        parts = key.split(":", 2)
        if len(parts) == 3:
            rest = parts[2]
            if rest.lower() in (DEFAULT_MAIN_KEY, canonical_main):
                return main_session_key(parts[1], canonical_main)
            return f"agent:{normalize_agent_id(parts[1])}:{rest}"
        return key
    return f"agent:{normalize_agent_id(agent_id)}:{key}"


def legacy_store_keys(key: str, agent_id: str | None = None, main_key: str | None = None) -> list[str]:
    """
    规范键可能对应的旧版存储键（不带 agent: 前缀的写法）。

    返回:
        list[str]: 候选旧键，不含规范键本身
    """
    prefix = f"agent:{normalize_agent_id(agent_id)}:"
    if not key.startswith(prefix):
        return []
    rest = key[len(prefix):]
    candidates = [rest]
    if rest == normalize_main_key(main_key):
        candidates.append(DEFAULT_MAIN_KEY)
    lowered = key.lower()
    if lowered != key:
        candidates.append(lowered)
    return [c for c in dict.fromkeys(candidates) if c and c != key]


def _is_group_chat(chat_type: str | None) -> bool:
    return (chat_type or "direct").lower() in ("group", "channel", "room")


def _base_key(ctx: MessageContext, cfg: SessionConfig, agent_id: str) -> str:
    agent = normalize_agent_id(agent_id)
    channel = (ctx.channel or "unknown").strip().lower()
    if _is_group_chat(ctx.chat_type):
        kind = "channel" if (ctx.chat_type or "").lower() == "channel" else "group"
        return f"agent:{agent}:{channel}:{kind}:{ctx.chat_id}"
    if cfg.dm_scope == "per-sender":
        sender = (ctx.sender_id or "").strip() or "unknown"
        return f"agent:{agent}:{channel}:dm:{sender}"
    return main_session_key(agent, cfg.main_key)


def resolve_session_key(ctx: MessageContext, cfg: SessionConfig, agent_id: str | None = None) -> str:
    """
    解析入站消息的规范会话键。

    规则（按优先级）：
    1. scope=global → "global"
    2. 显式 session_key 覆盖 → 规范化后直接使用
    3. 群组/频道 → agent:{id}:{channel}:group|channel:{chatId}
       私聊 → 主会话（dm_scope=main）或 agent:{id}:{channel}:dm:{sender}
    4. scope=per-thread 且是线程消息 → 追加 :thread:{id} 或 :topic:{id}

    参数:
        ctx: 入站消息上下文
        cfg: 会话配置
        agent_id: Agent 标识

    返回:
        str: 规范会话键
    """
    if cfg.scope == "global":
        return "global"
    if ctx.session_key and ctx.session_key.strip():
        return canonicalize_key(ctx.session_key, agent_id, cfg.main_key)

    key = _base_key(ctx, cfg, agent_id or DEFAULT_AGENT_ID)
    if cfg.scope == "per-thread" and ctx.thread_id:
        kind = "topic" if ctx.thread_kind == "topic" else "thread"
        key = f"{key}:{kind}:{ctx.thread_id}"
    return key


def infer_parent_key(session_key: str) -> str | None:
    """从线程/话题键推断父会话键，非线程键返回 None。"""
    match = _THREAD_SUFFIX_RE.match(session_key)
    if not match:
        return None
    parent = match.group(1)
    return parent or None


def is_thread_key(session_key: str) -> bool:
    """是否为 :thread: / :topic: 后缀的线程会话键。"""
    return _THREAD_SUFFIX_RE.match(session_key) is not None


def parse_group_key(session_key: str) -> dict[str, str] | None:
    """
    解析群组会话键。

    返回:
        {"channel", "kind", "id"}，非群组键返回 None
    """
    key = session_key
    if key.startswith("agent:"):
        parts = key.split(":", 2)
        key = parts[2] if len(parts) == 3 else ""
    parent = infer_parent_key(key)
    if parent:
        key = parent
    parts = key.split(":")
    if len(parts) >= 3 and parts[1] in ("group", "channel"):
        return {"channel": parts[0], "kind": parts[1], "id": ":".join(parts[2:])}
    return None


def classify_session_key(session_key: str, entry: dict[str, Any] | None = None) -> str:
    """
    会话分类：global / unknown / group / direct。

    记录的 chatType 为 group/room/channel 或键里带 group:/:group:/:channel: 时视为群组。
    """
    if session_key == "global":
        return "global"
    if session_key == "unknown":
        return "unknown"
    chat_type = (entry or {}).get("chatType")
    if chat_type in ("group", "room", "channel"):
        return "group"
    if session_key.startswith("group:") or any(m in session_key for m in _GROUP_MARKERS):
        return "group"
    return "direct"
