"""
会话生命周期模块 (session/lifecycle.py)

模块职责：
    为每条入站消息解析出处理本轮所需的完整会话状态：
    1. 解析会话键（keys.resolve_session_key）
    2. 读取已有记录并判断新鲜度（reset.is_fresh）
    3. 检测重置指令（/new、/reset，仅授权发送者）
    4. 新鲜 → 沿用 sessionId；否则 → 新 sessionId，清空 aborted/systemSent/compactionCount，
       但保留用户覆盖项（模型、思考等级、队列策略等）
    5. 线程会话：新会话从父会话分叉；已有会话若从未关联父会话则一次性合并
    6. 通过 update_session_store 浅合并落盘（不覆盖并发写入的其他字段）

    分叉/合并/技能快照失败都只记日志，不影响本轮处理。

【Java 开发者类比】
    相当于一个 SessionInitializer 服务：Controller 收到请求后先调用它拿到 SessionState，
    再交给后续的指令解析、运行协调等 Service。

【二开提示】
    需要新增"重置时保留"的字段，只需加入 CARRY_ON_RESET。
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from lanebot.config.schema import Config
from lanebot.session.keys import (
    MessageContext,
    canonicalize_key,
    infer_parent_key,
    legacy_store_keys,
    parse_group_key,
    resolve_session_key,
)
from lanebot.session.migrations import migrate_legacy_keys
from lanebot.session.reset import is_fresh, reset_type_for, resolve_reset_policy
from lanebot.session.store import load_session_store, update_session_store
from lanebot.session.transcript import (
    fork_from_parent,
    load_transcript,
    merge_from_parent,
    new_session_id,
    resolve_session_file,
    transcript_path,
)
from lanebot.utils.helpers import now_ms

# 重置时保留的字段：用户覆盖项 + 标签类元数据
CARRY_ON_RESET = (
    "thinkingLevel",
    "verboseLevel",
    "reasoningLevel",
    "elevatedLevel",
    "modelOverride",
    "providerOverride",
    "authProfileOverride",
    "sendPolicy",
    "queueMode",
    "queueDebounceMs",
    "queueCap",
    "queueDrop",
    "label",
    "spawnedBy",
    "displayName",
    "chatType",
    "channel",
    "groupId",
    "subject",
    "room",
    "space",
    "lastChannel",
    "lastTo",
    "lastAccountId",
    "lastThreadId",
)


@dataclass
class SessionState:
    """
    单轮处理所需的会话状态。

    属性:
        session_key: 规范会话键
        session_id: 本轮使用的会话 ID
        entry: 已落盘的会话记录
        store_path: sessions.json 路径
        is_new: 本轮是否开启了新会话
        reset_triggered: 是否由 /new、/reset 显式触发
        body_stripped: 去掉重置指令后的正文；None 表示未触发重置
        parent_key: 父会话键（显式或推断）
        forked: 是否完成了分叉或合并
        previous_entry: 显式重置前的旧记录
    """
    session_key: str
    session_id: str
    entry: dict[str, Any]
    store_path: Path
    is_new: bool = False
    reset_triggered: bool = False
    body_stripped: str | None = None
    parent_key: str | None = None
    forked: bool = False
    previous_entry: dict[str, Any] | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def abort_key(self) -> str:
        """中止记忆使用的键（与会话键一致）。"""
        return self.session_key

    @property
    def session_file(self) -> Path:
        return Path(self.entry["sessionFile"])


def match_reset_trigger(
    body: str,
    triggers: list[str],
    authorized: bool,
) -> tuple[bool, str | None]:
    """
    检测重置指令。

    整条消息（忽略大小写）等于触发词 → (True, "")；
    以 "触发词 + 空格" 开头 → (True, 剩余正文，保留原大小写)；
    未授权或不匹配 → (False, None)。
    """
    if not authorized:
        return False, None
    trimmed = body.strip()
    lowered = trimmed.lower()
    for trigger in triggers:
        if not trigger:
            continue
        trigger_lower = trigger.strip().lower()
        if lowered == trigger_lower:
            return True, ""
        if lowered.startswith(f"{trigger_lower} "):
            return True, trimmed[len(trigger_lower):].lstrip()
    return False, None


def _lookup_entry(store: dict[str, Any], key: str, legacy_keys: list[str]) -> dict[str, Any] | None:
    if key in store:
        return store[key]
    for legacy in legacy_keys:
        if legacy in store:
            return store[legacy]
    return None


def _presentation_patch(ctx: MessageContext, session_key: str, base: dict[str, Any]) -> dict[str, Any]:
    patch: dict[str, Any] = {
        "chatType": ctx.chat_type or base.get("chatType") or "direct",
        "channel": ctx.channel or base.get("channel"),
    }
    group = parse_group_key(session_key)
    if group:
        patch["groupId"] = group["id"]
    if ctx.subject:
        patch["subject"] = ctx.subject
    if ctx.thread_label and ctx.thread_label.strip():
        patch["displayName"] = ctx.thread_label.strip()
    elif not base.get("displayName") and group:
        label = ctx.subject or group["id"]
        patch["displayName"] = f"{group['channel']}:{label}"
    return {k: v for k, v in patch.items() if v is not None}


def _delivery_patch(ctx: MessageContext, base: dict[str, Any]) -> dict[str, Any]:
    patch = {
        "lastChannel": ctx.channel or base.get("lastChannel"),
        "lastTo": (ctx.chat_id or "").strip() or base.get("lastTo"),
        "lastAccountId": ctx.account_id or base.get("lastAccountId"),
        "lastThreadId": ctx.thread_id or base.get("lastThreadId"),
    }
    return {k: v for k, v in patch.items() if v is not None}


def _build_skills_snapshot(workspace: Path | None) -> dict[str, Any] | None:
    if workspace is None:
        return None
    from lanebot.agent.skills import build_skills_snapshot
    try:
        return build_skills_snapshot(workspace)
    except Exception as e:
        logger.warning(f"Skills snapshot failed for {workspace}: {e}")
        return None


async def init_session_state(
    ctx: MessageContext,
    body: str,
    *,
    config: Config,
    command_authorized: bool = True,
    now: int | None = None,
    workspace: Path | None = None,
) -> SessionState:
    """
    解析并落盘本轮会话状态。

    参数:
        ctx: 入站消息上下文
        body: 原始消息正文（用于检测重置指令）
        config: 根配置
        command_authorized: 发送者是否有权执行指令（重置、中止等）
        now: 当前时间（毫秒），测试可注入
        workspace: 工作区目录，用于新会话的技能快照

    返回:
        SessionState

    异常:
        StoreLockTimeout: 落盘时锁等待超时
    """
    cfg = config.session
    agent_id = config.agent_id
    store_path = config.store_path(agent_id)
    sessions_dir = store_path.parent
    now = now if now is not None else now_ms()

    reset_triggered, body_stripped = match_reset_trigger(body, cfg.reset_triggers, command_authorized)
    session_key = resolve_session_key(ctx, cfg, agent_id)
    legacy_keys = legacy_store_keys(session_key, agent_id, cfg.main_key)

    store = load_session_store(store_path)
    entry = _lookup_entry(store, session_key, legacy_keys)

    parent_key: str | None = None
    if ctx.parent_session_key and ctx.parent_session_key.strip():
        parent_key = canonicalize_key(ctx.parent_session_key, agent_id, cfg.main_key)
    elif cfg.thread.inherit_parent:
        parent_key = infer_parent_key(session_key)

    policy = resolve_reset_policy(cfg, ctx.channel, reset_type_for(session_key, ctx.chat_type))
    fresh = bool(entry and entry.get("sessionId")) and is_fresh(entry.get("updatedAt"), now, policy)
    is_new = reset_triggered or not fresh
    previous_entry = dict(entry) if (reset_triggered and entry) else None

    if is_new:
        session_id = new_session_id()
        next_entry: dict[str, Any] = {k: entry[k] for k in CARRY_ON_RESET if entry and k in entry}
        next_entry.update(
            sessionId=session_id,
            systemSent=False,
            abortedLastRun=False,
            compactionCount=0,
        )
        if entry:
            logger.info(f"Starting new session for {session_key} ({'reset' if reset_triggered else 'stale'})")
    else:
        # 只写本轮变化的字段，其余字段以锁内读到的最新值为准
        session_id = entry["sessionId"]
        next_entry = {"sessionId": session_id}

    base = {**(entry or {}), **next_entry} if not is_new else next_entry
    next_entry["updatedAt"] = now
    next_entry.update(_delivery_patch(ctx, base))
    next_entry.update(_presentation_patch(ctx, session_key, base))
    if is_new or not base.get("sessionFile"):
        next_entry["sessionFile"] = str(transcript_path(sessions_dir, session_id, ctx.thread_id))

    forked = False
    parent_entry = store.get(parent_key) if parent_key and parent_key != session_key else None
    if parent_entry:
        forked = _link_parent(
            parent_entry, next_entry, sessions_dir, is_new=is_new, config=config,
        )

    if is_new or not base.get("skillsSnapshot"):
        snapshot = _build_skills_snapshot(workspace)
        if snapshot is not None:
            next_entry["skillsSnapshot"] = snapshot

    def persist(current: dict[str, Any]) -> dict[str, Any]:
        migrate_legacy_keys(current, session_key, legacy_keys)
        merged = {**current.get(session_key, {}), **next_entry}
        current[session_key] = merged
        return merged

    persisted = await update_session_store(store_path, persist)

    return SessionState(
        session_key=session_key,
        session_id=session_id,
        entry=persisted,
        store_path=store_path,
        is_new=is_new,
        reset_triggered=reset_triggered,
        body_stripped=body_stripped,
        parent_key=parent_key,
        forked=forked,
        previous_entry=previous_entry,
    )


def _link_parent(
    parent_entry: dict[str, Any],
    child_entry: dict[str, Any],
    sessions_dir: Path,
    *,
    is_new: bool,
    config: Config,
) -> bool:
    """新会话分叉，已有会话一次性合并；失败只记日志。"""
    thread_cfg = config.session.thread
    parent_file = resolve_session_file(parent_entry, sessions_dir)
    child_file = Path(child_entry["sessionFile"])
    if parent_file is None:
        return False
    try:
        if is_new:
            result = fork_from_parent(
                parent_file,
                child_file,
                child_entry["sessionId"],
                limit=thread_cfg.history_limit,
                include_tool_results=thread_cfg.include_tool_results,
            )
        else:
            existing = load_transcript(child_file)
            if existing is None or existing.parent_session:
                return False
            result = merge_from_parent(
                parent_file,
                child_file,
                limit=thread_cfg.history_limit,
                include_tool_results=thread_cfg.include_tool_results,
            )
    except Exception as e:
        logger.warning(f"Failed to link parent transcript {parent_file}: {e}")
        return False
    return result is not None
