"""
会话管理操作 (session/manage.py)

CLI 的 `lanebot sessions ...` 子命令和网关共用的管理接口：
    list_sessions    列出会话（按 updatedAt 倒序）
    patch_session    修改会话覆盖项（等级、模型、发送策略、标签、队列策略），值为 None 表示删除
    reset_session    换新 sessionId，清空标志与 token 计数，保留用户覆盖项和展示元数据
    delete_session   删除会话记录并归档 transcript（主会话不可删）
    compact_session  把 transcript 截到最后 N 行，原文件归档为 .bak

所有修改都走 update_session_store，并顺带把旧版会话键迁移到规范键。

【Java 开发者类比】
    相当于一个 SessionAdminService，方法签名即对外 API，
    校验失败抛 SessionOperationError（类似 IllegalArgumentException）。
"""

import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

from lanebot.config.schema import Config
from lanebot.directives.levels import (
    normalize_elevated_level,
    normalize_queue_drop,
    normalize_queue_mode,
    normalize_reasoning_level,
    normalize_think_level,
    normalize_verbose_level,
)
from lanebot.directives.model_selection import build_model_selection, resolve_model_directive
from lanebot.errors import DirectiveError, SessionOperationError
from lanebot.session.keys import (
    canonicalize_key,
    classify_session_key,
    legacy_store_keys,
    resolve_main_session_key,
    parse_group_key,
)
from lanebot.session.lifecycle import CARRY_ON_RESET
from lanebot.session.migrations import migrate_legacy_keys
from lanebot.session.store import load_session_store, update_session_store
from lanebot.session.transcript import archive_transcript, compact_transcript, resolve_session_file
from lanebot.utils.helpers import now_ms

if TYPE_CHECKING:
    from lanebot.agent.coordinator import RunCoordinator

DELETE_WAIT_SECONDS = 15.0
DEFAULT_COMPACT_LINES = 400
RESET_EXTRA_FIELDS = ("model", "modelProvider", "contextTokens", "skillsSnapshot")

_LEVEL_FIELDS = {
    "thinkingLevel": normalize_think_level,
    "verboseLevel": normalize_verbose_level,
    "reasoningLevel": normalize_reasoning_level,
    "elevatedLevel": normalize_elevated_level,
    "queueMode": normalize_queue_mode,
    "queueDrop": normalize_queue_drop,
}
_PATCHABLE = set(_LEVEL_FIELDS) | {"model", "sendPolicy", "label", "spawnedBy", "queueDebounceMs", "queueCap"}


def _resolve_target(config: Config, key: str) -> tuple[str, list[str], Path]:
    raw = (key or "").strip()
    if not raw:
        raise SessionOperationError("key required")
    agent_id = config.agent_id
    canonical = canonicalize_key(raw, agent_id, config.session.main_key)
    legacy = legacy_store_keys(canonical, agent_id, config.session.main_key)
    if raw != canonical and raw not in legacy:
        legacy.append(raw)
    return canonical, legacy, config.store_path(agent_id)


def list_sessions(
    config: Config,
    *,
    include_global: bool = False,
    include_unknown: bool = False,
    agent_id: str | None = None,
    spawned_by: str | None = None,
    label: str | None = None,
    active_minutes: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    """
    列出会话。

    参数:
        include_global / include_unknown: 是否包含 global / unknown 会话
        agent_id: 只列出该 Agent 的会话
        spawned_by: 只列出由该会话派生的会话
        label: 只列出该标签的会话
        active_minutes: 只列出最近 N 分钟内活跃的会话
        limit: 最多返回条数

    返回:
        {"ts", "path", "count", "defaults": {"model", "contextTokens"}, "sessions": [...]}
    """
    store_path = config.store_path()
    store = load_session_store(store_path)
    now = now_ms()
    wanted_agent = (agent_id or "").strip().lower()
    cutoff = now - max(1, int(active_minutes)) * 60_000 if active_minutes else None

    rows = []
    for key, entry in store.items():
        if key == "global" and not include_global:
            continue
        if key == "unknown" and not include_unknown:
            continue
        if wanted_agent:
            parts = key.split(":", 2)
            if parts[0] != "agent" or len(parts) < 3 or parts[1] != wanted_agent:
                continue
        if spawned_by and (key in ("global", "unknown") or entry.get("spawnedBy") != spawned_by):
            continue
        if label and entry.get("label") != label.strip():
            continue
        updated_at = entry.get("updatedAt")
        if cutoff is not None and (updated_at or 0) < cutoff:
            continue
        rows.append(_session_row(key, entry))

    rows.sort(key=lambda row: row["updatedAt"] or 0, reverse=True)
    if limit is not None and limit > 0:
        rows = rows[:limit]

    return {
        "ts": now,
        "path": str(store_path),
        "count": len(rows),
        "defaults": {
            "model": config.agents.defaults.model,
            "contextTokens": config.agents.defaults.context_tokens,
        },
        "sessions": rows,
    }


def _session_row(key: str, entry: dict[str, Any]) -> dict[str, Any]:
    group = parse_group_key(key)
    input_tokens = entry.get("inputTokens") or 0
    output_tokens = entry.get("outputTokens") or 0
    display_name = entry.get("displayName")
    if not display_name and group:
        display_name = f"{group['channel']}:{entry.get('subject') or group['id']}"
    model = entry.get("modelOverride") or entry.get("model")
    provider = entry.get("providerOverride") or entry.get("modelProvider")
    return {
        "key": key,
        "kind": classify_session_key(key, entry),
        "label": entry.get("label"),
        "displayName": display_name,
        "channel": entry.get("channel") or (group or {}).get("channel"),
        "chatType": entry.get("chatType"),
        "updatedAt": entry.get("updatedAt"),
        "sessionId": entry.get("sessionId"),
        "abortedLastRun": entry.get("abortedLastRun"),
        "thinkingLevel": entry.get("thinkingLevel"),
        "verboseLevel": entry.get("verboseLevel"),
        "reasoningLevel": entry.get("reasoningLevel"),
        "elevatedLevel": entry.get("elevatedLevel"),
        "sendPolicy": entry.get("sendPolicy"),
        "inputTokens": input_tokens,
        "outputTokens": output_tokens,
        "totalTokens": entry.get("totalTokens") or input_tokens + output_tokens,
        "model": f"{provider}/{model}" if provider and model else model,
        "contextTokens": entry.get("contextTokens"),
    }


def _validate_patch(config: Config, patch: dict[str, Any]) -> tuple[dict[str, Any], set[str]]:
    """校验补丁，返回 (要写入的字段, 要删除的字段)。"""
    unknown = set(patch) - _PATCHABLE
    if unknown:
        raise SessionOperationError(f"Unsupported session fields: {', '.join(sorted(unknown))}")

    sets: dict[str, Any] = {}
    deletes: set[str] = set()
    for field_name, value in patch.items():
        if value is None:
            if field_name == "model":
                deletes.update(("modelOverride", "providerOverride"))
            else:
                deletes.add(field_name)
            continue
        if field_name in _LEVEL_FIELDS:
            normalized = _LEVEL_FIELDS[field_name](str(value))
            if normalized is None:
                raise SessionOperationError(f'Invalid {field_name} "{value}".')
            if field_name in ("thinkingLevel", "reasoningLevel") and normalized == "off":
                deletes.add(field_name)
            else:
                sets[field_name] = normalized
        elif field_name == "model":
            try:
                selection = resolve_model_directive(str(value), build_model_selection(config))
            except DirectiveError as e:
                raise SessionOperationError(str(e)) from e
            if selection.is_default:
                deletes.update(("modelOverride", "providerOverride"))
            else:
                sets["modelOverride"] = selection.model
                sets["providerOverride"] = selection.provider
        elif field_name == "sendPolicy":
            if value not in ("allow", "deny"):
                raise SessionOperationError(f'Invalid sendPolicy "{value}" (use allow or deny).')
            sets[field_name] = value
        elif field_name in ("queueDebounceMs", "queueCap"):
            try:
                number = int(value)
            except (TypeError, ValueError) as e:
                raise SessionOperationError(f'Invalid {field_name} "{value}".') from e
            if number < (1 if field_name == "queueCap" else 0):
                raise SessionOperationError(f'Invalid {field_name} "{value}".')
            sets[field_name] = number
        else:
            text = str(value).strip()
            if text:
                sets[field_name] = text
            else:
                deletes.add(field_name)
    return sets, deletes - set(sets)


async def patch_session(config: Config, key: str, patch: dict[str, Any]) -> dict[str, Any]:
    """
    修改会话覆盖项；会话不存在时创建。

    参数:
        key: 会话键（任意形式，内部规范化）
        patch: 字段补丁，值为 None 表示删除该字段；model 接受 "provider/model"、别名或模糊片段

    返回:
        {"ok": True, "key", "path", "entry"}

    异常:
        SessionOperationError: 字段不支持或取值非法
    """
    canonical, legacy, store_path = _resolve_target(config, key)
    sets, deletes = _validate_patch(config, patch)

    def mutate(store: dict[str, Any]) -> dict[str, Any]:
        existing = migrate_legacy_keys(store, canonical, legacy)
        entry = dict(existing or {"sessionId": str(uuid.uuid4())})
        for name in deletes:
            entry.pop(name, None)
        entry.update(sets)
        entry["updatedAt"] = max(entry.get("updatedAt") or 0, now_ms())
        store[canonical] = entry
        return entry

    entry = await update_session_store(store_path, mutate)
    logger.info(f"Patched session {canonical}: set={sorted(sets)} unset={sorted(deletes)}")
    return {"ok": True, "key": canonical, "path": str(store_path), "entry": entry}


async def reset_session(config: Config, key: str) -> dict[str, Any]:
    """
    重置会话：新 sessionId，清空 systemSent / abortedLastRun / token 计数。

    保留用户覆盖项（等级、模型、发送策略、标签、队列策略）、展示与投递元数据、技能快照。

    返回:
        {"ok": True, "key", "entry"}
    """
    canonical, legacy, store_path = _resolve_target(config, key)

    def mutate(store: dict[str, Any]) -> dict[str, Any]:
        existing = migrate_legacy_keys(store, canonical, legacy) or {}
        entry = {k: existing[k] for k in (*CARRY_ON_RESET, *RESET_EXTRA_FIELDS) if k in existing}
        entry.update(
            sessionId=str(uuid.uuid4()),
            updatedAt=now_ms(),
            systemSent=False,
            abortedLastRun=False,
            compactionCount=0,
        )
        store[canonical] = entry
        return entry

    entry = await update_session_store(store_path, mutate)
    logger.info(f"Reset session {canonical} -> {entry['sessionId']}")
    return {"ok": True, "key": canonical, "entry": entry}


async def delete_session(
    config: Config,
    key: str,
    *,
    coordinator: "RunCoordinator | None" = None,
    delete_transcript: bool = True,
) -> dict[str, Any]:
    """
    删除会话记录。

    参数:
        key: 会话键
        coordinator: 运行协调器；传入时先清空积压、中止进行中的运行并等待其结束
        delete_transcript: 是否把 transcript 归档为 .deleted

    返回:
        {"ok": True, "key", "deleted": bool, "archived": [路径]}

    异常:
        SessionOperationError: 删除主会话，或运行在 15 秒内未结束
    """
    canonical, legacy, store_path = _resolve_target(config, key)
    main_key = resolve_main_session_key(config.session, config.agent_id)
    if canonical == main_key:
        raise SessionOperationError(f"Cannot delete the main session ({main_key}).")

    if coordinator is not None:
        coordinator.clear_backlog(canonical)
        if coordinator.is_active(canonical):
            coordinator.abort(canonical, "deleted")
            if not await coordinator.wait_for_idle(canonical, DELETE_WAIT_SECONDS):
                raise SessionOperationError(f"Session {canonical} is still active; try again in a moment.")

    def mutate(store: dict[str, Any]) -> dict[str, Any] | None:
        migrate_legacy_keys(store, canonical, legacy)
        return store.pop(canonical, None)

    removed = await update_session_store(store_path, mutate)

    archived: list[str] = []
    if delete_transcript and removed:
        path = resolve_session_file(removed, store_path.parent)
        if path is not None:
            try:
                moved = archive_transcript(path, "deleted")
            except OSError as e:
                logger.warning(f"Failed to archive transcript {path}: {e}")
                moved = None
            if moved is not None:
                archived.append(str(moved))

    logger.info(f"Deleted session {canonical} (existed={removed is not None})")
    return {"ok": True, "key": canonical, "deleted": removed is not None, "archived": archived}


async def compact_session(config: Config, key: str, max_lines: int = DEFAULT_COMPACT_LINES) -> dict[str, Any]:
    """
    压缩会话 transcript：只保留最后 max_lines 行，原文件归档为 .bak。

    返回:
        {"ok": True, "key", "compacted": bool, "kept"?, "archived"?, "reason"?}
    """
    canonical, legacy, store_path = _resolve_target(config, key)
    max_lines = max(1, int(max_lines))

    def locate(store: dict[str, Any]) -> dict[str, Any] | None:
        return migrate_legacy_keys(store, canonical, legacy)

    entry = await update_session_store(store_path, locate)
    if not entry or not entry.get("sessionId"):
        return {"ok": True, "key": canonical, "compacted": False, "reason": "no sessionId"}

    path = resolve_session_file(entry, store_path.parent)
    if path is None or not path.exists():
        return {"ok": True, "key": canonical, "compacted": False, "reason": "no transcript"}

    outcome = compact_transcript(path, max_lines)
    if not outcome["compacted"]:
        return {"ok": True, "key": canonical, "compacted": False, "kept": outcome["kept"], "reason": "within limit"}

    def clear_tokens(store: dict[str, Any]) -> None:
        current = store.get(canonical)
        if current is None:
            return
        for name in ("inputTokens", "outputTokens", "totalTokens"):
            current.pop(name, None)
        current["updatedAt"] = now_ms()

    await update_session_store(store_path, clear_tokens)
    logger.info(f"Compacted transcript for {canonical}: kept {outcome['kept']} lines")
    return {
        "ok": True,
        "key": canonical,
        "compacted": True,
        "kept": outcome["kept"],
        "archived": outcome["archived"],
    }
