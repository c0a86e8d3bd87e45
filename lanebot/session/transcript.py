"""
会话记录（transcript）模块 - 每个 sessionId 一份 JSONL 对话记录。

【存储格式 - JSONL】
- 第一行：头部，{"type": "session", "version", "id", "timestamp", "cwd", "parentSession"?}
- 后续行：{"type": "message", "timestamp", "message": {"role", "content", ...}}
  role 为 user / assistant / toolResult；assistant 的 content 是块列表，
  工具调用块为 {"type": "toolCall", "id", "name", "arguments"}

【存储路径】
与 sessions.json 同目录：{sessionId}.jsonl；线程会话为 {sessionId}-topic-{threadId}.jsonl。
会话记录的 sessionFile 字段指向该文件。

【分叉与合并】
- fork_from_parent：新线程会话创建时，复制父会话末尾 K 条消息到新记录，头部写入 parentSession
- merge_from_parent：已存在但从未关联父会话的线程记录，一次性把父会话末尾消息插到前面

【Java 开发者类比】
- Transcript 类似一个追加写的日志段（Kafka log segment）
- archive/compact 类似日志滚动（logback 的 RollingFileAppender）
"""

import json
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from lanebot.utils.helpers import iso_timestamp, now_ms, safe_filename

TRANSCRIPT_VERSION = 1
TOOL_CALL_BLOCK_TYPES = ("toolCall", "toolUse", "functionCall")
MESSAGE_ROLES = ("user", "assistant", "toolResult")


@dataclass
class Transcript:
    """
    单份 JSONL 对话记录。

    属性:
        path: 文件路径
        header: 头部对象（type=session）
        entries: 头部之后的全部行（message 及其他类型）
    """
    path: Path
    header: dict[str, Any]
    entries: list[dict[str, Any]] = field(default_factory=list)

    @property
    def session_id(self) -> str | None:
        return self.header.get("id")

    @property
    def parent_session(self) -> str | None:
        parent = (self.header.get("parentSession") or "").strip()
        return parent or None

    @property
    def messages(self) -> list[dict[str, Any]]:
        """按顺序返回所有 user/assistant/toolResult 消息。"""
        return [
            e["message"] for e in self.entries
            if e.get("type") == "message" and isinstance(e.get("message"), dict)
            and e["message"].get("role") in MESSAGE_ROLES
        ]

    def append_message(self, message: dict[str, Any]) -> None:
        """追加一条消息并立即写入文件末尾。"""
        entry = {"type": "message", "timestamp": iso_timestamp(), "message": message}
        self.entries.append(entry)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.save()
            return
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def save(self) -> None:
        """整份覆盖写入（头部 + 所有行）。"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lines = [self.header, *self.entries]
        with open(self.path, "w", encoding="utf-8") as f:
            for line in lines:
                f.write(json.dumps(line, ensure_ascii=False) + "\n")


def transcript_path(sessions_dir: Path, session_id: str, thread_id: str | None = None) -> Path:
    """
    会话记录文件路径。

    参数:
        sessions_dir: sessions.json 所在目录
        session_id: 会话 ID
        thread_id: 线程/话题 ID（可选）
    """
    name = session_id
    if thread_id:
        name = f"{session_id}-topic-{safe_filename(str(thread_id))}"
    return sessions_dir / f"{name}.jsonl"


def resolve_session_file(entry: dict[str, Any], sessions_dir: Path) -> Path | None:
    """记录的 sessionFile 优先，否则按 sessionId 推导。"""
    if entry.get("sessionFile"):
        return Path(entry["sessionFile"]).expanduser()
    if entry.get("sessionId"):
        return transcript_path(sessions_dir, entry["sessionId"])
    return None


def new_header(session_id: str, cwd: str | None = None, parent_session: str | None = None) -> dict[str, Any]:
    """构造头部行。"""
    header: dict[str, Any] = {
        "type": "session",
        "version": TRANSCRIPT_VERSION,
        "id": session_id,
        "timestamp": iso_timestamp(),
        "cwd": cwd or "",
    }
    if parent_session:
        header["parentSession"] = parent_session
    return header


def load_transcript(path: Path) -> Transcript | None:
    """
    读取会话记录。

    第一条非空行必须是 type=session 的头部；文件不存在或头部缺失返回 None。
    无法解析的行跳过。
    """
    if not path.exists():
        return None
    header: dict[str, Any] | None = None
    entries: list[dict[str, Any]] = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            if header is None:
                if data.get("type") != "session":
                    return None
                header = data
                continue
            entries.append(data)
    if header is None:
        return None
    return Transcript(path=path, header=header, entries=entries)


def open_or_create(path: Path, session_id: str, cwd: str | None = None) -> Transcript:
    """读取会话记录，不存在时创建（只写头部）。"""
    existing = load_transcript(path)
    if existing is not None:
        return existing
    transcript = Transcript(path=path, header=new_header(session_id, cwd))
    transcript.save()
    return transcript


def _strip_tool_calls(message: dict[str, Any]) -> dict[str, Any] | None:
    content = message.get("content")
    if not isinstance(content, list):
        return message
    kept = [
        block for block in content
        if not (isinstance(block, dict) and block.get("type") in TOOL_CALL_BLOCK_TYPES)
    ]
    if not kept:
        return None
    if len(kept) == len(content):
        return message
    return {**message, "content": kept}


def filter_parent_messages(messages: list[dict[str, Any]], include_tool_results: bool) -> list[dict[str, Any]]:
    """
    过滤父会话消息。

    include_tool_results 为 False 时：丢弃 toolResult；去掉 assistant 中的工具调用块，
    去掉后为空的 assistant 消息整条丢弃。
    """
    if include_tool_results:
        return [m for m in messages if m.get("role") in MESSAGE_ROLES]
    filtered: list[dict[str, Any]] = []
    for message in messages:
        role = message.get("role")
        if role == "user":
            filtered.append(message)
        elif role == "assistant":
            stripped = _strip_tool_calls(message)
            if stripped is not None:
                filtered.append(stripped)
    return filtered


def _parent_tail(parent: Transcript, limit: int, include_tool_results: bool) -> list[dict[str, Any]]:
    messages = parent.messages
    if limit > 0:
        messages = messages[-limit:]
    return filter_parent_messages(messages, include_tool_results)


def fork_from_parent(
    parent_file: Path,
    child_file: Path,
    child_session_id: str,
    *,
    limit: int,
    include_tool_results: bool,
) -> Transcript | None:
    """
    从父会话分叉出新的子会话记录。

    参数:
        parent_file: 父会话记录路径
        child_file: 子会话记录路径（将被覆盖）
        child_session_id: 子会话 ID
        limit: 复制父会话末尾的消息条数（K）
        include_tool_results: 是否保留工具结果

    返回:
        子会话记录；父会话记录不存在时返回 None
    """
    parent = load_transcript(parent_file)
    if parent is None:
        return None
    header = new_header(child_session_id, parent.header.get("cwd"), str(parent_file))
    child = Transcript(path=child_file, header=header)
    for message in _parent_tail(parent, limit, include_tool_results):
        child.entries.append({"type": "message", "timestamp": iso_timestamp(), "message": message})
    child.save()
    logger.debug(f"Forked {len(child.entries)} messages from {parent_file.name} into {child_file.name}")
    return child


def merge_from_parent(
    parent_file: Path,
    child_file: Path,
    *,
    limit: int,
    include_tool_results: bool,
) -> Transcript | None:
    """
    把父会话末尾消息合并到一个尚未关联父会话的子记录前面（一次性）。

    子记录已有 parentSession 头部或任一文件不存在时返回 None。
    """
    parent = load_transcript(parent_file)
    child = load_transcript(child_file)
    if parent is None or child is None or child.parent_session:
        return None
    prefix = [
        {"type": "message", "timestamp": iso_timestamp(), "message": m}
        for m in _parent_tail(parent, limit, include_tool_results)
    ]
    child.header = {**child.header, "parentSession": str(parent_file)}
    child.entries = prefix + child.entries
    child.save()
    logger.debug(f"Merged {len(prefix)} parent messages into {child_file.name}")
    return child


def archive_transcript(path: Path, reason: str) -> Path | None:
    """
    把会话记录重命名为 "<path>.<reason>.<时间戳>" 归档，文件不存在返回 None。

    参数:
        path: 会话记录路径
        reason: 归档原因（"deleted" / "bak"）
    """
    if not path.exists():
        return None
    stamp = iso_timestamp(now_ms()).replace(":", "-")
    archived = path.with_name(f"{path.name}.{reason}.{stamp}")
    path.rename(archived)
    return archived


def compact_transcript(path: Path, max_lines: int) -> dict[str, Any]:
    """
    把会话记录截断到最后 max_lines 行，原文件归档为 .bak。

    头部行始终保留，不计入 max_lines。

    返回:
        {"compacted": bool, "kept": int, "archived": str | None}
    """
    max_lines = max(1, int(max_lines))
    raw_lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    if not raw_lines:
        return {"compacted": False, "kept": 0, "archived": None}
    header, body = raw_lines[0], raw_lines[1:]
    if len(body) <= max_lines:
        return {"compacted": False, "kept": len(body), "archived": None}

    kept = body[-max_lines:]
    archived = archive_transcript(path, "bak")
    path.write_text("\n".join([header, *kept]) + "\n", encoding="utf-8")
    return {"compacted": True, "kept": len(kept), "archived": str(archived) if archived else None}


def new_session_id() -> str:
    """生成新的全局唯一会话 ID。"""
    return str(uuid.uuid4())
