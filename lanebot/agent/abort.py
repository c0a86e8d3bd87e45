"""
中止指令 (agent/abort.py)

授权发送者发送 stop / esc / abort / wait / exit / interrupt / /stop（忽略大小写与首尾空白）时：
    1. 中止该会话正在进行的运行并清空积压
    2. 在会话记录上写 abortedLastRun=true（记录不存在时改记到协调器的中止记忆里）
    3. 回复 "⚙️ Agent was aborted."
下一轮运行看到标志后在提示词前加一行说明，并清除标志。
"""

from pathlib import Path

from loguru import logger

from lanebot.agent.coordinator import RunCoordinator
from lanebot.session.store import update_session_entry
from lanebot.utils.helpers import now_ms

ABORT_TRIGGERS = frozenset({"stop", "esc", "abort", "wait", "exit", "interrupt"})
ABORT_REPLY = "⚙️ Agent was aborted."
ABORTED_NOTE = (
    "Note: The previous agent run was aborted by the user. "
    "Resume carefully or ask for clarification."
)


def is_abort_request(text: str | None) -> bool:
    normalized = (text or "").strip().lower()
    return normalized == "/stop" or normalized in ABORT_TRIGGERS


async def mark_aborted(store_path: Path, session_key: str) -> bool:
    """
    在会话记录上写 abortedLastRun=true。

    返回:
        bool: 记录是否存在（不存在时不创建）
    """
    updated = await update_session_entry(
        store_path,
        session_key,
        lambda entry: None if entry.get("abortedLastRun") else {"abortedLastRun": True, "updatedAt": now_ms()},
    )
    return updated is not None


async def handle_abort(
    coordinator: RunCoordinator,
    *,
    session_key: str,
    store_path: Path,
    reason: str = "user",
) -> bool:
    """
    执行中止：停止运行、清空积压、持久化标志。可重复调用，结果相同。

    返回:
        bool: 本次是否真正中止了一个正在进行的运行
    """
    aborted = coordinator.abort(session_key, reason)
    if not await mark_aborted(store_path, session_key):
        coordinator.set_abort_memory(session_key)
    logger.info(f"Abort requested for {session_key} (run aborted: {aborted})")
    return aborted


async def consume_aborted_flag(
    coordinator: RunCoordinator,
    *,
    entry: dict,
    session_key: str,
    store_path: Path,
) -> bool:
    """
    读取并清除上一轮的中止标志。

    返回:
        bool: 上一轮是否被中止（调用方据此在提示词前加 ABORTED_NOTE）
    """
    from_memory = coordinator.consume_abort_memory(session_key)
    if not entry.get("abortedLastRun"):
        return from_memory
    await update_session_entry(store_path, session_key, lambda _entry: {"abortedLastRun": False})
    return True
