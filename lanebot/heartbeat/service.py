"""
心跳服务 (heartbeat/service.py)

按固定间隔（默认 30 分钟）唤醒 Agent，在主会话里执行一次 HEARTBEAT.md 巡检：
    - HEARTBEAT.md 为空或不存在时跳过，不消耗 LLM 配额
    - 主会话正在运行时跳过
    - 回复投递到主会话的 lastChannel / lastTo；回复只有 HEARTBEAT_OK（或很短的确认）时不投递
    - 结束后把主会话的 updatedAt 恢复为心跳前的值，心跳本身不会让会话保持新鲜

【二开提示】
    修改 HEARTBEAT_PROMPT 可自定义巡检行为；trigger_now() 可手动触发，便于调试。
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger

from lanebot.bus.events import OutboundMessage
from lanebot.bus.queue import MessageBus
from lanebot.session.store import load_session_store, update_session_store

DEFAULT_HEARTBEAT_INTERVAL_S = 30 * 60
DEFAULT_ACK_MAX_CHARS = 300

HEARTBEAT_PROMPT = """Read HEARTBEAT.md in your workspace (if it exists).
Follow any instructions or tasks listed there.
If nothing needs attention, reply with just: HEARTBEAT_OK"""

HEARTBEAT_OK_TOKEN = "HEARTBEAT_OK"

# (prompt, session_key, channel, chat_id) -> 回复文本
HeartbeatRunner = Callable[[str, str, str, str], Awaitable[str]]


@dataclass
class HeartbeatResult:
    """
    一次心跳的结果。

    属性:
        status: ran / skipped / failed
        reason: 跳过或失败原因
        delivered: 回复是否已投递
    """
    status: str
    reason: str | None = None
    delivered: bool = False


def is_heartbeat_empty(content: str | None) -> bool:
    """只有空行、标题、HTML 注释、空复选框时视为没有任务。"""
    if not content:
        return True
    skip = {"- [ ]", "* [ ]", "- [x]", "* [x]"}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or line.startswith("<!--") or line in skip:
            continue
        return False
    return True


def strip_heartbeat_token(text: str, max_ack_chars: int = DEFAULT_ACK_MAX_CHARS) -> tuple[str, bool]:
    """
    去掉回复首尾的 HEARTBEAT_OK。

    返回:
        (剩余文本, 是否应当不投递)；剩余文本为空或不超过 max_ack_chars 的短确认时不投递
    """
    stripped = (text or "").strip()
    if HEARTBEAT_OK_TOKEN not in stripped:
        return stripped, not stripped
    remainder = stripped
    if remainder.startswith(HEARTBEAT_OK_TOKEN):
        remainder = remainder[len(HEARTBEAT_OK_TOKEN):]
    if remainder.endswith(HEARTBEAT_OK_TOKEN):
        remainder = remainder[: -len(HEARTBEAT_OK_TOKEN)]
    remainder = remainder.strip(" \n\t.!")
    if remainder == stripped:
        # token 夹在正文中间，按正常回复投递
        return stripped, False
    return remainder, len(remainder) <= max_ack_chars


class HeartbeatService:
    """
    定期在主会话中运行巡检提示词。

    参数:
        workspace: 工作区目录（HEARTBEAT.md 所在位置）
        store_path: 会话存储路径
        session_key: 主会话键
        bus: 消息总线（投递回复）
        on_heartbeat: 执行一次运行并返回回复文本（通常是 AgentLoop.process_direct）
        is_busy: 主会话是否正在运行
        interval_s: 心跳间隔
        enabled: 是否启用
    """

    def __init__(
        self,
        workspace: Path,
        store_path: Path,
        session_key: str,
        bus: MessageBus | None = None,
        on_heartbeat: HeartbeatRunner | None = None,
        is_busy: Callable[[str], bool] | None = None,
        interval_s: int = DEFAULT_HEARTBEAT_INTERVAL_S,
        enabled: bool = True,
        ack_max_chars: int = DEFAULT_ACK_MAX_CHARS,
    ):
        self.workspace = workspace
        self.store_path = store_path
        self.session_key = session_key
        self.bus = bus
        self.on_heartbeat = on_heartbeat
        self.is_busy = is_busy
        self.interval_s = interval_s
        self.enabled = enabled
        self.ack_max_chars = ack_max_chars
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def heartbeat_file(self) -> Path:
        return self.workspace / "HEARTBEAT.md"

    def _read_heartbeat_file(self) -> str | None:
        if not self.heartbeat_file.exists():
            return None
        try:
            return self.heartbeat_file.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to read {self.heartbeat_file}: {e}")
            return None

    async def start(self) -> None:
        if not self.enabled:
            logger.info("Heartbeat disabled")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Heartbeat started (every {self.interval_s}s)")

    def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_s)
                if self._running:
                    await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Heartbeat error: {e}")

    async def tick(self, *, force: bool = False) -> HeartbeatResult:
        """
        执行一次心跳。

        参数:
            force: 为 True 时忽略 HEARTBEAT.md 为空的检查（手动触发）
        """
        if self.on_heartbeat is None:
            return HeartbeatResult("skipped", "disabled")
        if not force and is_heartbeat_empty(self._read_heartbeat_file()):
            logger.debug("Heartbeat: no tasks (HEARTBEAT.md empty)")
            return HeartbeatResult("skipped", "empty")
        if self.is_busy is not None and self.is_busy(self.session_key):
            logger.debug(f"Heartbeat: {self.session_key} busy, skipping")
            return HeartbeatResult("skipped", "requests-in-flight")

        entry = load_session_store(self.store_path, skip_cache=True).get(self.session_key) or {}
        previous_updated_at = entry.get("updatedAt")
        channel = entry.get("lastChannel")
        chat_id = entry.get("lastTo")
        if not channel or not chat_id:
            logger.debug(f"Heartbeat: {self.session_key} has no delivery target")
            return HeartbeatResult("skipped", "no-target")

        logger.info("Heartbeat: checking for tasks...")
        try:
            response = await self.on_heartbeat(HEARTBEAT_PROMPT, self.session_key, channel, chat_id)
        except Exception as e:
            logger.error(f"Heartbeat execution failed: {e}")
            await self._restore_updated_at(previous_updated_at)
            return HeartbeatResult("failed", str(e))
        await self._restore_updated_at(previous_updated_at)

        text, suppress = strip_heartbeat_token(response, self.ack_max_chars)
        if suppress:
            logger.info("Heartbeat: OK (no action needed)")
            return HeartbeatResult("ran", "ok-token")
        if self.bus is None:
            logger.info("Heartbeat: no message bus, reply not delivered")
            return HeartbeatResult("ran", "no-bus")

        await self.bus.publish_outbound(OutboundMessage(channel=channel, chat_id=chat_id, content=text))
        logger.info(f"Heartbeat: delivered to {channel}:{chat_id}")
        return HeartbeatResult("ran", delivered=True)

    async def _restore_updated_at(self, previous: int | None) -> None:
        if previous is None:
            return

        def mutate(store: dict[str, Any]) -> None:
            current = store.get(self.session_key)
            if current is not None and current.get("updatedAt") != previous:
                store[self.session_key] = {**current, "updatedAt": previous}

        try:
            await update_session_store(self.store_path, mutate)
        except Exception as e:
            logger.warning(f"Heartbeat failed to restore updatedAt for {self.session_key}: {e}")

    async def trigger_now(self) -> HeartbeatResult:
        return await self.tick(force=True)
