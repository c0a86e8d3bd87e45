"""
渠道管理器 (channels/manager.py)

    1. 按配置初始化已启用的渠道（延迟导入，未启用的渠道不需要装依赖）
    2. 统一启动 / 停止
    3. 运行出站分发器：消费总线上的 OutboundMessage，按 msg.channel 路由到渠道

出站消息的 channel 来自会话的 lastChannel。cli / heartbeat 这类进程内来源没有对应渠道，
发往它们的消息只记 debug 日志后丢弃（CLI 直连模式不经过总线取回复）。

【二开提示】
    新增渠道：schema.py 加配置类 → channels/xxx.py 继承 BaseChannel → 在 _init_channels() 注册。
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any

from loguru import logger

from lanebot.bus.events import OutboundMessage
from lanebot.bus.queue import MessageBus
from lanebot.channels.base import BaseChannel
from lanebot.config.schema import Config

INTERNAL_CHANNELS = frozenset({"cli", "heartbeat", "system"})


class ChannelManager:
    """
    渠道管理器。

    属性:
        channels: 已初始化的渠道 {名称: 实例}
        sent / failed: 每个渠道的投递成功、失败次数
        _dispatch_task: 出站分发器任务
    """

    def __init__(self, config: Config, bus: MessageBus):
        self.config = config
        self.bus = bus
        self.channels: dict[str, BaseChannel] = {}
        self.sent: Counter[str] = Counter()
        self.failed: Counter[str] = Counter()
        self._dispatch_task: asyncio.Task | None = None
        self._init_channels()

    def _init_channels(self) -> None:
        if self.config.channels.telegram.enabled:
            try:
                from lanebot.channels.telegram import TelegramChannel
                self.channels["telegram"] = TelegramChannel(self.config.channels.telegram, self.bus)
                logger.info("Telegram channel enabled")
            except ImportError as e:
                logger.warning(f"Telegram channel not available: {e}")

        if self.config.channels.slack.enabled:
            try:
                from lanebot.channels.slack import SlackChannel
                self.channels["slack"] = SlackChannel(self.config.channels.slack, self.bus)
                logger.info("Slack channel enabled")
            except ImportError as e:
                logger.warning(f"Slack channel not available: {e}")

    async def _start_channel(self, name: str, channel: BaseChannel) -> None:
        try:
            await channel.start()
        except Exception as e:
            logger.error(f"Failed to start channel {name}: {e}")

    async def start_all(self) -> None:
        """先启动出站分发器，再并发启动全部渠道（渠道的 start() 是长期运行任务）。"""
        if not self.channels:
            logger.warning("No channels enabled")
            return

        self._dispatch_task = asyncio.create_task(self._dispatch_outbound())
        await asyncio.gather(
            *(self._start_channel(name, channel) for name, channel in self.channels.items()),
            return_exceptions=True,
        )

    async def stop_all(self) -> None:
        logger.info("Stopping all channels...")
        if self._dispatch_task:
            self._dispatch_task.cancel()
            await asyncio.gather(self._dispatch_task, return_exceptions=True)
            self._dispatch_task = None

        for name, channel in self.channels.items():
            try:
                await channel.stop()
                logger.info(f"Stopped {name} channel")
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")

    async def deliver(self, msg: OutboundMessage) -> bool:
        """
        把一条出站消息交给目标渠道。

        返回:
            bool: 是否已交给渠道发送；未知渠道、进程内来源或发送异常时为 False
        """
        channel = self.channels.get(msg.channel)
        if channel is None:
            if msg.channel in INTERNAL_CHANNELS:
                logger.debug(f"Dropping outbound for in-process source {msg.channel}:{msg.chat_id}")
            else:
                logger.warning(f"No running channel for outbound message: {msg.channel}")
            return False
        try:
            await channel.send(msg)
        except Exception as e:
            self.failed[msg.channel] += 1
            logger.error(f"Error sending to {msg.channel}:{msg.chat_id}: {e}")
            return False
        self.sent[msg.channel] += 1
        return True

    async def _dispatch_outbound(self) -> None:
        logger.info("Outbound dispatcher started")
        while True:
            try:
                msg = await asyncio.wait_for(self.bus.consume_outbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            await self.deliver(msg)

    def get_status(self) -> dict[str, Any]:
        """已配置渠道的状态，包括未启用的渠道。"""
        status: dict[str, Any] = {}
        for name in ("telegram", "slack"):
            channel = self.channels.get(name)
            status[name] = {
                "enabled": getattr(self.config.channels, name).enabled,
                "running": bool(channel and channel.is_running),
                "sent": self.sent[name],
                "failed": self.failed[name],
            }
        return status

    @property
    def enabled_channels(self) -> list[str]:
        return list(self.channels.keys())
