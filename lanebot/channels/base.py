"""
渠道基类 (channels/base.py)

每个聊天平台实现一个 BaseChannel 子类：
    start()  连接平台并持续监听
    stop()   断开连接
    send()   投递出站消息

收到平台消息后调用 _handle_message()：白名单检查 → 组装 InboundMessage → 发布到总线。
渠道只负责如实携带会话键需要的元数据（聊天类型、线程/话题、账号），
会话键本身由 session/keys.py 按 scope 解析。

【Java 开发者类比】
    抽象类 + 模板方法：子类只做协议转换，_handle_message() 统一做权限与封装。
"""

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from lanebot.bus.events import InboundMessage, OutboundMessage
from lanebot.bus.queue import MessageBus


class BaseChannel(ABC):
    """
    消息渠道抽象基类。

    属性:
        name: 渠道标识（出现在会话键和 lastChannel 中）
        config: 渠道配置
        bus: 消息总线
    """

    name: str = "base"

    def __init__(self, config: Any, bus: MessageBus):
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """连接平台并持续监听消息（长期运行）。"""
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> None:
        """投递一条出站消息。"""
        pass

    def is_allowed(self, sender_id: str) -> bool:
        """
        白名单检查：allow_from 为空时允许所有人。

        sender_id 可以是 "id|username" 复合形式，任一段命中即允许。
        """
        allow_list = getattr(self.config, "allow_from", [])
        if not allow_list:
            return True
        sender = str(sender_id)
        if sender in allow_list:
            return True
        return any(part and part in allow_list for part in sender.split("|"))

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        *,
        chat_type: str = "direct",
        thread_id: str | None = None,
        thread_kind: str = "thread",
        thread_label: str | None = None,
        subject: str | None = None,
        account_id: str | None = None,
        media: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """
        把平台消息发布到总线。

        参数:
            sender_id / chat_id: 发送者与聊天 ID
            content: 文本
            chat_type: direct / group / channel
            thread_id / thread_kind: 线程或话题 ID 与类型（thread / topic）
            thread_label: 线程显示名
            subject: 群组或频道名
            account_id: 多账号部署时的账号
            media: 附件
            metadata: 渠道私有数据（回复时原样带回）
        """
        if not self.is_allowed(sender_id):
            logger.warning(
                f"Access denied for sender {sender_id} on channel {self.name}. "
                f"Add them to allowFrom list in config to grant access."
            )
            return

        await self.bus.publish_inbound(InboundMessage(
            channel=self.name,
            sender_id=str(sender_id),
            chat_id=str(chat_id),
            content=content,
            chat_type=chat_type,
            thread_id=str(thread_id) if thread_id else None,
            thread_kind=thread_kind,
            thread_label=thread_label,
            subject=subject,
            account_id=account_id,
            media=media or [],
            metadata=metadata or {},
        ))

    @property
    def is_running(self) -> bool:
        return self._running
