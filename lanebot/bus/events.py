"""
消息事件类型定义模块 - 定义消息总线中传输的数据结构。

- InboundMessage：入站消息（渠道 → 会话核心），除正文外还携带会话键解析
  需要的全部元数据：聊天类型、线程/话题标记、账号、显式会话键覆盖
- OutboundMessage：出站消息（会话核心 → 渠道）

【Java 开发者类比】
- @dataclass 等价于 Java 的 record / Lombok @Data
- to_context() 类似 DTO → 领域对象的转换方法（MapStruct 的 mapper）

【设计要点】
- 会话键不再由消息自己拼接，而是交给 session/keys.py 按 scope 策略解析，
  消息只负责如实携带元数据
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from lanebot.session.keys import MessageContext


@dataclass
class InboundMessage:
    """
    入站消息 - 从聊天渠道接收到的用户消息。

    属性:
        channel: 消息来源渠道标识（'slack'、'telegram'、'cli'、'heartbeat'）
        sender_id: 发送者唯一标识（渠道内的用户 ID）
        chat_id: 聊天/频道唯一标识，也是回复的投递目标
        content: 消息文本内容
        chat_type: 聊天类型：direct（私聊）/ group（群组）/ channel（频道）
        thread_id: 线程或话题 ID（Slack thread_ts、Telegram message_thread_id）
        thread_kind: 线程类型："thread" 或 "topic"，决定会话键后缀
        thread_label: 线程显示名（如 Slack 线程首条消息摘要）
        account_id: 多账号部署时的账号标识
        session_key: 显式会话键覆盖（优先级最高）
        parent_session_key: 显式父会话键（用于分叉）
        subject: 群组主题/频道名
        timestamp: 接收时间戳
        media: 媒体附件 URL 列表
        metadata: 渠道特有的附加数据（message_id、thread_ts 等）
        command_authorized: 发送者是否有权执行指令（重置、中止、/think 等）
    """

    channel: str
    sender_id: str
    chat_id: str
    content: str
    chat_type: str = "direct"
    thread_id: str | None = None
    thread_kind: str = "thread"
    thread_label: str | None = None
    account_id: str | None = None
    session_key: str | None = None
    parent_session_key: str | None = None
    subject: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    command_authorized: bool = True

    def to_context(self) -> MessageContext:
        """转换为会话键解析器使用的纯数据上下文。"""
        return MessageContext(
            channel=self.channel,
            sender_id=self.sender_id,
            chat_id=self.chat_id,
            chat_type=self.chat_type,
            thread_id=self.thread_id,
            thread_kind=self.thread_kind,
            thread_label=self.thread_label,
            session_key=self.session_key,
            parent_session_key=self.parent_session_key,
            account_id=self.account_id,
            subject=self.subject,
        )


@dataclass
class OutboundMessage:
    """
    出站消息 - 要发送到聊天渠道的回复。

    属性:
        channel: 目标渠道标识
        chat_id: 目标聊天 ID
        content: 回复文本
        reply_to: 引用的原始消息 ID（可选）
        media: 媒体附件 URL 列表
        metadata: 渠道特有数据（如 Slack 的 thread_ts，保证回复落在同一线程）
    """

    channel: str
    chat_id: str
    content: str
    reply_to: str | None = None
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
