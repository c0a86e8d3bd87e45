"""
消息渠道 - 聊天平台接入层。

BaseChannel 定义 start / stop / send 契约，Slack、Telegram 各自实现，
ChannelManager 负责生命周期和出站路由。渠道通过 MessageBus 与 AgentLoop 解耦：

  用户消息 → 渠道 → MessageBus → AgentLoop → MessageBus → 渠道 → 用户
"""

from lanebot.channels.base import BaseChannel
from lanebot.channels.manager import ChannelManager

__all__ = ["BaseChannel", "ChannelManager"]
