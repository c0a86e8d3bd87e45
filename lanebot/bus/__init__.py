"""
消息总线模块 - 渠道与会话核心之间的异步解耦通道。

消息流向：
  用户消息 → 渠道(Channel) → InboundMessage → 消息总线 → AgentLoop（会话核心）
  Agent 回复 → OutboundMessage → 消息总线 → 渠道(Channel) → 用户

【Java 开发者类比】
- MessageBus 类似于两条 BlockingQueue + 按渠道分发的观察者
- InboundMessage / OutboundMessage 是入站/出站 DTO
"""

from lanebot.bus.events import InboundMessage, OutboundMessage
from lanebot.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage"]
