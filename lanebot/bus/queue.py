"""
异步消息队列模块 - MessageBus 的实现。

两条 asyncio.Queue：
- inbound：渠道 → AgentLoop
- outbound：AgentLoop / 心跳服务 → ChannelManager

出站消息由 ChannelManager 的分发任务按 msg.channel 路由到具体渠道；
CLI 直连模式（process_direct）不经过出站队列，直接拿到回复文本。

【Java 开发者类比】
    相当于两条 LinkedBlockingQueue，put/take 都是挂起而非阻塞线程。
"""

import asyncio

from lanebot.bus.events import InboundMessage, OutboundMessage


class MessageBus:
    """
    异步消息总线。

    属性:
        inbound: 入站消息队列（渠道 → AgentLoop）
        outbound: 出站消息队列（AgentLoop → 渠道）
    """

    def __init__(self):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()

    async def publish_inbound(self, msg: InboundMessage) -> None:
        """渠道收到用户消息后调用，放入入站队列。"""
        await self.inbound.put(msg)

    async def consume_inbound(self) -> InboundMessage:
        """取出下一条入站消息，队列为空时挂起等待。"""
        return await self.inbound.get()

    async def publish_outbound(self, msg: OutboundMessage) -> None:
        """回复分发器产出回复后调用，放入出站队列。"""
        await self.outbound.put(msg)

    async def consume_outbound(self) -> OutboundMessage:
        """取出下一条出站消息，队列为空时挂起等待。"""
        return await self.outbound.get()

    @property
    def inbound_size(self) -> int:
        """待处理的入站消息数量。"""
        return self.inbound.qsize()

    @property
    def outbound_size(self) -> int:
        """待分发的出站消息数量。"""
        return self.outbound.qsize()
