"""
Slack 渠道 (channels/slack.py)

基于 Socket Mode（WebSocket）接收事件，无需公网端点；用 AsyncWebClient 发送消息。

会话映射：
    channel_type=im            → chat_type=direct
    channel_type=mpim / group  → chat_type=group
    channel_type=channel       → chat_type=channel
    线程内的消息（thread_ts != ts）→ thread_id=thread_ts，会话键追加 :thread:{thread_ts}，
    新线程会话从频道会话分叉历史

群组响应策略（group_policy）：
    open       响应所有消息
    mention    只响应 @机器人
    allowlist  只响应 group_allow_from 中的频道

【Slack 的两个 Token】
    Bot Token (xoxb-...) 调用 Web API；App Token (xapp-...) 建立 Socket Mode 连接。
"""

import asyncio
import re

from loguru import logger
from slack_sdk.socket_mode.request import SocketModeRequest
from slack_sdk.socket_mode.response import SocketModeResponse
from slack_sdk.socket_mode.websockets import SocketModeClient
from slack_sdk.web.async_client import AsyncWebClient

from lanebot.bus.events import OutboundMessage
from lanebot.bus.queue import MessageBus
from lanebot.channels.base import BaseChannel
from lanebot.config.schema import SlackConfig

_CHAT_TYPES = {"im": "direct", "mpim": "group", "group": "group", "channel": "channel"}


class SlackChannel(BaseChannel):
    """
    Slack Socket Mode 渠道。

    属性:
        _web_client: Web API 客户端
        _socket_client: Socket Mode 客户端
        _bot_user_id: 机器人自身用户 ID（识别 @提及、过滤自身消息）
    """

    name = "slack"

    def __init__(self, config: SlackConfig, bus: MessageBus):
        super().__init__(config, bus)
        self.config: SlackConfig = config
        self._web_client: AsyncWebClient | None = None
        self._socket_client: SocketModeClient | None = None
        self._bot_user_id: str | None = None

    async def start(self) -> None:
        if not self.config.bot_token or not self.config.app_token:
            logger.error("Slack bot/app token not configured")
            return

        self._running = True
        self._web_client = AsyncWebClient(token=self.config.bot_token)
        self._socket_client = SocketModeClient(
            app_token=self.config.app_token,
            web_client=self._web_client,
        )
        self._socket_client.socket_mode_request_listeners.append(self._on_socket_request)

        try:
            auth = await self._web_client.auth_test()
            self._bot_user_id = auth.get("user_id")
            logger.info(f"Slack bot connected as {self._bot_user_id}")
        except Exception as e:
            logger.warning(f"Slack auth_test failed: {e}")

        logger.info("Starting Slack Socket Mode client...")
        await self._socket_client.connect()
        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        self._running = False
        if self._socket_client:
            try:
                await self._socket_client.close()
            except Exception as e:
                logger.warning(f"Slack socket close failed: {e}")
            self._socket_client = None

    async def send(self, msg: OutboundMessage) -> None:
        """
        发送消息；频道消息按 reply_in_thread 回复到线程，私聊直接回复。
        """
        if not self._web_client:
            logger.warning("Slack client not running")
            return
        slack_meta = msg.metadata.get("slack", {}) if msg.metadata else {}
        thread_ts = slack_meta.get("thread_ts")
        use_thread = bool(thread_ts) and slack_meta.get("channel_type") != "im"
        text = msg.content or ""
        if msg.media:
            text = "\n".join([text, *msg.media]).strip()
        try:
            await self._web_client.chat_postMessage(
                channel=msg.chat_id,
                text=text,
                thread_ts=thread_ts if use_thread else None,
            )
        except Exception as e:
            logger.error(f"Error sending Slack message: {e}")

    async def _on_socket_request(self, client: SocketModeClient, req: SocketModeRequest) -> None:
        if req.type != "events_api":
            return
        # Slack 要求 3 秒内 ACK
        await client.send_socket_mode_response(SocketModeResponse(envelope_id=req.envelope_id))

        event = (req.payload or {}).get("event") or {}
        event_type = event.get("type")
        if event_type not in ("message", "app_mention") or event.get("subtype"):
            return

        sender_id = event.get("user")
        chat_id = event.get("channel")
        if not sender_id or not chat_id:
            return
        if self._bot_user_id and sender_id == self._bot_user_id:
            return

        text = event.get("text") or ""
        # @提及 会同时触发 message 和 app_mention，只处理 app_mention
        if event_type == "message" and self._bot_user_id and f"<@{self._bot_user_id}>" in text:
            return

        channel_type = event.get("channel_type") or ("channel" if event_type == "app_mention" else "")
        logger.debug(f"Slack event: type={event_type} user={sender_id} channel={chat_id} channel_type={channel_type}")

        if not self._is_allowed(sender_id, chat_id, channel_type):
            return
        if channel_type != "im" and not self._should_respond_in_channel(event_type, text, chat_id):
            return

        ts = event.get("ts")
        parent_ts = event.get("thread_ts")
        in_thread = bool(parent_ts) and parent_ts != ts
        reply_ts = parent_ts or (ts if self.config.reply_in_thread else None)

        try:
            if self._web_client and ts:
                await self._web_client.reactions_add(channel=chat_id, name="eyes", timestamp=ts)
        except Exception as e:
            logger.debug(f"Slack reactions_add failed: {e}")

        await self._handle_message(
            sender_id=sender_id,
            chat_id=chat_id,
            content=self._strip_bot_mention(text),
            chat_type=_CHAT_TYPES.get(channel_type, "channel"),
            thread_id=parent_ts if in_thread else None,
            thread_kind="thread",
            metadata={
                "message_id": ts,
                "slack": {"thread_ts": reply_ts, "channel_type": channel_type},
            },
        )

    def _is_allowed(self, sender_id: str, chat_id: str, channel_type: str) -> bool:
        if channel_type == "im":
            if not self.config.dm.enabled:
                return False
            if self.config.dm.policy == "allowlist":
                return sender_id in self.config.dm.allow_from
            return True
        if self.config.group_policy == "allowlist":
            return chat_id in self.config.group_allow_from
        return True

    def _should_respond_in_channel(self, event_type: str, text: str, chat_id: str) -> bool:
        if self.config.group_policy == "open":
            return True
        if self.config.group_policy == "mention":
            if event_type == "app_mention":
                return True
            return self._bot_user_id is not None and f"<@{self._bot_user_id}>" in text
        if self.config.group_policy == "allowlist":
            return chat_id in self.config.group_allow_from
        return False

    def _strip_bot_mention(self, text: str) -> str:
        if not text or not self._bot_user_id:
            return text
        return re.sub(rf"<@{re.escape(self._bot_user_id)}>\s*", "", text).strip()
