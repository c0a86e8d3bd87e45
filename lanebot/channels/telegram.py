"""
Telegram 渠道 (channels/telegram.py)

基于 python-telegram-bot 长轮询，无需公网 IP 或 Webhook。

会话映射：
    私聊（private）           → chat_type=direct
    群组 / 超级群组            → chat_type=group
    论坛话题（message_thread_id）→ thread_id=话题 ID，thread_kind=topic，
                                会话键追加 :topic:{id}

斜杠命令：
    /start 由渠道直接回复欢迎语，其余命令（/new、/reset、/stop、/model、/queue ...）
    原样转发给 AgentLoop，由指令层统一处理。

【二开提示】
    回复时通过 metadata.telegram.message_thread_id 落回同一话题；
    扩展新的媒体类型时在 _MEDIA_KINDS 中补充即可。
"""

from __future__ import annotations

import asyncio
import re

from loguru import logger
from telegram import BotCommand, Message, Update
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters
from telegram.request import HTTPXRequest

from lanebot.bus.events import OutboundMessage
from lanebot.bus.queue import MessageBus
from lanebot.channels.base import BaseChannel
from lanebot.config.schema import TelegramConfig
from lanebot.utils.helpers import ensure_dir, get_data_path

_EXTENSIONS = {
    "image/jpeg": ".jpg", "image/png": ".png", "image/gif": ".gif",
    "audio/ogg": ".ogg", "audio/mpeg": ".mp3", "audio/mp4": ".m4a",
}
_DEFAULT_EXTENSIONS = {"image": ".jpg", "voice": ".ogg", "audio": ".mp3", "file": ""}


def _markdown_to_telegram_html(text: str) -> str:
    """
    Markdown → Telegram HTML（只支持 b / i / s / code / pre / a）。

    先用占位符保护代码块和行内代码，转换剩余文本后再恢复。
    """
    if not text:
        return ""

    blocks: list[str] = []
    inline: list[str] = []

    def keep_block(m: re.Match) -> str:
        blocks.append(m.group(1))
        return f"\x00B{len(blocks) - 1}\x00"

    def keep_inline(m: re.Match) -> str:
        inline.append(m.group(1))
        return f"\x00I{len(inline) - 1}\x00"

    text = re.sub(r"```[\w]*\n?([\s\S]*?)```", keep_block, text)
    text = re.sub(r"`([^`]+)`", keep_inline, text)

    text = re.sub(r"^#{1,6}\s+(.+)$", r"\1", text, flags=re.MULTILINE)
    text = re.sub(r"^>\s*(.*)$", r"\1", text, flags=re.MULTILINE)
    text = _escape(text)
    text = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r'<a href="\2">\1</a>', text)
    text = re.sub(r"\*\*(.+?)\*\*", r"<b>\1</b>", text)
    text = re.sub(r"__(.+?)__", r"<b>\1</b>", text)
    text = re.sub(r"(?<![a-zA-Z0-9])_([^_]+)_(?![a-zA-Z0-9])", r"<i>\1</i>", text)
    text = re.sub(r"~~(.+?)~~", r"<s>\1</s>", text)
    text = re.sub(r"^[-*]\s+", "• ", text, flags=re.MULTILINE)

    for i, code in enumerate(inline):
        text = text.replace(f"\x00I{i}\x00", f"<code>{_escape(code)}</code>")
    for i, code in enumerate(blocks):
        text = text.replace(f"\x00B{i}\x00", f"<pre><code>{_escape(code)}</code></pre>")
    return text


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


class TelegramChannel(BaseChannel):
    """
    Telegram 长轮询渠道。

    属性:
        _app: python-telegram-bot 的 Application
        _typing_tasks: 聊天键 → "正在输入"指示器任务
    """

    name = "telegram"

    BOT_COMMANDS = [
        BotCommand("start", "Start the bot"),
        BotCommand("new", "Start a new session"),
        BotCommand("stop", "Abort the current run"),
        BotCommand("model", "Show or switch the model"),
        BotCommand("queue", "Show or set the queue mode"),
    ]

    def __init__(self, config: TelegramConfig, bus: MessageBus):
        super().__init__(config, bus)
        self.config: TelegramConfig = config
        self._app: Application | None = None
        self._typing_tasks: dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        if not self.config.token:
            logger.error("Telegram bot token not configured")
            return

        self._running = True
        req = HTTPXRequest(connection_pool_size=16, pool_timeout=5.0, connect_timeout=30.0, read_timeout=30.0)
        builder = Application.builder().token(self.config.token).request(req).get_updates_request(req)
        if self.config.proxy:
            builder = builder.proxy(self.config.proxy).get_updates_proxy(self.config.proxy)
        self._app = builder.build()
        self._app.add_error_handler(self._on_error)

        self._app.add_handler(CommandHandler("start", self._on_start))
        self._app.add_handler(MessageHandler(
            filters.TEXT | filters.PHOTO | filters.VOICE | filters.AUDIO | filters.Document.ALL,
            self._on_message,
        ))

        logger.info("Starting Telegram bot (polling mode)...")
        await self._app.initialize()
        await self._app.start()

        bot_info = await self._app.bot.get_me()
        logger.info(f"Telegram bot @{bot_info.username} connected")
        try:
            await self._app.bot.set_my_commands(self.BOT_COMMANDS)
        except Exception as e:
            logger.warning(f"Failed to register bot commands: {e}")

        await self._app.updater.start_polling(allowed_updates=["message"], drop_pending_updates=True)
        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        self._running = False
        for key in list(self._typing_tasks):
            self._stop_typing(key)
        if self._app:
            logger.info("Stopping Telegram bot...")
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            self._app = None

    async def send(self, msg: OutboundMessage) -> None:
        """发送 HTML 格式回复，解析失败时退回纯文本；话题消息回到原话题。"""
        if not self._app:
            logger.warning("Telegram bot not running")
            return

        tg_meta = msg.metadata.get("telegram", {}) if msg.metadata else {}
        thread_id = tg_meta.get("message_thread_id")
        self._stop_typing(_typing_key(msg.chat_id, thread_id))

        try:
            chat_id = int(msg.chat_id)
        except ValueError:
            logger.error(f"Invalid chat_id: {msg.chat_id}")
            return

        text = msg.content or ""
        if msg.media:
            text = "\n".join([text, *msg.media]).strip()
        if not text:
            return
        try:
            await self._app.bot.send_message(
                chat_id=chat_id,
                text=_markdown_to_telegram_html(text),
                parse_mode="HTML",
                message_thread_id=thread_id,
            )
        except Exception as e:
            logger.warning(f"HTML parse failed, falling back to plain text: {e}")
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=text, message_thread_id=thread_id)
            except Exception as e2:
                logger.error(f"Error sending Telegram message: {e2}")

    async def _on_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message or not update.effective_user:
            return
        await update.message.reply_text(
            f"👋 Hi {update.effective_user.first_name}! I'm lanebot.\n\n"
            "Send me a message and I'll respond!\n"
            "Use /new to start over and /stop to abort a running reply."
        )

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message or not update.effective_user:
            return

        message = update.message
        user = update.effective_user
        sender_id = str(user.id)
        if user.username:
            sender_id = f"{sender_id}|{user.username}"
        chat_id = str(message.chat_id)

        parts: list[str] = []
        if message.text:
            parts.append(message.text)
        if message.caption:
            parts.append(message.caption)
        media_paths = await self._download_media(message, parts)
        content = "\n".join(parts)

        is_private = message.chat.type == "private"
        topic_id = message.message_thread_id if message.is_topic_message else None
        logger.debug(f"Telegram message from {sender_id} in {chat_id}: {content[:50]}...")

        self._start_typing(chat_id, topic_id)
        await self._handle_message(
            sender_id=sender_id,
            chat_id=chat_id,
            content=content,
            chat_type="direct" if is_private else "group",
            thread_id=str(topic_id) if topic_id else None,
            thread_kind="topic",
            subject=None if is_private else message.chat.title,
            media=media_paths,
            metadata={
                "message_id": message.message_id,
                "user_id": user.id,
                "username": user.username,
                "telegram": {"message_thread_id": topic_id},
            },
        )

    async def _download_media(self, message: Message, parts: list[str]) -> list[str]:
        """下载图片 / 语音 / 音频 / 文档到 ~/.lanebot/media，并在正文中留下占位。"""
        if message.photo:
            media_file, media_type = message.photo[-1], "image"
        elif message.voice:
            media_file, media_type = message.voice, "voice"
        elif message.audio:
            media_file, media_type = message.audio, "audio"
        elif message.document:
            media_file, media_type = message.document, "file"
        else:
            return []
        if not self._app:
            return []

        try:
            file = await self._app.bot.get_file(media_file.file_id)
            mime = getattr(media_file, "mime_type", None)
            ext = _EXTENSIONS.get(mime or "", _DEFAULT_EXTENSIONS.get(media_type, ""))
            path = ensure_dir(get_data_path() / "media") / f"{media_file.file_id[:16]}{ext}"
            await file.download_to_drive(str(path))
            parts.append(f"[{media_type}: {path}]")
            logger.debug(f"Downloaded {media_type} to {path}")
            return [str(path)]
        except Exception as e:
            logger.error(f"Failed to download media: {e}")
            parts.append(f"[{media_type}: download failed]")
            return []

    def _start_typing(self, chat_id: str, thread_id: int | None = None) -> None:
        key = _typing_key(chat_id, thread_id)
        self._stop_typing(key)
        self._typing_tasks[key] = asyncio.create_task(self._typing_loop(chat_id, thread_id))

    def _stop_typing(self, key: str) -> None:
        task = self._typing_tasks.pop(key, None)
        if task and not task.done():
            task.cancel()

    async def _typing_loop(self, chat_id: str, thread_id: int | None) -> None:
        # typing 状态 5 秒后消失，每 4 秒续一次
        try:
            while self._app:
                await self._app.bot.send_chat_action(
                    chat_id=int(chat_id), action="typing", message_thread_id=thread_id,
                )
                await asyncio.sleep(4)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Typing indicator stopped for {chat_id}: {e}")

    async def _on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error(f"Telegram error: {context.error}")


def _typing_key(chat_id: str, thread_id: int | None) -> str:
    return f"{chat_id}:{thread_id}" if thread_id else str(chat_id)
