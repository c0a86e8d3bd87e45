"""
回复分发 (agent/dispatcher.py)

运行结束后的收尾：
    1. 整理 payload：去首尾空白，抽出 "MEDIA:" 行作为附件，丢弃空回复和静默标记 NO_REPLY
    2. 持久化用量：inputTokens / outputTokens / totalTokens / modelProvider / model / contextTokens，
       compactionCount 累加；失败只记日志
    3. 投递：
       - 会话 sendPolicy=deny 时不投递
       - 运行已被中止（用户中止、打断、超时）时丢弃 payload
       - 运行时异常或 LLM 全部失败时回复统一的失败提示

【Java 开发者类比】
    类似消息发送前的 Filter 链 + 审计落库的 AOP 切面。
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from lanebot.agent.runtime import RunResult
from lanebot.bus.events import OutboundMessage
from lanebot.bus.queue import MessageBus
from lanebot.session.store import update_session_entry
from lanebot.utils.helpers import now_ms

SILENT_REPLY_TOKEN = "NO_REPLY"
FAILURE_NOTICE = "⚠️ Agent failed before reply. Please try again."
MEDIA_PREFIX = "MEDIA:"


@dataclass
class ReplyTarget:
    """
    回复投递目标。

    属性:
        channel: 渠道
        chat_id: 聊天 ID
        metadata: 渠道附加数据（Slack thread_ts、Telegram message_thread_id 等）
        reply_to: 引用的原消息 ID
    """
    channel: str
    chat_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    reply_to: str | None = None


def normalize_payload(payload: dict[str, Any]) -> dict[str, Any] | None:
    """
    整理单条 payload。

    返回:
        {"text", "media"}；空回复或 NO_REPLY 返回 None
    """
    media = list(payload.get("media") or [])
    lines = []
    for line in (payload.get("text") or "").splitlines():
        stripped = line.strip()
        if stripped.startswith(MEDIA_PREFIX):
            url = stripped[len(MEDIA_PREFIX):].strip()
            if url:
                media.append(url)
            continue
        lines.append(line)
    text = "\n".join(lines).strip()
    if text == SILENT_REPLY_TOKEN:
        text = ""
    if not text and not media:
        return None
    return {"text": text, "media": media}


def normalize_payloads(payloads: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [p for p in (normalize_payload(payload) for payload in payloads) if p is not None]


async def persist_usage(
    store_path: Path,
    session_key: str,
    result: RunResult,
    context_tokens: int | None = None,
) -> None:
    """把本次运行的用量与模型写回会话记录；失败只记日志。"""
    usage = result.usage or {}
    input_tokens = int(usage.get("input") or 0)
    output_tokens = int(usage.get("output") or 0)
    has_usage = input_tokens > 0 or output_tokens > 0
    if not has_usage and not result.meta.get("model") and not context_tokens:
        return

    def update(entry: dict[str, Any]) -> dict[str, Any]:
        patch: dict[str, Any] = {
            "modelProvider": result.meta.get("provider") or entry.get("modelProvider"),
            "model": result.meta.get("model") or entry.get("model"),
            "contextTokens": context_tokens or entry.get("contextTokens"),
            "updatedAt": now_ms(),
        }
        if has_usage:
            patch["inputTokens"] = input_tokens
            patch["outputTokens"] = output_tokens
            patch["totalTokens"] = int(usage.get("total") or 0) or input_tokens + output_tokens
        compactions = int(result.meta.get("compactionCount") or 0)
        if compactions > 0:
            patch["compactionCount"] = int(entry.get("compactionCount") or 0) + compactions
        return patch

    try:
        await update_session_entry(store_path, session_key, update)
    except Exception as e:
        logger.warning(f"Failed to persist usage for {session_key}: {e}")


class ReplyDispatcher:
    """
    运行结果 → 出站消息。

    参数:
        bus: 消息总线；为 None 时只返回消息不发布（CLI 直连模式）
    """

    def __init__(self, bus: MessageBus | None = None):
        self.bus = bus

    async def dispatch(
        self,
        result: RunResult | None,
        *,
        target: ReplyTarget,
        session_key: str,
        store_path: Path,
        entry: dict[str, Any] | None = None,
        context_tokens: int | None = None,
        aborted: bool = False,
        error: BaseException | None = None,
        publish: bool = True,
    ) -> list[OutboundMessage]:
        """
        处理一次运行的结果。

        参数:
            result: 运行结果；运行时抛异常时为 None
            target: 投递目标
            session_key / store_path: 用量写回的位置
            entry: 当前会话记录（读取 sendPolicy）
            context_tokens: 本轮上下文上限
            aborted: 协调器侧的中止标志（运行结束后才被中止的情况）
            error: 运行时抛出的异常
            publish: 是否发布到消息总线

        返回:
            实际投递（或待投递）的出站消息列表
        """
        if result is not None:
            await persist_usage(store_path, session_key, result, context_tokens)

        if (entry or {}).get("sendPolicy") == "deny":
            logger.debug(f"Send policy deny, suppressing reply for {session_key}")
            return []

        if aborted or (result is not None and result.aborted):
            logger.debug(f"Dropping payloads from aborted run on {session_key}")
            return []

        if error is not None or result is None or (result.meta.get("error") and not result.payloads):
            reason = error or (result.meta.get("error") if result else None)
            logger.error(f"Agent run failed for {session_key}: {reason}")
            payloads = [{"text": FAILURE_NOTICE, "media": []}]
        else:
            payloads = normalize_payloads(result.payloads)

        messages = [
            OutboundMessage(
                channel=target.channel,
                chat_id=target.chat_id,
                content=payload["text"],
                reply_to=target.reply_to,
                media=payload["media"],
                metadata=dict(target.metadata),
            )
            for payload in payloads
        ]
        if publish and self.bus is not None:
            for message in messages:
                await self.bus.publish_outbound(message)
        return messages
