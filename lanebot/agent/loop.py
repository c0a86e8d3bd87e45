"""
Agent 主循环 (agent/loop.py)

每条入站消息依次经过：
    1. 会话生命周期    init_session_state：解析会话键、判断新鲜度/重置、落盘元数据、线程分叉
    2. 中止检查        stop / /stop 等 → 中止运行，回复 "⚙️ Agent was aborted."
    3. 发送策略        /send on|off|inherit
    4. 指令            纯指令消息直接回复确认；夹在正文里的指令静默生效
    5. 会话提示        上一轮被中止时加一行说明
    6. 系统事件        排队的 "System: ..." 行加在提示词前
    7. 空正文保护      没有正文也没有附件时提示重发
    8. 重置问候        只发了 /new、/reset 时换成问候提示词
    9. 运行协调        按队列模式提交给 RunCoordinator
    10. 运行时         AgentRuntime 执行带工具的 LLM 循环
    11. 回复分发       ReplyDispatcher 整理回复、写回用量、投递

只有授权发送者（InboundMessage.command_authorized）的重置、中止和指令会生效，
其他发送者的这些文本按普通正文处理。

【Java 开发者类比】
    - run() 类似 @KafkaListener 持续消费入站队列
    - _process_message() 是一个 Controller 方法，步骤 9 之后的部分交给协调器异步执行，
      结果通过消息总线回到渠道（类似 DeferredResult）

【二开提示】
    要新增自定义斜杠命令，在 _handle_commands() 里按 /send 的方式加一个分支即可。
"""

import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from lanebot.agent.abort import ABORT_REPLY, ABORTED_NOTE, consume_aborted_flag, handle_abort, is_abort_request, mark_aborted
from lanebot.agent.coordinator import QueueSettings, RunCoordinator, RunHandle, SubmitOutcome, SubmitResult, Turn
from lanebot.agent.dispatcher import FAILURE_NOTICE, ReplyDispatcher, ReplyTarget
from lanebot.agent.events import RunEventBus
from lanebot.agent.runtime import AgentRuntime, ProviderSource
from lanebot.agent.system_events import SystemEventQueue, prepend_system_events
from lanebot.bus.events import InboundMessage, OutboundMessage
from lanebot.bus.queue import MessageBus
from lanebot.config.schema import Config
from lanebot.directives.apply import (
    enforce_thinking_support,
    handle_directives,
    persist_inline_directives,
    resolve_context_tokens,
    resolve_current_model,
    resolve_levels,
)
from lanebot.directives.model_selection import ModelSelectionState, build_model_selection
from lanebot.directives.parse import ParsedDirectives, QueueSet, parse_directives
from lanebot.errors import DirectiveError, StoreLockTimeout
from lanebot.session.lifecycle import SessionState, init_session_state
from lanebot.session.store import load_session_store, update_session_entry, update_session_store
from lanebot.utils.helpers import now_ms

BARE_RESET_PROMPT = (
    "A new session was started via /new or /reset. Say hi briefly (1-2 sentences) and ask what "
    "the user wants to do next. Do not mention internal steps, files, tools, or reasoning."
)
EMPTY_BODY_REPLY = "I didn't receive any text in your message. Please resend or add a caption."
STORE_BUSY_REPLY = "⚠️ Session store is busy. Please try again in a moment."

_SEND_RE = re.compile(r"^/send(?:\s+|:)(\S+)\s*$", re.IGNORECASE)
_SEND_POLICIES = {"on": "allow", "allow": "allow", "off": "deny", "deny": "deny", "inherit": None}


@dataclass
class ProcessResult:
    """
    单条消息的处理结果。

    属性:
        replies: 立即回复（指令确认、中止确认、错误提示等）
        submitted: 提交给协调器的结果（没有进入运行时为 None）
        sink: 运行结束后分发出的消息（CLI 直连模式读取）
    """
    replies: list[OutboundMessage] = field(default_factory=list)
    submitted: SubmitResult | None = None
    sink: list[OutboundMessage] = field(default_factory=list)


class AgentLoop:
    """
    入站消息处理流水线。

    参数:
        bus: 消息总线
        providers: 按模型引用取 LLMProvider（ProviderPool）
        config: 根配置
        coordinator: 运行协调器；为 None 时自行创建
        system_events: 系统事件队列；为 None 时自行创建
    """

    def __init__(
        self,
        bus: MessageBus,
        providers: ProviderSource,
        config: Config,
        coordinator: RunCoordinator | None = None,
        system_events: SystemEventQueue | None = None,
    ):
        self.bus = bus
        self.config = config
        self.workspace = config.workspace_path
        self.store_path = config.store_path()
        self.coordinator = coordinator or RunCoordinator(
            events=RunEventBus(),
            default_timeout_s=config.agents.defaults.timeout_seconds,
        )
        if self.coordinator.on_timeout is None:
            self.coordinator.on_timeout = self._persist_abort
        if self.coordinator.on_abort is None:
            self.coordinator.on_abort = self._persist_abort
        self.system_events = system_events or SystemEventQueue()
        self.runtime = AgentRuntime(providers, config, self.workspace, coordinator=self.coordinator)
        self.dispatcher = ReplyDispatcher(bus)
        self.model_state: ModelSelectionState = build_model_selection(config)
        self._running = False

    async def run(self) -> None:
        """持续消费入站消息，直到 stop()。"""
        self._running = True
        logger.info("Agent loop started")
        while self._running:
            try:
                msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            try:
                result = await self._process_message(msg)
                for reply in result.replies:
                    await self.bus.publish_outbound(reply)
            except Exception as e:
                logger.error(f"Error processing message from {msg.channel}:{msg.sender_id}: {e}")
                await self.bus.publish_outbound(OutboundMessage(
                    channel=msg.channel,
                    chat_id=msg.chat_id,
                    content=FAILURE_NOTICE,
                    metadata=dict(msg.metadata),
                ))

    def stop(self) -> None:
        self._running = False
        logger.info("Agent loop stopping")

    async def close(self) -> None:
        """停止消费并中止所有运行。"""
        self.stop()
        await self.coordinator.close()

    async def _persist_abort(self, handle: RunHandle) -> None:
        """超时或被 interrupt 打断的运行：写 abortedLastRun，记录不存在时记到中止记忆。"""
        if not await mark_aborted(self.store_path, handle.session_key):
            self.coordinator.set_abort_memory(handle.session_key)

    def _reply(self, msg: InboundMessage, text: str) -> OutboundMessage:
        return OutboundMessage(
            channel=msg.channel,
            chat_id=msg.chat_id,
            content=text,
            metadata=dict(msg.metadata),
        )

    async def _process_message(self, msg: InboundMessage, *, publish: bool = True) -> ProcessResult:
        """
        处理一条入站消息。

        参数:
            msg: 入站消息
            publish: 运行结束后的回复是否发布到消息总线

        返回:
            ProcessResult
        """
        preview = msg.content[:80] + "..." if len(msg.content) > 80 else msg.content
        logger.debug(f"Processing message from {msg.channel}:{msg.sender_id}: {preview}")
        authorized = msg.command_authorized

        try:
            state = await init_session_state(
                msg.to_context(),
                msg.content,
                config=self.config,
                command_authorized=authorized,
                workspace=self.workspace,
            )
        except StoreLockTimeout as e:
            logger.warning(f"Session store busy for {msg.channel}:{msg.chat_id}: {e}")
            return ProcessResult(replies=[self._reply(msg, STORE_BUSY_REPLY)])

        body = state.body_stripped if state.body_stripped is not None else msg.content

        try:
            command_reply = await self._handle_commands(state, body, authorized)
        except StoreLockTimeout as e:
            logger.warning(f"Session store busy for {state.session_key}: {e}")
            return ProcessResult(replies=[self._reply(msg, STORE_BUSY_REPLY)])
        if command_reply is not None:
            return ProcessResult(replies=[self._reply(msg, command_reply)])

        parsed = parse_directives(body) if authorized else ParsedDirectives(cleaned=body)
        entry = state.entry
        replies: list[OutboundMessage] = []
        try:
            if parsed.is_directive_only:
                ack = await handle_directives(
                    parsed,
                    entry=entry,
                    session_key=state.session_key,
                    store_path=state.store_path,
                    config=self.config,
                    model_state=self.model_state,
                    events=self.system_events,
                    channel=msg.channel,
                )
                return ProcessResult(replies=[self._reply(msg, ack)])

            if parsed.has_any:
                inline = await persist_inline_directives(
                    parsed,
                    entry=entry,
                    session_key=state.session_key,
                    store_path=state.store_path,
                    config=self.config,
                    model_state=self.model_state,
                    events=self.system_events,
                )
                entry, model, context_tokens = inline.entry, inline.model, inline.context_tokens
            else:
                model = resolve_current_model(entry, self.model_state)
                context_tokens = resolve_context_tokens(self.config, model, self.model_state)

            levels = resolve_levels(entry, self.config, parsed)
            levels, note = await enforce_thinking_support(
                levels,
                entry=entry,
                session_key=state.session_key,
                store_path=state.store_path,
                model=model,
                model_state=self.model_state,
            )
            if note:
                replies.append(self._reply(msg, note))

            aborted_last = await consume_aborted_flag(
                self.coordinator,
                entry=entry,
                session_key=state.session_key,
                store_path=state.store_path,
            )
        except DirectiveError as e:
            return ProcessResult(replies=[self._reply(msg, str(e))])
        except StoreLockTimeout as e:
            logger.warning(f"Session store busy for {state.session_key}: {e}")
            return ProcessResult(replies=[self._reply(msg, STORE_BUSY_REPLY)])

        text = parsed.cleaned.strip()
        if state.reset_triggered and not text and not msg.media:
            text = BARE_RESET_PROMPT
        if not text and not msg.media:
            logger.debug(f"Inbound body empty for {state.session_key}; skipping agent run")
            replies.append(self._reply(msg, EMPTY_BODY_REPLY))
            return ProcessResult(replies=replies)

        prompt = self._build_prompt(text, msg.media, aborted_last)
        prompt = prepend_system_events(prompt, self.system_events.drain(state.session_key))

        queue_directive = parsed.get("queue")
        settings = QueueSettings.resolve(
            self.config,
            entry,
            msg.channel,
            inline=queue_directive if isinstance(queue_directive, QueueSet) else None,
        )

        result = ProcessResult(replies=replies)
        target = ReplyTarget(channel=msg.channel, chat_id=msg.chat_id, metadata=dict(msg.metadata))
        skills_prompt = (entry.get("skillsSnapshot") or {}).get("prompt")
        system_prompt = self.runtime.context.build_system_prompt(
            skills_prompt=skills_prompt,
            channel=msg.channel,
            chat_id=msg.chat_id,
            session_key=state.session_key,
        )

        async def run_turn(handle: RunHandle, final_prompt: str) -> list[OutboundMessage]:
            error: BaseException | None = None
            run_result = None
            try:
                run_result = await self.runtime.run(
                    state.session_file,
                    final_prompt,
                    model.key,
                    levels,
                    handle=handle,
                    session_id=state.session_id,
                    system_prompt=system_prompt,
                )
            except Exception as e:
                error = e
            latest = load_session_store(state.store_path).get(state.session_key) or entry
            delivered = await self.dispatcher.dispatch(
                run_result,
                target=target,
                session_key=state.session_key,
                store_path=state.store_path,
                entry=latest,
                context_tokens=context_tokens,
                aborted=handle.aborted,
                error=error,
                publish=publish,
            )
            result.sink.extend(delivered)
            if not latest.get("systemSent"):
                await update_session_entry(state.store_path, state.session_key, lambda _e: {"systemSent": True})
            if error is not None:
                raise error
            return delivered

        turn = Turn(
            session_key=state.session_key,
            session_id=state.session_id,
            prompt=prompt,
            run=run_turn,
            timeout_s=self.config.agents.defaults.timeout_seconds,
        )
        result.submitted = await self.coordinator.submit(turn, settings)
        if result.submitted.outcome != SubmitOutcome.STARTED:
            logger.debug(f"Message for {state.session_key} {result.submitted.outcome.value} (mode={settings.mode})")
        return result

    async def _handle_commands(self, state: SessionState, body: str, authorized: bool) -> str | None:
        """中止与 /send；返回回复文本，None 表示继续处理。"""
        if not authorized:
            return None
        if is_abort_request(body):
            await handle_abort(self.coordinator, session_key=state.session_key, store_path=state.store_path)
            return ABORT_REPLY

        match = _SEND_RE.match(body.strip())
        if match:
            raw = match.group(1).lower()
            if raw not in _SEND_POLICIES:
                return f'Unrecognized send policy "{match.group(1)}". Valid policies: on, off, inherit.'
            policy = _SEND_POLICIES[raw]
            await self._set_send_policy(state, policy)
            label = {"allow": "on", "deny": "off", None: "inherit"}[policy]
            return f"⚙️ Send policy set to {label}."
        return None

    async def _set_send_policy(self, state: SessionState, policy: str | None) -> None:
        def mutate(store: dict[str, Any]) -> None:
            entry = dict(store.get(state.session_key) or state.entry)
            if policy is None:
                entry.pop("sendPolicy", None)
            else:
                entry["sendPolicy"] = policy
            entry["updatedAt"] = max(entry.get("updatedAt") or 0, now_ms())
            store[state.session_key] = entry

        await update_session_store(state.store_path, mutate)

    @staticmethod
    def _build_prompt(text: str, media: list[str], aborted_last: bool) -> str:
        parts = []
        if aborted_last:
            parts.append(ABORTED_NOTE)
        if media:
            parts.append("\n".join(f"[media attached: {url}]" for url in media))
        if text:
            parts.append(text)
        return "\n\n".join(parts)

    async def process_direct(
        self,
        content: str,
        session_key: str | None = None,
        channel: str = "cli",
        chat_id: str = "direct",
    ) -> str:
        """
        绕过消息总线直接处理一条消息并等待回复（CLI、心跳使用）。

        参数:
            content: 消息内容
            session_key: 显式会话键；None 时按私聊解析（dm_scope=main 时即主会话）
            channel / chat_id: 来源渠道与聊天

        返回:
            回复文本（多条用空行连接；消息被排队合并或转向时为空）
        """
        msg = InboundMessage(
            channel=channel,
            sender_id="user",
            chat_id=chat_id,
            content=content,
            session_key=session_key,
        )
        result = await self._process_message(msg, publish=False)
        texts = [reply.content for reply in result.replies]
        if result.submitted is not None:
            await result.submitted.future
            texts.extend(message.content for message in result.sink)
        return "\n\n".join(t for t in texts if t)
