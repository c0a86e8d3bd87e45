"""
Agent 运行时 (agent/runtime.py)

一次运行 = 一个带工具的 LLM 循环（ReAct）：
    1. 读取会话记录（transcript）作为历史，追加本轮 user 消息
    2. 调用 LLM；有工具调用就执行并把结果回填，继续下一次迭代
    3. 没有工具调用时得到最终回复，结束
    每条消息都即时追加到 transcript。

协作式中止：
    - 每次迭代、每个工具调用前检查 abort_event
    - 进行中的 LLM 调用和工具调用与 abort_event 竞速，中止时取消该调用
    - 超过 timeout_ms 同样视为中止（meta.abortReason="timeout"）

转向（steer）：
    协调器把运行中收到的新消息放进 RunHandle.steer_queue，
    运行时在两次迭代之间取出，作为 user 消息追加后继续。

模型回退：
    主模型调用失败（finish_reason="error"）时依次尝试 agents.defaults.model_fallbacks，
    成功的模型在本次运行的剩余迭代中继续使用。

【Java 开发者类比】
    AgentRuntime 相当于一个无状态 Service，run() 的参数就是全部上下文；
    abort_event 类似 Thread.interrupt() 的协作式标志。
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Protocol, TypeVar

from loguru import logger

from lanebot.agent.context import (
    ContextBuilder,
    assistant_message,
    tool_result_message,
    user_message,
)
from lanebot.agent.coordinator import RunCoordinator, RunHandle
from lanebot.agent.events import RunEventBus
from lanebot.agent.tools.registry import build_tool_registry
from lanebot.config.schema import Config
from lanebot.directives.apply import SessionLevels
from lanebot.providers.base import LLMProvider, LLMResponse
from lanebot.session.transcript import open_or_create

T = TypeVar("T")


class ProviderSource(Protocol):
    def get(self, model_ref: str) -> LLMProvider: ...


@dataclass
class RunResult:
    """
    一次运行的结果。

    属性:
        payloads: 待发送的回复 [{"text", "media"?, "isError"?}]
        usage: {"input", "output", "total"} token 用量（多次 LLM 调用累加）
        meta: aborted / abortReason / provider / model / duration_ms / error / iterations
    """
    payloads: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def aborted(self) -> bool:
        return bool(self.meta.get("aborted"))


class _Aborted(Exception):
    """运行被中止（用户、打断或超时）。"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class AgentRuntime:
    """
    带工具的 LLM 循环。

    参数:
        providers: 按模型引用取 LLMProvider 的对象（ProviderPool）
        config: 根配置（迭代上限、max_tokens、temperature、回退模型、工具配置）
        workspace: 工作区目录
        coordinator: 运行协调器（用于 mark_streaming）
        events: 运行事件总线（assistant / tool 事件）
    """

    def __init__(
        self,
        providers: ProviderSource,
        config: Config,
        workspace: Path | None = None,
        coordinator: RunCoordinator | None = None,
        events: RunEventBus | None = None,
    ):
        self.providers = providers
        self.config = config
        self.workspace = workspace or config.workspace_path
        self.coordinator = coordinator
        self.events = events or (coordinator.events if coordinator else None)
        self.context = ContextBuilder(self.workspace)

    async def run(
        self,
        session_file: Path,
        prompt: str,
        model_ref: str,
        levels: SessionLevels,
        timeout_ms: int | None = None,
        abort_event: asyncio.Event | None = None,
        *,
        handle: RunHandle | None = None,
        session_id: str | None = None,
        system_prompt: str | None = None,
    ) -> RunResult:
        """
        执行一次运行。

        参数:
            session_file: transcript 路径
            prompt: 本轮提示词（已包含系统事件、中止提示等前缀）
            model_ref: "provider/model"
            levels: 本轮生效等级（thinking 传给 LLM，elevated 决定工具限制）
            timeout_ms: 运行超时（毫秒）
            abort_event: 中止信号；传了 handle 时默认取 handle.abort_event
            handle: 协调器的运行句柄（转向消息与 STREAMING 标记）
            session_id: transcript 不存在时写入头部的会话 ID
            system_prompt: 系统提示词，None 时使用默认身份

        返回:
            RunResult；LLM 全部失败时 payloads 为空、meta.error 有值
        """
        started = time.monotonic()
        abort_event = abort_event or (handle.abort_event if handle else asyncio.Event())
        deadline = started + timeout_ms / 1000 if timeout_ms else None
        defaults = self.config.agents.defaults

        transcript = open_or_create(session_file, session_id or session_file.stem, cwd=str(self.workspace))
        history = transcript.messages
        transcript.append_message(user_message(prompt))
        messages = self.context.build_messages(
            history, prompt, system_prompt or self.context.build_system_prompt()
        )
        tools = build_tool_registry(
            self.workspace,
            exec_timeout=self.config.tools.exec.timeout,
            restrict_to_workspace=self.config.tools.restrict_to_workspace,
            elevated=levels.elevated == "on",
        )

        candidates = [model_ref] + [m for m in defaults.model_fallbacks if m != model_ref]
        active = 0
        usage = {"input": 0, "output": 0, "total": 0}
        payloads: list[dict[str, Any]] = []
        meta: dict[str, Any] = {"aborted": False, "error": None}
        final_text: str | None = None
        iteration = 0

        try:
            while iteration < defaults.max_tool_iterations:
                iteration += 1
                self._check_abort(abort_event, deadline)

                if handle is not None:
                    for text in handle.drain_steered():
                        messages.append({"role": "user", "content": text})
                        transcript.append_message(user_message(text))
                        logger.debug(f"Run {handle.run_id} picked up a steered message")

                response, active = await self._call_llm(
                    candidates, active, messages, tools.get_definitions(), levels, abort_event, deadline,
                )
                if response.is_error:
                    meta["error"] = response.content or "LLM call failed"
                    break

                for key, source in (("input", "prompt_tokens"), ("output", "completion_tokens"), ("total", "total_tokens")):
                    usage[key] += int(response.usage.get(source) or 0)

                if handle is not None and self.coordinator is not None:
                    self.coordinator.mark_streaming(handle)
                transcript.append_message(assistant_message(response))
                self._emit(handle, "assistant", {"text": response.content or ""})
                if response.reasoning_content:
                    self._emit_reasoning(handle, levels, response, payloads)

                messages.append(_assistant_wire_message(response))

                if response.has_tool_calls:
                    for call in response.tool_calls:
                        self._check_abort(abort_event, deadline)
                        args = json.dumps(call.arguments, ensure_ascii=False)
                        logger.info(f"Tool call: {call.name}({args[:200]})")
                        self._emit(handle, "tool", {"name": call.name, "phase": "start"})
                        if levels.verbose == "on":
                            payloads.append({"text": f"🛠️ {call.name}: {args[:200]}", "kind": "tool"})
                        result = await self._race(tools.execute(call.name, call.arguments), abort_event, deadline)
                        self._emit(handle, "tool", {"name": call.name, "phase": "end"})
                        transcript.append_message(tool_result_message(call, result))
                        messages.append({
                            "role": "tool",
                            "tool_call_id": call.id,
                            "name": call.name,
                            "content": result,
                        })
                    continue

                final_text = response.content
                if handle is not None and handle.steer_queue:
                    # 最终回复之后又有转向消息，继续一轮
                    continue
                break
            else:
                final_text = f"Reached {defaults.max_tool_iterations} iterations without completion."
        except _Aborted as e:
            meta["aborted"] = True
            meta["abortReason"] = e.reason
            logger.info(f"Run aborted ({e.reason}) for {session_file.name}")

        if final_text and not meta["aborted"]:
            payloads.append({"text": final_text})

        provider, _, model = candidates[active].partition("/")
        meta.update(
            provider=provider,
            model=model or candidates[active],
            duration_ms=int((time.monotonic() - started) * 1000),
            iterations=iteration,
        )
        return RunResult(payloads=payloads, usage=usage, meta=meta)

    async def _call_llm(
        self,
        candidates: list[str],
        start: int,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        levels: SessionLevels,
        abort_event: asyncio.Event,
        deadline: float | None,
    ) -> tuple[LLMResponse, int]:
        """依次尝试候选模型，返回 (响应, 实际使用的候选下标)。"""
        defaults = self.config.agents.defaults
        response: LLMResponse | None = None
        for index in range(start, len(candidates)):
            ref = candidates[index]
            provider = self.providers.get(ref)
            response = await self._race(
                provider.chat(
                    messages=messages,
                    tools=tools,
                    model=ref,
                    max_tokens=defaults.max_tokens,
                    temperature=defaults.temperature,
                    thinking=levels.thinking if levels.thinking != "off" else None,
                ),
                abort_event,
                deadline,
            )
            if not response.is_error:
                if index != start:
                    logger.warning(f"Fell back to {ref} after {candidates[start]} failed")
                return response, index
            logger.warning(f"Model {ref} failed: {response.content}")
        return response, start

    async def _race(self, coro: Awaitable[T], abort_event: asyncio.Event, deadline: float | None) -> T:
        """让 coro 与中止信号、截止时间竞速；中止或超时时取消 coro 并抛出 _Aborted。"""
        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(abort_event.wait())
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise _Aborted("aborted" if abort_event.is_set() else "timeout")

    @staticmethod
    def _check_abort(abort_event: asyncio.Event, deadline: float | None) -> None:
        if abort_event.is_set():
            raise _Aborted("aborted")
        if deadline is not None and time.monotonic() >= deadline:
            raise _Aborted("timeout")

    def _emit(self, handle: RunHandle | None, stream: str, data: dict[str, Any]) -> None:
        if handle is not None and self.events is not None:
            self.events.emit(handle.run_id, stream, data)

    def _emit_reasoning(
        self,
        handle: RunHandle | None,
        levels: SessionLevels,
        response: LLMResponse,
        payloads: list[dict[str, Any]],
    ) -> None:
        if levels.reasoning == "stream":
            self._emit(handle, "reasoning", {"text": response.reasoning_content})
        elif levels.reasoning == "on":
            payloads.append({"text": f"Reasoning:\n{response.reasoning_content}", "kind": "reasoning"})


def _assistant_wire_message(response: LLMResponse) -> dict[str, Any]:
    msg: dict[str, Any] = {"role": "assistant", "content": response.content or ""}
    if response.tool_calls:
        msg["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
            }
            for call in response.tool_calls
        ]
    if response.reasoning_content:
        msg["reasoning_content"] = response.reasoning_content
    return msg
