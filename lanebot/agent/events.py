"""
运行事件总线 (agent/events.py)

模块职责：
    每次 Agent 运行都有独立的 run_id（同一会话会有先后多次运行）。
    运行过程中的事件按 (run_id, stream, data) 发出，外部的投递/界面代码订阅消费：
        stream="lifecycle"  data={"phase": "start" | "end" | "error", "startedAt", "endedAt", "aborted"}
        stream="assistant"  data={"text": ...}        流式输出
        stream="tool"       data={"name", "phase"}    工具调用

    run_id → 会话键的映射通过 register_run_context 登记，事件里自动带上 session_key。

【Java 开发者类比】
    相当于 Spring 的 ApplicationEventPublisher + @EventListener，
    只是监听器在这里用 subscribe() 动态注册，返回的函数用于注销。
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger

from lanebot.utils.helpers import now_ms


@dataclass(frozen=True)
class AgentEvent:
    """
    一条运行事件。

    属性:
        run_id: 运行 ID
        seq: 该运行内的递增序号（从 1 开始）
        stream: 事件流名称
        ts: 发出时间（毫秒）
        data: 事件数据
        session_key: 所属会话键（未登记时为 None）
    """
    run_id: str
    seq: int
    stream: str
    ts: int
    data: dict[str, Any]
    session_key: str | None = None


@dataclass
class RunContext:
    session_key: str
    extra: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[AgentEvent], Any]


class RunEventBus:
    """运行事件的发布/订阅中心，由网关创建并注入。"""

    def __init__(self):
        self._listeners: list[Listener] = []
        self._seq: dict[str, int] = {}
        self._contexts: dict[str, RunContext] = {}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        注册监听器（同步或异步函数均可）。

        返回:
            注销函数，重复调用无副作用
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def register_run_context(self, run_id: str, session_key: str, **extra: Any) -> None:
        self._contexts[run_id] = RunContext(session_key=session_key, extra=dict(extra))

    def get_run_context(self, run_id: str) -> RunContext | None:
        return self._contexts.get(run_id)

    def clear_run_context(self, run_id: str) -> None:
        self._contexts.pop(run_id, None)
        self._seq.pop(run_id, None)

    def emit(self, run_id: str, stream: str, data: dict[str, Any]) -> AgentEvent:
        """发出事件；监听器抛出的异常只记日志。"""
        seq = self._seq.get(run_id, 0) + 1
        self._seq[run_id] = seq
        context = self._contexts.get(run_id)
        event = AgentEvent(
            run_id=run_id,
            seq=seq,
            stream=stream,
            ts=now_ms(),
            data=dict(data),
            session_key=context.session_key if context else None,
        )
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.warning(f"Run event listener failed for {run_id}/{stream}: {e}")
        return event
