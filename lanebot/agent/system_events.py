"""
系统事件队列 (agent/system_events.py)

模块职责：
    记录会话里"用户可见的模式变化"（切换模型、开关 elevated、开关推理可见性等），
    在该会话下一次提交给 LLM 的提示词前面以 "System: ..." 行的形式注入，
    让对话记录反映这些变化。

    - 每个会话最多保留 20 条，超出丢最旧的
    - 与上一条文本相同的事件直接跳过
    - 只在内存中，重启即清空

【Java 开发者类比】
    相当于一个按 sessionKey 分桶的 BlockingQueue，由网关持有单例注入到各处，
    而不是静态全局变量。
"""

from collections import deque
from dataclasses import dataclass

from lanebot.utils.helpers import now_ms

MAX_EVENTS_PER_SESSION = 20


@dataclass(frozen=True)
class SystemEvent:
    text: str
    ts: int
    context_key: str | None = None


class SystemEventQueue:
    """按会话键分桶的系统事件队列。"""

    def __init__(self, max_events: int = MAX_EVENTS_PER_SESSION):
        self.max_events = max_events
        self._queues: dict[str, deque[SystemEvent]] = {}
        self._last_context: dict[str, str] = {}

    def enqueue(self, session_key: str, text: str, context_key: str | None = None) -> bool:
        """
        追加一条事件。

        返回:
            bool: 是否真正入队（空文本或与上一条相同时返回 False）
        """
        cleaned = (text or "").strip()
        if not cleaned:
            return False
        queue = self._queues.setdefault(session_key, deque(maxlen=self.max_events))
        if queue and queue[-1].text == cleaned:
            return False
        queue.append(SystemEvent(text=cleaned, ts=now_ms(), context_key=context_key))
        if context_key:
            self._last_context[session_key] = context_key
        return True

    def peek(self, session_key: str) -> list[str]:
        return [e.text for e in self._queues.get(session_key, ())]

    def has_events(self, session_key: str) -> bool:
        return bool(self._queues.get(session_key))

    def last_context_key(self, session_key: str) -> str | None:
        return self._last_context.get(session_key)

    def drain(self, session_key: str) -> list[str]:
        """取出并清空某会话的全部事件。"""
        queue = self._queues.pop(session_key, None)
        return [e.text for e in queue] if queue else []

    def clear(self, session_key: str | None = None) -> None:
        if session_key is None:
            self._queues.clear()
            self._last_context.clear()
            return
        self._queues.pop(session_key, None)
        self._last_context.pop(session_key, None)


def prepend_system_events(prompt: str, events: list[str]) -> str:
    """把事件以 "System: ..." 行拼在提示词前面。"""
    if not events:
        return prompt
    lines = [f"System: {text}" for text in events]
    return "\n".join(lines) + ("\n\n" + prompt if prompt else "")


def format_model_switch_event(label: str, alias: str | None = None) -> str:
    return f"Model switched to {alias} ({label})." if alias else f"Model switched to {label}."


def format_elevated_event(level: str) -> str:
    if level == "on":
        return "Elevated mode enabled: exec may run outside the workspace."
    return "Elevated mode disabled: exec is restricted to the workspace."


def format_reasoning_event(level: str) -> str:
    if level == "stream":
        return "Reasoning stream enabled."
    if level == "on":
        return "Reasoning visibility enabled."
    return "Reasoning visibility disabled."
