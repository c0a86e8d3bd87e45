"""
运行协调器 (agent/coordinator.py)

模块职责：
    每个会话键对应一条 lane（车道），同一时刻最多一个运行。
    新消息到达时按队列模式决定：立即运行、排队、转向（注入到正在运行的那次）还是打断。

    lane 状态：
        IDLE       没有运行
        ACTIVE     运行中，尚未开始输出
        STREAMING  正在输出（只有这个状态下可以转向）

    队列模式：
        interrupt      清空积压，中止当前运行，当前运行结束后立即启动新消息
        steer          STREAMING 时注入当前运行；否则按 followup 排队
        steer-backlog  STREAMING 时注入；否则进入积压
        followup       进入积压，当前运行结束后逐条执行
        collect        进入积压，当前运行结束后合并成一条执行

    积压超过 cap 时按 drop 策略处理：old 丢最旧；new 拒绝新消息；
    summarize 丢最旧但在下一次执行时附上被丢消息的摘要。
    积压在运行结束后等待 debounce_ms 再排空。

    每个 run_id 恰好发出一次终态 lifecycle 事件（end 或 error），
    异常、中止、超时都不会让 lane 停在 ACTIVE。

【Java 开发者类比】
    - RunCoordinator 相当于一个按 key 分片的单线程 Executor（类似 Kafka 分区内有序消费）
    - RunHandle.abort_event 相当于 Future.cancel(true) 的协作式版本：运行方自己检查标志退出
    - 由网关创建、关闭时 close()，不是静态单例

【二开提示】
    超时、interrupt 与显式中止走同一条路径（RunHandle.abort）；需要在超时或被打断时持久化标志，
    传入 on_timeout / on_abort 回调即可。
    运行结束时还没被取走的转向消息按 followup 放回积压，不会丢失。
"""

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from lanebot.agent.events import RunEventBus
from lanebot.config.schema import Config
from lanebot.directives.parse import QueueSet
from lanebot.utils.helpers import now_ms, truncate_string


class LaneState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    STREAMING = "streaming"


class SubmitOutcome(str, Enum):
    STARTED = "started"
    STEERED = "steered"
    QUEUED = "queued"
    DROPPED = "dropped"


@dataclass(frozen=True)
class QueueSettings:
    """
    一条消息生效的队列策略。

    属性:
        mode: 队列模式
        debounce_ms: 积压排空前的等待
        cap: 积压上限
        drop: 超限丢弃策略
    """
    mode: str = "collect"
    debounce_ms: int = 1000
    cap: int = 20
    drop: str = "summarize"

    @classmethod
    def resolve(
        cls,
        config: Config,
        entry: dict[str, Any] | None = None,
        channel: str | None = None,
        inline: QueueSet | None = None,
    ) -> "QueueSettings":
        """
        优先级：本条消息的 /queue > 会话记录 > 渠道默认 > session.queue 默认。
        """
        queue_cfg = config.session.queue
        entry = entry or {}
        mode = (
            (inline.mode if inline else None)
            or entry.get("queueMode")
            or queue_cfg.by_channel.get(channel or "")
            or queue_cfg.mode
        )
        debounce = inline.debounce_ms if inline and inline.debounce_ms is not None else entry.get("queueDebounceMs")
        cap = inline.cap if inline and inline.cap is not None else entry.get("queueCap")
        drop = (inline.drop if inline else None) or entry.get("queueDrop")
        return cls(
            mode=mode,
            debounce_ms=queue_cfg.debounce_ms if debounce is None else int(debounce),
            cap=queue_cfg.cap if cap is None else max(1, int(cap)),
            drop=drop or queue_cfg.drop,
        )


RunFn = Callable[["RunHandle", str], Awaitable[Any]]


@dataclass
class Turn:
    """
    一次待执行的运行请求。

    属性:
        session_key: 会话键（lane 的键）
        session_id: 会话 ID
        prompt: 提交给运行时的正文
        run: 执行函数，接收 (RunHandle, 最终提示词)，负责运行与回复分发
        timeout_s: 超时秒数，None 使用协调器默认值
    """
    session_key: str
    session_id: str
    prompt: str
    run: RunFn
    timeout_s: float | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class RunHandle:
    """
    正在进行的一次运行。

    属性:
        run_id: 运行 ID
        session_id / session_key: 所属会话
        abort_event: 中止信号，运行时在检查点观察它
        aborted / abort_reason: 是否已中止及原因（user / interrupt / timeout / shutdown）
        steer_queue: 转向注入的正文，运行时在两次迭代之间取出
        done: 运行结束（无论成功、失败、中止）后置位
        lifecycle_ended: 终态 lifecycle 事件是否已发出
    """
    run_id: str
    session_id: str
    session_key: str
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    aborted: bool = False
    abort_reason: str | None = None
    steer_queue: deque[str] = field(default_factory=deque)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    lifecycle_ended: bool = False
    started_at: int = field(default_factory=now_ms)
    error: BaseException | None = None

    def abort(self, reason: str = "user") -> bool:
        """发出中止信号；已中止或已结束时返回 False。"""
        if self.aborted or self.done.is_set():
            return False
        self.aborted = True
        self.abort_reason = reason
        self.abort_event.set()
        return True

    def steer(self, text: str) -> None:
        self.steer_queue.append(text)

    def drain_steered(self) -> list[str]:
        items = list(self.steer_queue)
        self.steer_queue.clear()
        return items


@dataclass
class SubmitResult:
    """
    submit() 的结果。

    属性:
        outcome: started / steered / queued / dropped
        future: 该消息最终运行的返回值（转向、丢弃、被合并的消息为 None）
        handle: 立即启动时的运行句柄
    """
    outcome: SubmitOutcome
    future: asyncio.Future
    handle: RunHandle | None = None


@dataclass
class _Pending:
    turn: Turn
    future: asyncio.Future
    immediate: bool = False


@dataclass
class _Lane:
    key: str
    state: LaneState = LaneState.IDLE
    current: RunHandle | None = None
    backlog: deque[_Pending] = field(default_factory=deque)
    dropped: list[str] = field(default_factory=list)
    settings: QueueSettings = field(default_factory=QueueSettings)
    drain_task: asyncio.Task | None = None
    steered: list[Turn] = field(default_factory=list)


def coalesce_prompts(prompts: list[str], dropped: list[str] | None = None) -> str:
    """把 collect 模式下积压的多条正文合并成一条。"""
    parts: list[str] = []
    if dropped:
        parts.append(f"[{len(dropped)} earlier queued message(s) dropped]")
        parts.extend(f"- {line}" for line in dropped)
        parts.append("")
    if len(prompts) == 1 and not dropped:
        return prompts[0]
    parts.append("[Queued messages while agent was busy]")
    for index, prompt in enumerate(prompts, start=1):
        parts.append(f"\n---\nQueued #{index}\n{prompt}")
    return "\n".join(parts)


class RunCoordinator:
    """
    按会话键协调运行的上下文对象。

    参数:
        events: 运行事件总线
        default_timeout_s: 单次运行默认超时
        on_timeout: 运行超时后的回调（例如持久化 abortedLastRun）
        on_abort: interrupt 模式打断运行后的回调，用法同 on_timeout
    """

    def __init__(
        self,
        events: RunEventBus | None = None,
        default_timeout_s: float = 600,
        on_timeout: Callable[[RunHandle], Awaitable[None]] | None = None,
        on_abort: Callable[[RunHandle], Awaitable[None]] | None = None,
    ):
        self.events = events or RunEventBus()
        self.default_timeout_s = default_timeout_s
        self.on_timeout = on_timeout
        self.on_abort = on_abort
        self._lanes: dict[str, _Lane] = {}
        self._tasks: set[asyncio.Task] = set()
        self._abort_memory: set[str] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def state(self, session_key: str) -> LaneState:
        lane = self._lanes.get(session_key)
        return lane.state if lane else LaneState.IDLE

    def is_active(self, session_key: str) -> bool:
        return self.state(session_key) != LaneState.IDLE

    def is_streaming(self, session_key: str) -> bool:
        return self.state(session_key) == LaneState.STREAMING

    def current_run(self, session_key: str) -> RunHandle | None:
        lane = self._lanes.get(session_key)
        return lane.current if lane else None

    def backlog_size(self, session_key: str) -> int:
        lane = self._lanes.get(session_key)
        return len(lane.backlog) if lane else 0

    def find_run(self, run_id: str) -> RunHandle | None:
        for lane in self._lanes.values():
            if lane.current and lane.current.run_id == run_id:
                return lane.current
        return None

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "sessionKey": lane.key,
                "state": lane.state.value,
                "runId": lane.current.run_id if lane.current else None,
                "backlog": len(lane.backlog),
            }
            for lane in self._lanes.values()
        ]

    # ------------------------------------------------------------------
    # 中止记忆（会话记录不存在时的兜底）
    # ------------------------------------------------------------------

    def set_abort_memory(self, session_key: str) -> None:
        self._abort_memory.add(session_key)

    def consume_abort_memory(self, session_key: str) -> bool:
        if session_key in self._abort_memory:
            self._abort_memory.discard(session_key)
            return True
        return False

    # ------------------------------------------------------------------
    # 提交
    # ------------------------------------------------------------------

    async def submit(self, turn: Turn, settings: QueueSettings | None = None) -> SubmitResult:
        """
        按队列策略提交一条消息。

        参数:
            turn: 运行请求
            settings: 队列策略，None 使用默认值

        返回:
            SubmitResult
        """
        if self._closed:
            raise RuntimeError("run coordinator is closed")
        settings = settings or QueueSettings()
        lane = self._lanes.setdefault(turn.session_key, _Lane(key=turn.session_key))
        lane.settings = settings
        future = asyncio.get_running_loop().create_future()

        if lane.current is None and not lane.backlog and lane.drain_task is None:
            handle = self._start(lane, turn, turn.prompt, [future])
            return SubmitResult(SubmitOutcome.STARTED, future, handle)

        mode = settings.mode
        if mode == "interrupt":
            cleared = self.clear_backlog(turn.session_key)
            self._lanes[turn.session_key] = lane
            interrupted = lane.current if lane.current is not None and lane.current.abort("interrupt") else None
            lane.backlog.appendleft(_Pending(turn, future, immediate=True))
            logger.info(f"Interrupting run on {turn.session_key} (cleared {cleared} queued)")
            if lane.current is None:
                self._schedule_drain(lane)
            if interrupted is not None and self.on_abort is not None:
                await self._run_hook(self.on_abort, interrupted)
            return SubmitResult(SubmitOutcome.STARTED, future)

        if mode in ("steer", "steer-backlog") and lane.state == LaneState.STREAMING and lane.current:
            lane.current.steer(turn.prompt)
            lane.steered.append(turn)
            logger.debug(f"Steered message into run {lane.current.run_id}")
            future.set_result(None)
            return SubmitResult(SubmitOutcome.STEERED, future, lane.current)

        if len(lane.backlog) >= settings.cap:
            if settings.drop == "new":
                logger.debug(f"Backlog full on {turn.session_key}, dropping new message")
                future.set_result(None)
                return SubmitResult(SubmitOutcome.DROPPED, future)
            oldest = lane.backlog.popleft()
            if not oldest.future.done():
                oldest.future.set_result(None)
            if settings.drop == "summarize":
                lane.dropped.append(truncate_string(oldest.turn.prompt.replace("\n", " "), 160))

        lane.backlog.append(_Pending(turn, future))
        if lane.current is None and lane.drain_task is None:
            self._schedule_drain(lane)
        return SubmitResult(SubmitOutcome.QUEUED, future)

    # ------------------------------------------------------------------
    # 运行
    # ------------------------------------------------------------------

    def _track(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _start(self, lane: _Lane, turn: Turn, prompt: str, futures: list[asyncio.Future]) -> RunHandle:
        handle = RunHandle(
            run_id=str(uuid.uuid4()),
            session_id=turn.session_id,
            session_key=turn.session_key,
        )
        lane.current = handle
        lane.state = LaneState.ACTIVE
        lane.steered.clear()
        self.events.register_run_context(handle.run_id, turn.session_key, session_id=turn.session_id)
        self.events.emit(handle.run_id, "lifecycle", {"phase": "start", "startedAt": handle.started_at})
        logger.info(f"Run {handle.run_id} started for {turn.session_key}")
        self._track(self._execute(lane, handle, turn, prompt, futures))
        return handle

    async def _execute(
        self,
        lane: _Lane,
        handle: RunHandle,
        turn: Turn,
        prompt: str,
        futures: list[asyncio.Future],
    ) -> None:
        timeout_s = turn.timeout_s if turn.timeout_s is not None else self.default_timeout_s
        timer = None
        if timeout_s and timeout_s > 0:
            timer = asyncio.get_running_loop().call_later(timeout_s, self._on_timeout, handle)

        result: Any = None
        phase = "end"
        try:
            result = await turn.run(handle, prompt)
        except asyncio.CancelledError:
            handle.abort("shutdown")
            raise
        except Exception as e:
            phase = "error"
            handle.error = e
            logger.error(f"Run {handle.run_id} failed for {turn.session_key}: {e}")
        finally:
            if timer is not None:
                timer.cancel()
            for index, future in enumerate(futures):
                if not future.done():
                    future.set_result(result if index == len(futures) - 1 else None)
            self._finish(lane, handle, phase)

    def _on_timeout(self, handle: RunHandle) -> None:
        if handle.abort("timeout"):
            logger.warning(f"Run {handle.run_id} timed out for {handle.session_key}")
            if self.on_timeout is not None:
                self._track(self._run_hook(self.on_timeout, handle))

    async def _run_hook(self, hook: Callable[[RunHandle], Awaitable[None]], handle: RunHandle) -> None:
        try:
            await hook(handle)
        except Exception as e:
            logger.warning(f"Abort hook failed for {handle.session_key} ({handle.abort_reason}): {e}")

    def _finish(self, lane: _Lane, handle: RunHandle, phase: str) -> None:
        if not handle.lifecycle_ended:
            handle.lifecycle_ended = True
            data: dict[str, Any] = {
                "phase": phase,
                "startedAt": handle.started_at,
                "endedAt": now_ms(),
                "aborted": handle.aborted,
            }
            if handle.error is not None:
                data["error"] = str(handle.error)
            self.events.emit(handle.run_id, "lifecycle", data)
            self.events.clear_run_context(handle.run_id)
        handle.done.set()
        logger.info(f"Run {handle.run_id} {phase} for {lane.key} (aborted={handle.aborted})")

        if lane.current is handle:
            self._requeue_unconsumed_steers(lane, handle)
            lane.current = None
            lane.state = LaneState.IDLE
        if lane.backlog and not self._closed:
            self._schedule_drain(lane)
        else:
            self._maybe_teardown(lane)

    def _requeue_unconsumed_steers(self, lane: _Lane, handle: RunHandle) -> None:
        """运行在最后一次取转向消息之后才收到的消息，按 followup 放回积压。"""
        leftover = handle.drain_steered()
        turns = lane.steered[len(lane.steered) - len(leftover):] if leftover else []
        lane.steered = []
        if not turns:
            return
        if handle.aborted:
            logger.debug(f"Dropping {len(turns)} steered message(s) of aborted run {handle.run_id}")
            return
        loop = asyncio.get_running_loop()
        for turn in turns:
            lane.backlog.append(_Pending(turn, loop.create_future()))
        logger.info(f"Run {handle.run_id} ended before reading {len(turns)} steered message(s), queued as followup")

    def _maybe_teardown(self, lane: _Lane) -> None:
        if lane.current is None and not lane.backlog and lane.drain_task is None:
            lane.dropped.clear()
            if self._lanes.get(lane.key) is lane:
                del self._lanes[lane.key]

    def _schedule_drain(self, lane: _Lane) -> None:
        if lane.drain_task is not None:
            return
        lane.drain_task = self._track(self._drain(lane))

    async def _drain(self, lane: _Lane) -> None:
        try:
            immediate = bool(lane.backlog and lane.backlog[0].immediate)
            if not immediate and lane.settings.debounce_ms > 0:
                await asyncio.sleep(lane.settings.debounce_ms / 1000)
        finally:
            if lane.drain_task is asyncio.current_task():
                lane.drain_task = None

        if lane.current is not None or not lane.backlog or self._closed:
            self._maybe_teardown(lane)
            return

        if lane.backlog[0].immediate or lane.settings.mode != "collect":
            pending = [lane.backlog.popleft()]
        else:
            pending = list(lane.backlog)
            lane.backlog.clear()

        dropped, lane.dropped = lane.dropped, []
        last = pending[-1].turn
        if len(pending) == 1 and not dropped:
            prompt = last.prompt
        else:
            prompt = coalesce_prompts([p.turn.prompt for p in pending], dropped)
        self._start(lane, last, prompt, [p.future for p in pending])

    def mark_streaming(self, handle: RunHandle) -> None:
        """运行开始输出时调用，之后的 steer 消息会注入到本次运行。"""
        lane = self._lanes.get(handle.session_key)
        if lane and lane.current is handle and not handle.aborted:
            lane.state = LaneState.STREAMING

    # ------------------------------------------------------------------
    # 中止与清理
    # ------------------------------------------------------------------

    def abort(self, session_key: str, reason: str = "user", *, clear_backlog: bool = True) -> bool:
        """
        中止会话当前运行（幂等）。

        返回:
            bool: 本次调用是否真正发出了中止信号
        """
        lane = self._lanes.get(session_key)
        if lane is None:
            return False
        if clear_backlog:
            self.clear_backlog(session_key)
        if lane.current is None:
            return False
        aborted = lane.current.abort(reason)
        if aborted:
            logger.info(f"Aborted run {lane.current.run_id} on {session_key} ({reason})")
        return aborted

    def abort_run(self, run_id: str, reason: str = "user") -> bool:
        """按 run_id 中止（幂等，未知 run_id 返回 False）。"""
        handle = self.find_run(run_id)
        return handle.abort(reason) if handle else False

    def clear_backlog(self, session_key: str) -> int:
        """清空积压，返回被清掉的条数。"""
        lane = self._lanes.get(session_key)
        if lane is None:
            return 0
        count = len(lane.backlog)
        while lane.backlog:
            pending = lane.backlog.popleft()
            if not pending.future.done():
                pending.future.set_result(None)
        lane.dropped.clear()
        if lane.drain_task is not None:
            lane.drain_task.cancel()
            lane.drain_task = None
        self._maybe_teardown(lane)
        return count

    async def wait_for_idle(self, session_key: str, timeout: float) -> bool:
        """
        等待当前运行结束。

        返回:
            bool: 超时前是否已空闲
        """
        handle = self.current_run(session_key)
        if handle is None:
            return True
        try:
            await asyncio.wait_for(handle.done.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        """中止所有运行并等待后台任务结束。"""
        self._closed = True
        for key in list(self._lanes):
            self.abort(key, "shutdown")
        tasks = list(self._tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._lanes.clear()
