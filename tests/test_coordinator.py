import asyncio

import pytest

from lanebot.agent.abort import (
    ABORT_REPLY,
    consume_aborted_flag,
    handle_abort,
    is_abort_request,
)
from lanebot.agent.coordinator import (
    LaneState,
    QueueSettings,
    RunCoordinator,
    SubmitOutcome,
    Turn,
    coalesce_prompts,
)
from lanebot.directives.parse import QueueSet
from lanebot.session.store import load_session_store, update_session_store

KEY = "agent:main:main"


async def _wait_any(*events: asyncio.Event) -> None:
    waiters = [asyncio.ensure_future(e.wait()) for e in events]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for w in waiters:
            w.cancel()


class Recorder:
    """记录每次运行收到的提示词；gate 未放行前运行一直挂起（中止时提前返回）。"""

    def __init__(self):
        self.prompts: list[str] = []
        self.handles = []
        self.gate = asyncio.Event()

    def turn(self, prompt: str, timeout_s: float | None = None) -> Turn:
        async def run(handle, text):
            self.prompts.append(text)
            self.handles.append(handle)
            await _wait_any(self.gate, handle.abort_event)
            return f"reply:{text}"
        return Turn(session_key=KEY, session_id="s1", prompt=prompt, run=run, timeout_s=timeout_s)


@pytest.fixture
async def coordinator():
    coord = RunCoordinator(default_timeout_s=30)
    yield coord
    await coord.close()


def lifecycle_phases(coord: RunCoordinator) -> dict[str, list[str]]:
    phases: dict[str, list[str]] = {}
    coord.events.subscribe(
        lambda e: phases.setdefault(e.run_id, []).append(e.data["phase"]) if e.stream == "lifecycle" else None
    )
    return phases


async def test_idle_lane_starts_immediately(coordinator):
    rec = Recorder()
    phases = lifecycle_phases(coordinator)
    result = await coordinator.submit(rec.turn("hello"))
    assert result.outcome == SubmitOutcome.STARTED
    assert result.handle is not None
    assert coordinator.state(KEY) == LaneState.ACTIVE

    rec.gate.set()
    assert await asyncio.wait_for(result.future, 1) == "reply:hello"
    assert coordinator.state(KEY) == LaneState.IDLE
    assert phases[result.handle.run_id] == ["start", "end"]


async def test_followup_runs_each_message_in_order(coordinator):
    rec = Recorder()
    settings = QueueSettings(mode="followup", debounce_ms=0)
    await coordinator.submit(rec.turn("one"), settings)
    second = await coordinator.submit(rec.turn("two"), settings)
    third = await coordinator.submit(rec.turn("three"), settings)
    assert second.outcome == third.outcome == SubmitOutcome.QUEUED
    assert coordinator.backlog_size(KEY) == 2

    rec.gate.set()
    assert await asyncio.wait_for(third.future, 1) == "reply:three"
    assert rec.prompts == ["one", "two", "three"]


async def test_collect_coalesces_backlog(coordinator):
    rec = Recorder()
    settings = QueueSettings(mode="collect", debounce_ms=0)
    await coordinator.submit(rec.turn("first"), settings)
    b = await coordinator.submit(rec.turn("second"), settings)
    c = await coordinator.submit(rec.turn("third"), settings)

    rec.gate.set()
    combined = await asyncio.wait_for(c.future, 1)
    assert await b.future is None
    assert len(rec.prompts) == 2
    assert rec.prompts[1].startswith("[Queued messages while agent was busy]")
    assert "Queued #1\nsecond" in rec.prompts[1]
    assert "Queued #2\nthird" in rec.prompts[1]
    assert combined == f"reply:{rec.prompts[1]}"


async def test_drop_new_rejects_when_full(coordinator):
    rec = Recorder()
    settings = QueueSettings(mode="followup", debounce_ms=0, cap=1, drop="new")
    await coordinator.submit(rec.turn("running"), settings)
    await coordinator.submit(rec.turn("kept"), settings)
    dropped = await coordinator.submit(rec.turn("rejected"), settings)
    assert dropped.outcome == SubmitOutcome.DROPPED
    assert await dropped.future is None
    assert coordinator.backlog_size(KEY) == 1


async def test_drop_old_evicts_oldest(coordinator):
    rec = Recorder()
    settings = QueueSettings(mode="followup", debounce_ms=0, cap=1, drop="old")
    await coordinator.submit(rec.turn("running"), settings)
    evicted = await coordinator.submit(rec.turn("old"), settings)
    newest = await coordinator.submit(rec.turn("new"), settings)
    assert await evicted.future is None

    rec.gate.set()
    await asyncio.wait_for(newest.future, 1)
    assert rec.prompts == ["running", "new"]


async def test_drop_summarize_mentions_dropped_messages(coordinator):
    rec = Recorder()
    settings = QueueSettings(mode="collect", debounce_ms=0, cap=1, drop="summarize")
    await coordinator.submit(rec.turn("running"), settings)
    await coordinator.submit(rec.turn("dropped\nline"), settings)
    last = await coordinator.submit(rec.turn("latest"), settings)

    rec.gate.set()
    await asyncio.wait_for(last.future, 1)
    prompt = rec.prompts[1]
    assert prompt.startswith("[1 earlier queued message(s) dropped]")
    assert "- dropped line" in prompt
    assert "latest" in prompt


async def test_steer_only_while_streaming(coordinator):
    rec = Recorder()
    settings = QueueSettings(mode="steer", debounce_ms=0)
    first = await coordinator.submit(rec.turn("start"), settings)

    queued = await coordinator.submit(rec.turn("too early"), settings)
    assert queued.outcome == SubmitOutcome.QUEUED
    coordinator.clear_backlog(KEY)

    coordinator.mark_streaming(first.handle)
    assert coordinator.is_streaming(KEY)
    steered = await coordinator.submit(rec.turn("turn left"), settings)
    assert steered.outcome == SubmitOutcome.STEERED
    assert steered.handle is first.handle
    assert await steered.future is None
    assert first.handle.drain_steered() == ["turn left"]


async def test_interrupt_aborts_streaming_run_and_starts_new(coordinator):
    rec = Recorder()
    first = await coordinator.submit(rec.turn("long task"), QueueSettings(mode="collect"))
    coordinator.mark_streaming(first.handle)
    await coordinator.submit(rec.turn("queued"), QueueSettings(mode="collect", debounce_ms=5000))

    result = await coordinator.submit(rec.turn("urgent"), QueueSettings(mode="interrupt", debounce_ms=5000))
    assert result.outcome == SubmitOutcome.STARTED
    assert result.handle is None
    assert first.handle.aborted
    assert first.handle.abort_reason == "interrupt"

    await asyncio.wait_for(first.future, 1)
    for _ in range(50):
        if len(rec.prompts) == 2:
            break
        await asyncio.sleep(0.01)
    assert rec.prompts == ["long task", "urgent"]
    rec.gate.set()
    assert await asyncio.wait_for(result.future, 1) == "reply:urgent"


async def test_interrupt_calls_abort_hook_once():
    interrupted = []

    async def on_abort(handle):
        interrupted.append((handle.run_id, handle.abort_reason))

    coord = RunCoordinator(default_timeout_s=30, on_abort=on_abort)
    rec = Recorder()
    try:
        first = await coord.submit(rec.turn("long task"))
        await coord.submit(rec.turn("urgent"), QueueSettings(mode="interrupt"))
        assert interrupted == [(first.handle.run_id, "interrupt")]

        await coord.submit(rec.turn("again"), QueueSettings(mode="interrupt"))
        assert len(interrupted) == 1
    finally:
        rec.gate.set()
        await coord.close()


async def test_steer_after_last_drain_runs_as_followup(coordinator):
    processed: list[str] = []
    in_dispatch = asyncio.Event()
    release = asyncio.Event()

    def turn(prompt):
        async def run(handle, text):
            processed.append(text)
            coordinator.mark_streaming(handle)
            handle.drain_steered()
            if text == "first":
                in_dispatch.set()
                await release.wait()
            return f"reply:{text}"
        return Turn(session_key=KEY, session_id="s1", prompt=prompt, run=run)

    settings = QueueSettings(mode="steer", debounce_ms=0)
    first = await coordinator.submit(turn("first"), settings)
    await asyncio.wait_for(in_dispatch.wait(), 1)

    second = await coordinator.submit(turn("second"), settings)
    assert second.outcome == SubmitOutcome.STEERED

    release.set()
    assert await asyncio.wait_for(first.future, 1) == "reply:first"
    for _ in range(50):
        if processed == ["first", "second"]:
            break
        await asyncio.sleep(0.01)
    assert processed == ["first", "second"]
    await coordinator.wait_for_idle(KEY, 1)


async def test_steered_messages_of_aborted_run_are_dropped(coordinator):
    rec = Recorder()
    settings = QueueSettings(mode="steer", debounce_ms=0)
    first = await coordinator.submit(rec.turn("work"), settings)
    coordinator.mark_streaming(first.handle)
    await coordinator.submit(rec.turn("left"), settings)

    coordinator.abort(KEY)
    await asyncio.wait_for(first.future, 1)
    await asyncio.sleep(0.02)
    assert rec.prompts == ["work"]
    assert coordinator.backlog_size(KEY) == 0


async def test_abort_is_idempotent(coordinator):
    rec = Recorder()
    phases = lifecycle_phases(coordinator)
    first = await coordinator.submit(rec.turn("work"))

    assert coordinator.abort(KEY) is True
    assert coordinator.abort(KEY) is False
    await asyncio.wait_for(first.future, 1)
    assert coordinator.abort(KEY) is False
    assert coordinator.state(KEY) == LaneState.IDLE
    assert phases[first.handle.run_id] == ["start", "end"]


async def test_failing_run_emits_error_and_frees_lane(coordinator):
    phases = lifecycle_phases(coordinator)

    async def boom(handle, text):
        raise RuntimeError("kaboom")

    result = await coordinator.submit(Turn(session_key=KEY, session_id="s1", prompt="x", run=boom))
    assert await asyncio.wait_for(result.future, 1) is None
    assert phases[result.handle.run_id] == ["start", "error"]
    assert coordinator.state(KEY) == LaneState.IDLE


async def test_timeout_aborts_and_calls_hook():
    timed_out = []

    async def on_timeout(handle):
        timed_out.append(handle.run_id)

    coord = RunCoordinator(on_timeout=on_timeout)
    rec = Recorder()
    try:
        result = await coord.submit(rec.turn("slow", timeout_s=0.05))
        await asyncio.wait_for(result.future, 1)
        await asyncio.sleep(0.01)
        assert result.handle.abort_reason == "timeout"
        assert timed_out == [result.handle.run_id]
    finally:
        await coord.close()


def test_queue_settings_precedence(config):
    entry = {"queueMode": "followup", "queueCap": 5}
    settings = QueueSettings.resolve(config, entry, "slack")
    assert settings.mode == "followup"
    assert settings.cap == 5
    assert settings.drop == config.session.queue.drop

    inline = QueueSet(mode="interrupt", debounce_ms=0)
    settings = QueueSettings.resolve(config, entry, "slack", inline)
    assert settings.mode == "interrupt"
    assert settings.debounce_ms == 0


def test_coalesce_single_prompt_is_unchanged():
    assert coalesce_prompts(["only"]) == "only"


def test_abort_triggers():
    for text in ("stop", " STOP ", "/stop", "Esc", "interrupt"):
        assert is_abort_request(text)
    assert not is_abort_request("stop it")
    assert ABORT_REPLY == "⚙️ Agent was aborted."


async def test_abort_persists_flag_and_next_turn_consumes_it(coordinator, store_path):
    await update_session_store(store_path, lambda s: s.update({KEY: {"sessionId": "s1", "updatedAt": 1}}))
    rec = Recorder()
    first = await coordinator.submit(rec.turn("work"))

    assert await handle_abort(coordinator, session_key=KEY, store_path=store_path) is True
    once = load_session_store(store_path, skip_cache=True)[KEY]
    assert await handle_abort(coordinator, session_key=KEY, store_path=store_path) is False
    await asyncio.wait_for(first.future, 1)

    entry = load_session_store(store_path, skip_cache=True)[KEY]
    assert entry == once
    assert entry["abortedLastRun"] is True
    assert await consume_aborted_flag(coordinator, entry=entry, session_key=KEY, store_path=store_path)
    assert load_session_store(store_path, skip_cache=True)[KEY]["abortedLastRun"] is False


async def test_abort_without_entry_uses_memory(coordinator, store_path):
    await handle_abort(coordinator, session_key="agent:main:ghost", store_path=store_path)
    assert await consume_aborted_flag(
        coordinator, entry={}, session_key="agent:main:ghost", store_path=store_path,
    )
    assert not await consume_aborted_flag(
        coordinator, entry={}, session_key="agent:main:ghost", store_path=store_path,
    )
