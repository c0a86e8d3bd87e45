import asyncio

from conftest import FakePool, FakeProvider, make_config

from lanebot.agent.coordinator import RunCoordinator, RunHandle
from lanebot.agent.runtime import AgentRuntime
from lanebot.directives.apply import SessionLevels
from lanebot.providers.base import LLMResponse, ToolCallRequest
from lanebot.session.transcript import load_transcript


def _tool_call(call_id, name, **arguments):
    return LLMResponse(
        content=None,
        tool_calls=[ToolCallRequest(id=call_id, name=name, arguments=arguments)],
        finish_reason="tool_calls",
        usage={"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12},
    )


class SlowProvider(FakeProvider):
    async def chat(self, messages, **kwargs):
        await asyncio.sleep(5)
        return LLMResponse(content="too late")


async def test_tool_call_then_final_reply(config, tmp_path):
    workspace = config.workspace_path
    (workspace / "note.txt").write_text("remember the milk", encoding="utf-8")
    provider = FakeProvider([
        _tool_call("c1", "read_file", path=str(workspace / "note.txt")),
        LLMResponse(content="The note says: remember the milk", usage={"prompt_tokens": 20, "completion_tokens": 6}),
    ])
    runtime = AgentRuntime(FakePool(provider), config, workspace)
    session_file = tmp_path / "s1.jsonl"

    result = await runtime.run(session_file, "what's in note.txt?", "openai/gpt-5", SessionLevels(), session_id="s1")

    assert result.payloads == [{"text": "The note says: remember the milk"}]
    assert result.usage == {"input": 30, "output": 8, "total": 12}
    assert result.meta["provider"] == "openai"
    assert result.meta["model"] == "gpt-5"
    assert not result.aborted

    tool_message = provider.calls[1]["messages"][-1]
    assert tool_message["role"] == "tool"
    assert tool_message["content"] == "remember the milk"

    transcript = load_transcript(session_file)
    assert transcript.session_id == "s1"
    assert [m["role"] for m in transcript.messages] == ["user", "assistant", "toolResult", "assistant"]


async def test_history_is_replayed_on_next_run(config, tmp_path):
    provider = FakeProvider([LLMResponse(content="first"), LLMResponse(content="second")])
    runtime = AgentRuntime(FakePool(provider), config)
    session_file = tmp_path / "s2.jsonl"

    await runtime.run(session_file, "one", "openai/gpt-5", SessionLevels())
    await runtime.run(session_file, "two", "openai/gpt-5", SessionLevels())

    roles = [(m["role"], m["content"]) for m in provider.calls[1]["messages"][1:]]
    assert roles == [("user", "one"), ("assistant", "first"), ("user", "two")]


async def test_fallback_model_used_after_error(tmp_path):
    (tmp_path / "workspace").mkdir()
    config = make_config(tmp_path, agents={"defaults": {"model_fallbacks": ["anthropic/claude-sonnet-4-5"]}})
    primary = FakeProvider([LLMResponse(content="rate limited", finish_reason="error")])
    backup = FakeProvider([LLMResponse(content="from backup")])
    pool = FakePool(backup, {"openai/gpt-5": primary})

    result = await AgentRuntime(pool, config).run(tmp_path / "f.jsonl", "hi", "openai/gpt-5", SessionLevels())

    assert result.payloads == [{"text": "from backup"}]
    assert result.meta["provider"] == "anthropic"
    assert result.meta["model"] == "claude-sonnet-4-5"
    assert backup.calls[0]["model"] == "anthropic/claude-sonnet-4-5"


async def test_all_models_failing_reports_error(config, tmp_path):
    provider = FakeProvider([LLMResponse(content="boom", finish_reason="error")])
    result = await AgentRuntime(FakePool(provider), config).run(
        tmp_path / "e.jsonl", "hi", "openai/gpt-5", SessionLevels(),
    )
    assert result.payloads == []
    assert result.meta["error"] == "boom"


async def test_thinking_level_is_forwarded(config, tmp_path):
    provider = FakeProvider([LLMResponse(content="ok")])
    await AgentRuntime(FakePool(provider), config).run(
        tmp_path / "t.jsonl", "hi", "openai/gpt-5", SessionLevels(thinking="high"),
    )
    assert provider.calls[0]["thinking"] == "high"

    provider = FakeProvider([LLMResponse(content="ok")])
    await AgentRuntime(FakePool(provider), config).run(tmp_path / "t2.jsonl", "hi", "openai/gpt-5", SessionLevels())
    assert provider.calls[0]["thinking"] is None


async def test_verbose_and_reasoning_payloads(config, tmp_path):
    provider = FakeProvider([
        _tool_call("c1", "list_dir", path=str(config.workspace_path)),
        LLMResponse(content="done", reasoning_content="looked around"),
    ])
    result = await AgentRuntime(FakePool(provider), config).run(
        tmp_path / "v.jsonl", "look", "openai/gpt-5", SessionLevels(verbose="on", reasoning="on"),
    )
    texts = [p["text"] for p in result.payloads]
    assert texts[0].startswith("🛠️ list_dir: ")
    assert texts[1] == "Reasoning:\nlooked around"
    assert texts[-1] == "done"


async def test_reasoning_stream_emits_event(config, tmp_path):
    coordinator = RunCoordinator()
    seen = []
    coordinator.events.subscribe(lambda e: seen.append((e.stream, e.data)))
    provider = FakeProvider([LLMResponse(content="done", reasoning_content="thinking...")])
    handle = RunHandle(run_id="r1", session_id="s", session_key="k")

    result = await AgentRuntime(FakePool(provider), config, coordinator=coordinator).run(
        tmp_path / "r.jsonl", "go", "openai/gpt-5", SessionLevels(reasoning="stream"), handle=handle,
    )
    assert ("reasoning", {"text": "thinking..."}) in seen
    assert result.payloads == [{"text": "done"}]


async def test_steered_messages_are_injected(config, tmp_path):
    provider = FakeProvider([LLMResponse(content="ok")])
    handle = RunHandle(run_id="r1", session_id="s", session_key="k")
    handle.steer("actually, use French")

    await AgentRuntime(FakePool(provider), config).run(
        tmp_path / "st.jsonl", "say hello", "openai/gpt-5", SessionLevels(), handle=handle,
    )
    assert provider.calls[0]["messages"][-1] == {"role": "user", "content": "actually, use French"}


async def test_abort_before_first_call(config, tmp_path):
    provider = FakeProvider([LLMResponse(content="never")])
    abort = asyncio.Event()
    abort.set()
    result = await AgentRuntime(FakePool(provider), config).run(
        tmp_path / "a.jsonl", "hi", "openai/gpt-5", SessionLevels(), abort_event=abort,
    )
    assert result.aborted
    assert result.meta["abortReason"] == "aborted"
    assert result.payloads == []
    assert provider.calls == []


async def test_timeout_aborts_in_flight_call(config, tmp_path):
    result = await AgentRuntime(FakePool(SlowProvider()), config).run(
        tmp_path / "slow.jsonl", "hi", "openai/gpt-5", SessionLevels(), timeout_ms=50,
    )
    assert result.aborted
    assert result.meta["abortReason"] == "timeout"
    assert result.payloads == []
