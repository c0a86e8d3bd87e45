import asyncio
from pathlib import Path

import pytest
from conftest import FakePool, FakeProvider, make_config

from lanebot.agent.abort import ABORT_REPLY, ABORTED_NOTE
from lanebot.agent.dispatcher import FAILURE_NOTICE
from lanebot.agent.loop import BARE_RESET_PROMPT, EMPTY_BODY_REPLY, AgentLoop
from lanebot.bus.events import InboundMessage
from lanebot.bus.queue import MessageBus
from lanebot.providers.base import LLMResponse
from lanebot.session.store import load_session_store

MAIN = "agent:main:main"


@pytest.fixture
async def harness(config):
    provider = FakeProvider()
    bus = MessageBus()
    loop = AgentLoop(bus, FakePool(provider), config)
    yield loop, provider, bus
    await loop.close()


def _last_user(provider, call=-1):
    return provider.calls[call]["messages"][-1]["content"]


def _stored(config, key=MAIN):
    return load_session_store(config.store_path(), skip_cache=True)[key]


async def test_direct_message_round_trip(harness, config):
    loop, provider, _ = harness
    provider.responses = [LLMResponse(content="Hello there!", usage={"prompt_tokens": 7, "completion_tokens": 3})]

    assert await loop.process_direct("hi") == "Hello there!"
    assert _last_user(provider) == "hi"

    entry = _stored(config)
    assert entry["systemSent"] is True
    assert entry["inputTokens"] == 7
    assert entry["lastChannel"] == "cli"
    assert entry["sessionFile"].endswith(f"{entry['sessionId']}.jsonl")
    assert Path(entry["sessionFile"]).exists()


async def test_directive_only_message_is_acknowledged(harness, config):
    loop, provider, _ = harness
    assert await loop.process_direct("/think high") == "Thinking level set to high."
    assert provider.calls == []
    assert _stored(config)["thinkingLevel"] == "high"


async def test_inline_directive_applies_to_run(harness):
    loop, provider, _ = harness
    await loop.process_direct("/think low what's up")
    assert provider.calls[0]["thinking"] == "low"
    assert _last_user(provider) == "what's up"


async def test_unauthorized_sender_directives_are_plain_text(harness, config):
    loop, provider, _ = harness
    msg = InboundMessage(channel="cli", sender_id="guest", chat_id="direct", content="/think high", command_authorized=False)
    result = await loop._process_message(msg, publish=False)
    assert result.replies == []
    await result.submitted.future

    assert _last_user(provider) == "/think high"
    assert "thinkingLevel" not in _stored(config)


async def test_send_off_suppresses_replies(harness, config):
    loop, provider, _ = harness
    assert await loop.process_direct("/send off") == "⚙️ Send policy set to off."
    assert _stored(config)["sendPolicy"] == "deny"

    assert await loop.process_direct("anyone there?") == ""
    assert len(provider.calls) == 1

    assert await loop.process_direct("/send inherit") == "⚙️ Send policy set to inherit."
    assert "sendPolicy" not in _stored(config)


async def test_stop_marks_next_prompt(harness, config):
    loop, provider, _ = harness
    await loop.process_direct("first")
    assert await loop.process_direct("/stop") == ABORT_REPLY
    assert _stored(config)["abortedLastRun"] is True

    await loop.process_direct("carry on")
    assert _last_user(provider) == f"{ABORTED_NOTE}\n\ncarry on"
    assert _stored(config)["abortedLastRun"] is False


async def test_stop_aborts_in_flight_run(config):
    started = asyncio.Event()

    class BlockingProvider(FakeProvider):
        async def chat(self, messages, **kwargs):
            started.set()
            await asyncio.sleep(10)
            return LLMResponse(content="never")

    bus = MessageBus()
    loop = AgentLoop(bus, FakePool(BlockingProvider()), config)
    try:
        first = await loop._process_message(InboundMessage(channel="cli", sender_id="u", chat_id="direct", content="slow"))
        await asyncio.wait_for(started.wait(), 1)
        stop = await loop._process_message(InboundMessage(channel="cli", sender_id="u", chat_id="direct", content="stop"))
        assert [r.content for r in stop.replies] == [ABORT_REPLY]
        await asyncio.wait_for(first.submitted.future, 1)
        assert first.submitted.handle.abort_reason == "user"
        assert bus.outbound_size == 0
    finally:
        await loop.close()


async def test_empty_body_and_bare_reset(harness, config):
    loop, provider, _ = harness
    assert await loop.process_direct("   ") == EMPTY_BODY_REPLY
    assert provider.calls == []

    await loop.process_direct("hello")
    old_id = _stored(config)["sessionId"]
    await loop.process_direct("/new")
    assert _last_user(provider) == BARE_RESET_PROMPT
    assert _stored(config)["sessionId"] != old_id


async def test_model_switch_event_prefixes_next_prompt(harness):
    loop, provider, _ = harness
    assert await loop.process_direct("/model gpt-5.2") == "Model set to openai/gpt-5.2."
    await loop.process_direct("hi")
    assert provider.calls[0]["model"] == "openai/gpt-5.2"
    assert _last_user(provider) == "System: Model switched to openai/gpt-5.2.\n\nhi"


async def test_failed_run_sends_failure_notice(harness):
    loop, provider, _ = harness
    provider.responses = [LLMResponse(content="provider down", finish_reason="error")]
    assert await loop.process_direct("hi") == FAILURE_NOTICE


async def test_channel_reply_published_with_metadata(harness):
    loop, provider, bus = harness
    provider.responses = [LLMResponse(content="in thread")]
    msg = InboundMessage(
        channel="slack",
        sender_id="U1",
        chat_id="C1",
        content="hi",
        chat_type="group",
        metadata={"slack": {"thread_ts": "1.5"}},
    )
    result = await loop._process_message(msg)
    await result.submitted.future

    out = await asyncio.wait_for(bus.consume_outbound(), 1)
    assert (out.channel, out.chat_id, out.content) == ("slack", "C1", "in thread")
    assert out.metadata == {"slack": {"thread_ts": "1.5"}}


async def test_interrupt_marks_interrupted_run_aborted(tmp_path):
    (tmp_path / "workspace").mkdir()
    config = make_config(tmp_path, session={"queue": {"mode": "interrupt"}})
    started = asyncio.Event()

    class GatedProvider(FakeProvider):
        async def chat(self, messages, **kwargs):
            self.calls.append({"messages": list(messages), "model": kwargs.get("model"), "thinking": None})
            if len(self.calls) == 1:
                started.set()
                await asyncio.sleep(10)
            return LLMResponse(content="on it")

    provider = GatedProvider()
    loop = AgentLoop(MessageBus(), FakePool(provider), config)
    try:
        first = await loop._process_message(
            InboundMessage(channel="cli", sender_id="u", chat_id="direct", content="long task"), publish=False,
        )
        await asyncio.wait_for(started.wait(), 1)
        urgent = await loop._process_message(
            InboundMessage(channel="cli", sender_id="u", chat_id="direct", content="urgent"), publish=False,
        )
        await asyncio.wait_for(first.submitted.future, 1)
        assert first.submitted.handle.abort_reason == "interrupt"
        assert _stored(config)["abortedLastRun"] is True

        await asyncio.wait_for(urgent.submitted.future, 1)
        assert _last_user(provider) == "urgent"

        await loop.process_direct("next")
        assert _last_user(provider) == f"{ABORTED_NOTE}\n\nnext"
    finally:
        await loop.close()
