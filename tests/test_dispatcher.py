from lanebot.agent.dispatcher import (
    FAILURE_NOTICE,
    ReplyDispatcher,
    ReplyTarget,
    normalize_payload,
)
from lanebot.agent.runtime import RunResult
from lanebot.bus.queue import MessageBus
from lanebot.session.store import load_session_store, update_session_store

KEY = "agent:main:main"
TARGET = ReplyTarget(channel="slack", chat_id="C1", metadata={"slack": {"thread_ts": "1.0"}})


def test_normalize_extracts_media_and_trims():
    payload = normalize_payload({"text": "  here you go\nMEDIA: https://x/y.png\n"})
    assert payload == {"text": "here you go", "media": ["https://x/y.png"]}


def test_silent_and_empty_replies_are_dropped():
    assert normalize_payload({"text": "NO_REPLY"}) is None
    assert normalize_payload({"text": "   "}) is None
    assert normalize_payload({"text": "NO_REPLY\nMEDIA: a.png"}) == {"text": "", "media": ["a.png"]}


async def _seed(store_path, **fields):
    entry = {"sessionId": "s1", "updatedAt": 1, **fields}
    await update_session_store(store_path, lambda s: s.update({KEY: entry}))
    return entry


async def test_dispatch_publishes_and_persists_usage(store_path):
    entry = await _seed(store_path)
    bus = MessageBus()
    result = RunResult(
        payloads=[{"text": "hi"}, {"text": "NO_REPLY"}],
        usage={"input": 10, "output": 4, "total": 14},
        meta={"provider": "openai", "model": "gpt-5"},
    )
    sent = await ReplyDispatcher(bus).dispatch(
        result, target=TARGET, session_key=KEY, store_path=store_path, entry=entry, context_tokens=400_000,
    )
    assert [m.content for m in sent] == ["hi"]
    assert sent[0].metadata == {"slack": {"thread_ts": "1.0"}}
    assert bus.outbound_size == 1

    stored = load_session_store(store_path, skip_cache=True)[KEY]
    assert (stored["inputTokens"], stored["outputTokens"], stored["totalTokens"]) == (10, 4, 14)
    assert stored["modelProvider"] == "openai"
    assert stored["contextTokens"] == 400_000


async def test_send_policy_deny_suppresses_delivery(store_path):
    entry = await _seed(store_path, sendPolicy="deny")
    bus = MessageBus()
    result = RunResult(payloads=[{"text": "secret"}], usage={"input": 1, "output": 1})
    sent = await ReplyDispatcher(bus).dispatch(
        result, target=TARGET, session_key=KEY, store_path=store_path, entry=entry,
    )
    assert sent == []
    assert bus.outbound_size == 0
    assert load_session_store(store_path, skip_cache=True)[KEY]["inputTokens"] == 1


async def test_aborted_run_drops_payloads_but_keeps_usage(store_path):
    entry = await _seed(store_path)
    result = RunResult(payloads=[{"text": "partial"}], usage={"input": 3, "output": 2}, meta={"aborted": True})
    sent = await ReplyDispatcher(MessageBus()).dispatch(
        result, target=TARGET, session_key=KEY, store_path=store_path, entry=entry,
    )
    assert sent == []
    assert load_session_store(store_path, skip_cache=True)[KEY]["outputTokens"] == 2


async def test_failure_notice_on_error(store_path):
    entry = await _seed(store_path)
    dispatcher = ReplyDispatcher(None)
    sent = await dispatcher.dispatch(
        None, target=TARGET, session_key=KEY, store_path=store_path, entry=entry, error=RuntimeError("x"),
    )
    assert [m.content for m in sent] == [FAILURE_NOTICE]

    failed = RunResult(meta={"error": "all models failed"})
    sent = await dispatcher.dispatch(failed, target=TARGET, session_key=KEY, store_path=store_path, entry=entry)
    assert [m.content for m in sent] == [FAILURE_NOTICE]
