from conftest import make_config

from lanebot.session.keys import MessageContext
from lanebot.session.lifecycle import init_session_state, match_reset_trigger
from lanebot.session.reset import ResetPolicy, is_fresh, resolve_reset_policy
from lanebot.session.store import load_session_store, update_session_entry
from lanebot.session.transcript import load_transcript, open_or_create

T0 = 1_700_000_000_000
HOUR_MS = 60 * 60_000

DM = MessageContext(channel="telegram", sender_id="42", chat_id="42")


def test_freshness_boundary_is_inclusive():
    policy = ResetPolicy(reset_type="direct", idle_minutes=60)
    assert is_fresh(T0, T0 + HOUR_MS, policy)
    assert not is_fresh(T0, T0 + HOUR_MS + 1, policy)
    assert not is_fresh(None, T0, policy)
    assert is_fresh(0, T0, ResetPolicy(reset_type="direct", idle_minutes=0))


def test_reset_policy_precedence(config):
    cfg = config.session.model_copy(update={
        "idle_minutes": 60,
        "reset_by_type": {"group": 30},
        "reset_by_channel": {"slack": 5},
    })
    assert resolve_reset_policy(cfg, "telegram", "direct").idle_minutes == 60
    assert resolve_reset_policy(cfg, "telegram", "group").idle_minutes == 30
    assert resolve_reset_policy(cfg, "Slack", "group").idle_minutes == 5


def test_match_reset_trigger():
    assert match_reset_trigger("/NEW", ["/new", "/reset"], True) == (True, "")
    assert match_reset_trigger("/reset Hello There", ["/new", "/reset"], True) == (True, "Hello There")
    assert match_reset_trigger("/newer", ["/new"], True) == (False, None)
    assert match_reset_trigger("/new", ["/new"], False) == (False, None)


async def test_session_id_stable_within_idle_window(config):
    first = await init_session_state(DM, "hi", config=config, now=T0)
    assert first.is_new

    same = await init_session_state(DM, "again", config=config, now=T0 + HOUR_MS)
    assert not same.is_new
    assert same.session_id == first.session_id


async def test_stale_session_rolls_over(config):
    first = await init_session_state(DM, "hi", config=config, now=T0)
    later = await init_session_state(DM, "later", config=config, now=T0 + HOUR_MS + 1)
    assert later.is_new
    assert later.session_id != first.session_id


async def test_reset_trigger_keeps_overrides(config):
    first = await init_session_state(DM, "hi", config=config, now=T0)
    await update_session_entry(
        first.store_path, first.session_key,
        lambda e: {"modelOverride": "gpt-5-mini", "providerOverride": "openai", "thinkingLevel": "high"},
    )

    reset = await init_session_state(DM, "/new Hello", config=config, now=T0 + 1000)
    assert reset.reset_triggered
    assert reset.body_stripped == "Hello"
    assert reset.session_id != first.session_id
    assert reset.entry["modelOverride"] == "gpt-5-mini"
    assert reset.entry["providerOverride"] == "openai"
    assert reset.entry["thinkingLevel"] == "high"
    assert reset.entry["abortedLastRun"] is False
    assert reset.previous_entry["sessionId"] == first.session_id


async def test_unauthorized_reset_is_plain_text(config):
    first = await init_session_state(DM, "hi", config=config, now=T0)
    again = await init_session_state(DM, "/new", config=config, command_authorized=False, now=T0 + 1)
    assert not again.reset_triggered
    assert again.session_id == first.session_id


async def test_delivery_and_presentation_fields(config):
    ctx = MessageContext(
        channel="slack", sender_id="U1", chat_id="C1", chat_type="channel", subject="#general",
    )
    state = await init_session_state(ctx, "hi", config=config, now=T0)
    entry = load_session_store(config.store_path())[state.session_key]
    assert entry["lastChannel"] == "slack"
    assert entry["lastTo"] == "C1"
    assert entry["chatType"] == "channel"
    assert entry["groupId"] == "C1"
    assert entry["displayName"] == "slack:#general"


async def test_thread_session_forks_parent_tail(tmp_path):
    (tmp_path / "workspace").mkdir()
    config = make_config(tmp_path, session={"thread": {"inherit_parent": True, "history_limit": 3}})
    parent_ctx = MessageContext(channel="slack", sender_id="U1", chat_id="C1", chat_type="channel")
    parent = await init_session_state(parent_ctx, "hi", config=config, now=T0)

    transcript = open_or_create(parent.session_file, parent.session_id)
    transcript.append_message({"role": "user", "content": "q1"})
    transcript.append_message({"role": "assistant", "content": [
        {"type": "toolCall", "id": "t1", "name": "exec", "arguments": {"command": "ls"}},
    ]})
    transcript.append_message({"role": "toolResult", "toolCallId": "t1", "content": "a.txt"})
    transcript.append_message({"role": "user", "content": "q2"})
    transcript.append_message({"role": "assistant", "content": [{"type": "text", "text": "a2"}]})

    thread_ctx = MessageContext(
        channel="slack", sender_id="U1", chat_id="C1", chat_type="channel", thread_id="171.5",
    )
    child = await init_session_state(thread_ctx, "in thread", config=config, now=T0 + 10)

    assert child.parent_key == parent.session_key
    assert child.forked
    forked = load_transcript(child.session_file)
    assert forked.parent_session == str(parent.session_file)
    assert [m["content"] if isinstance(m["content"], str) else m["content"][0]["text"]
            for m in forked.messages] == ["q2", "a2"]


async def test_thread_without_inherit_does_not_fork(config):
    parent_ctx = MessageContext(channel="slack", sender_id="U1", chat_id="C1", chat_type="channel")
    await init_session_state(parent_ctx, "hi", config=config, now=T0)
    thread_ctx = MessageContext(
        channel="slack", sender_id="U1", chat_id="C1", chat_type="channel", thread_id="9",
    )
    child = await init_session_state(thread_ctx, "hi", config=config, now=T0 + 1)
    assert child.parent_key is None
    assert not child.forked


def _texts(transcript):
    return [m["content"] if isinstance(m["content"], str) else m["content"][0]["text"] for m in transcript.messages]


async def test_existing_thread_merges_parent_tail_once(config):
    parent_ctx = MessageContext(channel="slack", sender_id="U1", chat_id="C1", chat_type="channel")
    parent = await init_session_state(parent_ctx, "hi", config=config, now=T0)
    parent_transcript = open_or_create(parent.session_file, parent.session_id)
    parent_transcript.append_message({"role": "user", "content": "q1"})
    parent_transcript.append_message({"role": "assistant", "content": [{"type": "text", "text": "a1"}]})

    thread_ctx = MessageContext(
        channel="slack", sender_id="U1", chat_id="C1", chat_type="channel", thread_id="9",
    )
    child = await init_session_state(thread_ctx, "hi", config=config, now=T0 + 1)
    assert not child.forked
    open_or_create(child.session_file, child.session_id).append_message({"role": "user", "content": "thread only"})

    linked_ctx = MessageContext(
        channel="slack", sender_id="U1", chat_id="C1", chat_type="channel", thread_id="9",
        parent_session_key=parent.session_key,
    )
    linked = await init_session_state(linked_ctx, "again", config=config, now=T0 + 2)
    assert linked.session_id == child.session_id
    assert linked.forked
    merged = load_transcript(child.session_file)
    assert merged.parent_session == str(parent.session_file)
    assert _texts(merged) == ["q1", "a1", "thread only"]

    parent_transcript.append_message({"role": "user", "content": "q2"})
    again = await init_session_state(linked_ctx, "once more", config=config, now=T0 + 3)
    assert not again.forked
    assert _texts(load_transcript(child.session_file)) == ["q1", "a1", "thread only"]
