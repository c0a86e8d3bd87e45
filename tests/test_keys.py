from lanebot.config.schema import SessionConfig
from lanebot.session.keys import (
    MessageContext,
    canonicalize_key,
    classify_session_key,
    infer_parent_key,
    legacy_store_keys,
    main_session_key,
    parse_group_key,
    resolve_main_session_key,
    resolve_session_key,
)


def test_main_alias_and_main_collapse_to_same_key():
    assert canonicalize_key("main") == "agent:main:main"
    assert canonicalize_key("home", main_key="home") == "agent:main:home"
    assert canonicalize_key("main", main_key="home") == "agent:main:home"
    assert canonicalize_key("agent:Ops:main", main_key="home") == "agent:ops:home"


def test_special_keys_pass_through():
    assert canonicalize_key("global") == "global"
    assert canonicalize_key("UNKNOWN") == "unknown"


def test_bare_keys_get_agent_prefix():
    assert canonicalize_key("slack:group:C1", agent_id="ops") == "agent:ops:slack:group:C1"


def test_direct_messages_share_main_session_by_default():
    cfg = SessionConfig()
    a = resolve_session_key(MessageContext(channel="telegram", sender_id="1", chat_id="1"), cfg)
    b = resolve_session_key(MessageContext(channel="slack", sender_id="U2", chat_id="D2"), cfg)
    assert a == b == main_session_key()


def test_main_session_follows_global_scope():
    cfg = SessionConfig(scope="global")
    dm = MessageContext(channel="telegram", sender_id="1", chat_id="1")
    assert resolve_main_session_key(cfg) == resolve_session_key(dm, cfg) == "global"
    assert resolve_main_session_key(SessionConfig(main_key="home"), "ops") == "agent:ops:home"


def test_per_sender_dm_scope():
    cfg = SessionConfig(dm_scope="per-sender")
    ctx = MessageContext(channel="Telegram", sender_id="42", chat_id="42")
    assert resolve_session_key(ctx, cfg) == "agent:main:telegram:dm:42"


def test_group_and_thread_keys():
    cfg = SessionConfig()
    group = MessageContext(channel="slack", sender_id="U1", chat_id="C1", chat_type="channel")
    assert resolve_session_key(group, cfg) == "agent:main:slack:channel:C1"

    thread = MessageContext(
        channel="slack", sender_id="U1", chat_id="C1", chat_type="channel", thread_id="171.5",
    )
    key = resolve_session_key(thread, cfg)
    assert key == "agent:main:slack:channel:C1:thread:171.5"
    assert infer_parent_key(key) == "agent:main:slack:channel:C1"

    topic = MessageContext(
        channel="telegram", sender_id="1", chat_id="-100", chat_type="group",
        thread_id="7", thread_kind="topic",
    )
    assert resolve_session_key(topic, cfg) == "agent:main:telegram:group:-100:topic:7"


def test_per_sender_scope_folds_threads_into_parent():
    cfg = SessionConfig(scope="per-sender")
    ctx = MessageContext(channel="slack", sender_id="U1", chat_id="C1", chat_type="group", thread_id="9")
    assert resolve_session_key(ctx, cfg) == "agent:main:slack:group:C1"


def test_global_scope_and_explicit_override():
    assert resolve_session_key(
        MessageContext(channel="slack", sender_id="U1", chat_id="C1"), SessionConfig(scope="global")
    ) == "global"
    ctx = MessageContext(channel="slack", sender_id="U1", chat_id="C1", session_key="work")
    assert resolve_session_key(ctx, SessionConfig()) == "agent:main:work"


def test_resolution_is_deterministic():
    cfg = SessionConfig()
    ctx = MessageContext(channel="slack", sender_id="U1", chat_id="C1", chat_type="group", thread_id="1")
    assert resolve_session_key(ctx, cfg) == resolve_session_key(ctx, cfg)


def test_parse_group_key_and_classify():
    assert parse_group_key("agent:main:slack:group:C1:thread:5") == {
        "channel": "slack", "kind": "group", "id": "C1",
    }
    assert parse_group_key("agent:main:main") is None
    assert classify_session_key("agent:main:slack:channel:C1") == "group"
    assert classify_session_key("agent:main:main") == "direct"
    assert classify_session_key("agent:main:x", {"chatType": "room"}) == "group"
    assert classify_session_key("global") == "global"


def test_legacy_store_keys():
    assert legacy_store_keys("agent:main:main") == ["main"]
    assert legacy_store_keys("agent:main:slack:group:C1") == ["slack:group:C1"]
    assert legacy_store_keys("global") == []
