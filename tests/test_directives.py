import pytest
from conftest import make_config

from lanebot.agent.system_events import SystemEventQueue
from lanebot.directives.apply import handle_directives, persist_inline_directives, resolve_levels
from lanebot.directives.levels import parse_duration_ms
from lanebot.directives.model_selection import (
    build_model_selection,
    fuzzy_match,
    resolve_model_directive,
)
from lanebot.directives.parse import (
    ModelQuery,
    ModelSet,
    QueueReset,
    QueueSet,
    ThinkQuery,
    ThinkSet,
    VerboseSet,
    parse_directives,
)
from lanebot.errors import DirectiveError
from lanebot.session.store import load_session_store, update_session_store

KEY = "agent:main:main"
ALLOW_LIST = {"openai/gpt-5": {}, "openai/gpt-5-mini": {}}


@pytest.fixture
def restricted_config(tmp_path):
    (tmp_path / "workspace").mkdir(exist_ok=True)
    return make_config(tmp_path, agents={"defaults": {"models": ALLOW_LIST}})


async def _seed(store_path, **fields):
    entry = {"sessionId": "s1", "updatedAt": 1, **fields}
    await update_session_store(store_path, lambda s: s.update({KEY: entry}))
    return entry


async def _apply(text, config, entry, events=None):
    return await handle_directives(
        parse_directives(text),
        entry=entry,
        session_key=KEY,
        store_path=config.store_path(),
        config=config,
        model_state=build_model_selection(config),
        events=events,
    )


def _stored(config):
    return load_session_store(config.store_path(), skip_cache=True)[KEY]


# ---------------------------------------------------------------------------
# 解析
# ---------------------------------------------------------------------------

def test_parse_level_directives_and_cleaned_body():
    parsed = parse_directives("please /t high summarize this")
    assert parsed.directives == [ThinkSet("high")]
    assert parsed.cleaned == "please summarize this"
    assert not parsed.is_directive_only

    parsed = parse_directives("/think:xhigh /v on")
    assert parsed.directives == [ThinkSet("xhigh"), VerboseSet("on")]
    assert parsed.is_directive_only


def test_parse_queries_and_invalid():
    assert parse_directives("/think").directives == [ThinkQuery()]
    assert parse_directives("/models").directives == [ModelQuery()]
    parsed = parse_directives("/think banana")
    assert parsed.directives == []
    assert parsed.invalid[0].raw == "banana"


def test_parse_model_and_queue():
    assert parse_directives("/model mini").directives == [ModelSet("mini")]
    parsed = parse_directives("/queue collect debounce:2s cap:10 drop:old")
    assert parsed.directives == [QueueSet(mode="collect", debounce_ms=2000, cap=10, drop="old")]
    assert parse_directives("/queue reset").directives == [QueueReset()]


def test_text_without_directives_is_untouched():
    parsed = parse_directives("path/to/file and /usr/bin")
    assert not parsed.has_any
    assert parsed.cleaned == "path/to/file and /usr/bin"


def test_parse_duration():
    assert parse_duration_ms("500") == 500
    assert parse_duration_ms("1.5s") == 1500
    assert parse_duration_ms("2m") == 120_000
    assert parse_duration_ms("soon") is None


# ---------------------------------------------------------------------------
# 模型选择
# ---------------------------------------------------------------------------

def test_fuzzy_fragment_prefers_variant_in_allow_list(restricted_config):
    state = build_model_selection(restricted_config)
    assert resolve_model_directive("mini", state).key == "openai/gpt-5-mini"
    assert fuzzy_match("gpt", state)[0].key == "openai/gpt-5"


def test_model_outside_allow_list_is_rejected(restricted_config):
    state = build_model_selection(restricted_config)
    with pytest.raises(DirectiveError, match="not allowed"):
        resolve_model_directive("anthropic/claude-sonnet-4-5", state)


def test_unrestricted_accepts_explicit_ref_and_alias(config):
    state = build_model_selection(config)
    assert resolve_model_directive("openrouter/some-model", state).key == "openrouter/some-model"
    assert resolve_model_directive("opus", state).key == "anthropic/claude-opus-4-5"
    assert resolve_model_directive("openai/gpt-5", state).is_default


# ---------------------------------------------------------------------------
# 仅含指令的消息
# ---------------------------------------------------------------------------

async def test_think_and_verbose_acks_persist(config):
    entry = await _seed(config.store_path())
    reply = await _apply("/think high /verbose on", config, entry)
    assert reply == "Thinking level set to high. ⚙️ Verbose logging enabled."
    stored = _stored(config)
    assert stored["thinkingLevel"] == "high"
    assert stored["verboseLevel"] == "on"

    reply = await _apply("/think off", config, stored)
    assert reply == "Thinking disabled."
    assert "thinkingLevel" not in _stored(config)


async def test_queries_report_current_level(config):
    entry = await _seed(config.store_path(), thinkingLevel="medium")
    reply = await _apply("/think", config, entry)
    assert reply.startswith("Current thinking level: medium.")
    assert "xhigh" not in reply


async def test_invalid_level_reply(config):
    entry = await _seed(config.store_path())
    reply = await _apply("/think banana", config, entry)
    assert reply.startswith('Unrecognized thinking level "banana".')


async def test_xhigh_requires_supporting_model(config):
    entry = await _seed(config.store_path())
    reply = await _apply("/think xhigh", config, entry)
    assert "openai/gpt-5.2" in reply
    assert "thinkingLevel" not in _stored(config)


async def test_model_switch_persists_override_and_emits_event(config):
    entry = await _seed(config.store_path(), authProfileOverride="work")
    events = SystemEventQueue()
    reply = await _apply("/model gpt-5.2", config, entry, events)
    assert reply == "Model set to openai/gpt-5.2."
    stored = _stored(config)
    assert stored["providerOverride"] == "openai"
    assert stored["modelOverride"] == "gpt-5.2"
    assert "authProfileOverride" not in stored
    assert events.drain(KEY) == ["Model switched to openai/gpt-5.2."]

    reply = await _apply("/model openai/gpt-5", config, stored, events)
    assert reply.startswith("Model reset to default")
    stored = _stored(config)
    assert "modelOverride" not in stored
    assert "providerOverride" not in stored


async def test_unknown_model_reply(restricted_config):
    entry = await _seed(restricted_config.store_path())
    reply = await _apply("/model anthropic/claude-sonnet-4-5", restricted_config, entry)
    assert "not allowed" in reply


async def test_queue_set_and_reset(config):
    entry = await _seed(config.store_path())
    reply = await _apply("/queue followup debounce:2s cap:5 drop:new", config, entry)
    assert "⚙️ Queue mode set to followup." in reply
    stored = _stored(config)
    assert (stored["queueMode"], stored["queueDebounceMs"], stored["queueCap"], stored["queueDrop"]) == (
        "followup", 2000, 5, "new",
    )

    reply = await _apply("/queue reset", config, stored)
    assert reply == "⚙️ Queue mode reset to default."
    assert not any(k.startswith("queue") for k in _stored(config))


async def test_elevated_and_reasoning_emit_events(config):
    entry = await _seed(config.store_path())
    events = SystemEventQueue()
    await _apply("/elevated on /reasoning stream", config, entry, events)
    assert events.drain(KEY) == [
        "Elevated mode enabled: exec may run outside the workspace.",
        "Reasoning stream enabled.",
    ]


# ---------------------------------------------------------------------------
# 夹在正文里的指令
# ---------------------------------------------------------------------------

async def test_inline_queue_settings_are_not_persisted(config):
    entry = await _seed(config.store_path())
    parsed = parse_directives("/think low /queue interrupt do the thing")
    assert parsed.cleaned == "do the thing"
    result = await persist_inline_directives(
        parsed, entry=entry, session_key=KEY, store_path=config.store_path(),
        config=config, model_state=build_model_selection(config),
    )
    stored = _stored(config)
    assert stored["thinkingLevel"] == "low"
    assert "queueMode" not in stored
    assert result.model.key == "openai/gpt-5"
    assert result.context_tokens == 400_000


async def test_inline_unresolvable_model_is_ignored(restricted_config):
    entry = await _seed(restricted_config.store_path())
    result = await persist_inline_directives(
        parse_directives("/model nonexistent-thing hello"),
        entry=entry, session_key=KEY, store_path=restricted_config.store_path(),
        config=restricted_config, model_state=build_model_selection(restricted_config),
    )
    assert result.model.key == "openai/gpt-5"
    assert "modelOverride" not in _stored(restricted_config)


def test_level_precedence(config):
    entry = {"thinkingLevel": "high", "verboseLevel": "on"}
    levels = resolve_levels(entry, config, parse_directives("/think low hi"))
    assert levels.thinking == "low"
    assert levels.verbose == "on"
    assert resolve_levels({}, config).thinking == "off"
