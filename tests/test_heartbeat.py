import pytest

from lanebot.bus.queue import MessageBus
from lanebot.heartbeat.service import (
    HEARTBEAT_PROMPT,
    HeartbeatService,
    is_heartbeat_empty,
    strip_heartbeat_token,
)
from lanebot.session.store import load_session_store, update_session_store

MAIN = "agent:main:main"


def test_heartbeat_file_emptiness():
    assert is_heartbeat_empty(None)
    assert is_heartbeat_empty("# Tasks\n\n- [ ]\n<!-- nothing yet -->\n")
    assert not is_heartbeat_empty("# Tasks\n- check the inbox")


def test_strip_token():
    assert strip_heartbeat_token("HEARTBEAT_OK") == ("", True)
    assert strip_heartbeat_token("HEARTBEAT_OK. All quiet!") == ("All quiet", True)
    assert strip_heartbeat_token("Reminder: standup in 10 minutes") == ("Reminder: standup in 10 minutes", False)
    assert strip_heartbeat_token("I replied HEARTBEAT_OK earlier") == ("I replied HEARTBEAT_OK earlier", False)

    text, suppress = strip_heartbeat_token("HEARTBEAT_OK " + "x" * 400)
    assert not suppress
    assert text == "x" * 400


class Runner:
    def __init__(self, store_path, reply="HEARTBEAT_OK", error=None):
        self.store_path = store_path
        self.reply = reply
        self.error = error
        self.calls = []

    async def __call__(self, prompt, session_key, channel, chat_id):
        self.calls.append((prompt, session_key, channel, chat_id))
        # 运行会刷新 updatedAt
        await update_session_store(self.store_path, lambda s: s[session_key].update(updatedAt=99_999))
        if self.error:
            raise self.error
        return self.reply


@pytest.fixture
async def seeded(config, store_path):
    (config.workspace_path / "HEARTBEAT.md").write_text("- check the build\n", encoding="utf-8")
    await update_session_store(store_path, lambda s: s.update({
        MAIN: {"sessionId": "m", "updatedAt": 1_000, "lastChannel": "slack", "lastTo": "C1"},
    }))
    return store_path


def _service(config, store_path, runner, bus=None, is_busy=None):
    return HeartbeatService(
        workspace=config.workspace_path,
        store_path=store_path,
        session_key=MAIN,
        bus=bus,
        on_heartbeat=runner,
        is_busy=is_busy,
    )


async def test_ok_reply_is_suppressed_and_updated_at_restored(config, seeded):
    runner = Runner(seeded)
    bus = MessageBus()
    result = await _service(config, seeded, runner, bus).tick()

    assert (result.status, result.reason, result.delivered) == ("ran", "ok-token", False)
    assert runner.calls == [(HEARTBEAT_PROMPT, MAIN, "slack", "C1")]
    assert bus.outbound_size == 0
    assert load_session_store(seeded, skip_cache=True)[MAIN]["updatedAt"] == 1_000


async def test_actionable_reply_is_delivered(config, seeded):
    bus = MessageBus()
    result = await _service(config, seeded, Runner(seeded, reply="The nightly build failed."), bus).tick()
    assert result.delivered
    out = await bus.consume_outbound()
    assert (out.channel, out.chat_id, out.content) == ("slack", "C1", "The nightly build failed.")


async def test_failure_still_restores_updated_at(config, seeded):
    result = await _service(config, seeded, Runner(seeded, error=RuntimeError("llm down"))).tick()
    assert result.status == "failed"
    assert result.reason == "llm down"
    assert load_session_store(seeded, skip_cache=True)[MAIN]["updatedAt"] == 1_000


async def test_skip_reasons(config, seeded):
    runner = Runner(seeded)

    busy = await _service(config, seeded, runner, is_busy=lambda key: True).tick()
    assert (busy.status, busy.reason) == ("skipped", "requests-in-flight")

    (config.workspace_path / "HEARTBEAT.md").write_text("# Heartbeat\n", encoding="utf-8")
    empty = await _service(config, seeded, runner).tick()
    assert empty.reason == "empty"

    forced = await _service(config, seeded, runner).trigger_now()
    assert forced.status == "ran"
    assert len(runner.calls) == 1


async def test_skip_without_delivery_target(config, store_path):
    (config.workspace_path / "HEARTBEAT.md").write_text("- water the plants\n", encoding="utf-8")
    await update_session_store(store_path, lambda s: s.update({MAIN: {"sessionId": "m", "updatedAt": 1}}))
    result = await _service(config, store_path, Runner(store_path)).tick()
    assert (result.status, result.reason) == ("skipped", "no-target")
