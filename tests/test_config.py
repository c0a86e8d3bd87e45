import json

from lanebot.config.loader import camel_to_snake, convert_keys, load_config, save_config, snake_to_camel
from lanebot.config.schema import Config


def test_case_conversion():
    assert camel_to_snake("idleMinutes") == "idle_minutes"
    assert snake_to_camel("reset_by_type") == "resetByType"


def test_data_keys_are_preserved():
    data = convert_keys({"agents": {"defaults": {"models": {"openai/gpt-5-mini": {"contextWindow": 1000}}}}})
    assert data == {"agents": {"defaults": {"models": {"openai/gpt-5-mini": {"context_window": 1000}}}}}


def test_load_camel_case_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "agents": {"defaults": {
            "model": "openai/gpt-5",
            "models": {"openai/gpt-5-mini": {"alias": "fast"}},
            "thinkingDefault": "low",
        }},
        "session": {
            "idleMinutes": 120,
            "resetByChannel": {"slack": 30},
            "queue": {"mode": "followup", "byChannel": {"telegram": "steer"}},
        },
    }), encoding="utf-8")

    config = load_config(path)
    assert config.agents.defaults.thinking_default == "low"
    assert config.agents.defaults.models["openai/gpt-5-mini"].alias == "fast"
    assert config.session.idle_minutes == 120
    assert config.session.reset_by_channel == {"slack": 30}
    assert config.session.queue.by_channel == {"telegram": "steer"}


def test_legacy_fields_are_migrated(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "session": {"resetCommands": ["/fresh"], "thread": {"inheritParentLimit": 5}},
        "tools": {"exec": {"restrictToWorkspace": False}},
    }), encoding="utf-8")
    config = load_config(path)
    assert config.session.reset_triggers == ["/fresh"]
    assert config.session.thread.history_limit == 5
    assert config.tools.restrict_to_workspace is False


def test_bad_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    assert load_config(path).session.idle_minutes == 60

    path.write_text(json.dumps({"session": {"scope": "everywhere"}}), encoding="utf-8")
    assert load_config(path).session.scope == "per-thread"


def test_save_round_trip(tmp_path):
    path = tmp_path / "nested" / "config.json"
    config = Config.model_validate({"agents": {"defaults": {"models": {"openai/gpt-5": {"alias": "five"}}}}})
    save_config(config, path)

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert "idleMinutes" in raw["session"]
    assert "openai/gpt-5" in raw["agents"]["defaults"]["models"]
    assert load_config(path).agents.defaults.models["openai/gpt-5"].alias == "five"


def test_store_path_template(tmp_path):
    config = Config.model_validate({"session": {"store": str(tmp_path / "{agentId}" / "sessions.json")}})
    assert config.store_path() == tmp_path / "main" / "sessions.json"
    assert config.store_path("ops") == tmp_path / "ops" / "sessions.json"


def test_env_override(monkeypatch):
    monkeypatch.setenv("LANEBOT_SESSION__IDLE_MINUTES", "15")
    assert Config().session.idle_minutes == 15
